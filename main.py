"""
Object Capture - Main Entry Point
"""
import sys
import logging

from objectcapture.cli import main as cli_main

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler("objectcapture.log"),
        logging.StreamHandler(sys.stderr),
    ],
)

logger = logging.getLogger(__name__)


def main():
    """Main application entry point"""
    try:
        sys.exit(cli_main())
    except Exception as e:
        logger.critical(f"Object Capture failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
