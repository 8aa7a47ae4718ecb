"""
Configuration management for Object Capture
"""
import copy
import json
from pathlib import Path
from typing import Any, Dict
import logging

logger = logging.getLogger(__name__)


class Config:
    """Application configuration manager"""

    DEFAULT_CONFIG = {
        "app": {
            "name": "ObjectCapture",
            "version": "1.0.0",
        },
        "capture": {
            "minimum_photo_count": 1,
            "maximum_photo_count": None,
            "recommended_min_photos": 20,
            "recommended_max_photos": 200,
            "temp_dir": None,
            "default_extension": ".jpg",
        },
        "reconstruction": {
            "detail_level": "reduced",
            "work_dir": None,
            "stall_timeout_seconds": 120,
            "output_name": "reconstructed_model.usdz",
        },
        "capability": {
            "name": "command_line",
            "command": [
                "HelloPhotogrammetry",
                "{input_dir}",
                "{output_path}",
                "--detail",
                "{detail}",
            ],
            "progress_pattern": r"progress[^0-9]*([0-9]*\.?[0-9]+)",
            "timeout_seconds": 3600,
        },
        "quality": {
            "min_dimension": 512,
            "blur_threshold": 100.0,
        },
    }

    def __init__(self, config_path: str = None):
        """Initialize configuration

        Args:
            config_path: Path to config file. If None, uses default location.
        """
        if config_path is None:
            config_dir = Path.home() / ".objectcapture"
            config_dir.mkdir(exist_ok=True)
            self.config_path = config_dir / "config.json"
        else:
            self.config_path = Path(config_path)

        self.config: Dict[str, Any] = {}
        self.load()

    @classmethod
    def from_dict(cls, overrides: Dict[str, Any]) -> "Config":
        """Build an in-memory configuration without touching the filesystem.

        Args:
            overrides: Nested dict merged over :attr:`DEFAULT_CONFIG`.
        """
        instance = cls.__new__(cls)
        instance.config_path = None
        instance.config = copy.deepcopy(overrides)
        instance._merge_defaults()
        return instance

    def load(self):
        """Load configuration from file or create default"""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    self.config = json.load(f)
                logger.info(f"Loaded configuration from {self.config_path}")
                self._merge_defaults()
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load config: {e}. Using defaults.")
                self.config = copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            logger.info("No config file found. Creating default.")
            self.config = copy.deepcopy(self.DEFAULT_CONFIG)
            self.save()

    def save(self):
        """Save configuration to file"""
        if self.config_path is None:
            logger.debug("In-memory configuration; nothing to save")
            return
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                json.dump(self.config, f, indent=2)
            logger.info(f"Saved configuration to {self.config_path}")
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def get(self, key_path: str, default=None):
        """Get configuration value using dot notation

        Args:
            key_path: Dot-separated path (e.g., "capture.minimum_photo_count")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any):
        """Set configuration value using dot notation

        Args:
            key_path: Dot-separated path (e.g., "reconstruction.detail_level")
            value: Value to set
        """
        keys = key_path.split(".")
        target = self.config

        for key in keys[:-1]:
            if key not in target:
                target[key] = {}
            target = target[key]

        target[keys[-1]] = value

    def _merge_defaults(self):
        """Merge loaded config with defaults to ensure all keys exist"""

        def merge_dict(default: dict, loaded: dict) -> dict:
            result = copy.deepcopy(default)
            for key, value in loaded.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = merge_dict(result[key], value)
                else:
                    result[key] = value
            return result

        self.config = merge_dict(self.DEFAULT_CONFIG, self.config)


def config_value(config, key_path: str, default=None):
    """Read *key_path* from *config*, falling back to the built-in defaults.

    Components accept ``config=None``; this keeps their lookups identical
    whether or not a :class:`Config` was supplied.
    """
    if config is not None and hasattr(config, "get"):
        value = config.get(key_path, None)
        if value is not None:
            return value
    fallback = Config.DEFAULT_CONFIG
    for key in key_path.split("."):
        if isinstance(fallback, dict) and key in fallback:
            fallback = fallback[key]
        else:
            return default
    return default if fallback is None else fallback
