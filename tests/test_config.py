"""Tests for config.py - defaults, dotted keys and persistence."""

import json
import shutil
import tempfile
import unittest
from pathlib import Path

from config import Config, config_value


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.path = self.tmp / "config.json"

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_missing_file_is_created_with_defaults(self):
        config = Config(str(self.path))
        self.assertTrue(self.path.exists())
        self.assertEqual(config.get("capture.minimum_photo_count"), 1)
        self.assertEqual(config.get("reconstruction.detail_level"), "reduced")

    def test_partial_file_is_merged_with_defaults(self):
        self.path.write_text(json.dumps({"capture": {"minimum_photo_count": 20}}))
        config = Config(str(self.path))
        self.assertEqual(config.get("capture.minimum_photo_count"), 20)
        self.assertEqual(config.get("capture.recommended_max_photos"), 200)

    def test_corrupt_file_falls_back_to_defaults(self):
        self.path.write_text("{not json")
        with self.assertLogs("config", level="ERROR"):
            config = Config(str(self.path))
        self.assertEqual(config.get("capability.name"), "command_line")

    def test_set_and_save_round_trip(self):
        config = Config(str(self.path))
        config.set("reconstruction.detail_level", "full")
        config.set("extra.flag", True)
        config.save()
        reloaded = Config(str(self.path))
        self.assertEqual(reloaded.get("reconstruction.detail_level"), "full")
        self.assertTrue(reloaded.get("extra.flag"))

    def test_get_missing_key_returns_default(self):
        config = Config.from_dict({})
        self.assertEqual(config.get("nope.nothing", "fallback"), "fallback")

    def test_from_dict_does_not_touch_disk(self):
        overrides = {"capture": {"temp_dir": str(self.tmp)}}
        config = Config.from_dict(overrides)
        config.set("capture.temp_dir", "/elsewhere")
        config.save()
        self.assertIsNone(config.config_path)
        self.assertEqual(overrides["capture"]["temp_dir"], str(self.tmp))
        self.assertEqual(list(self.tmp.iterdir()), [])

    def test_config_value_falls_back_to_defaults(self):
        self.assertEqual(config_value(None, "reconstruction.stall_timeout_seconds"), 120)
        self.assertEqual(config_value(None, "capture.temp_dir", "x"), "x")
        config = Config.from_dict({"reconstruction": {"detail_level": "raw"}})
        self.assertEqual(config_value(config, "reconstruction.detail_level"), "raw")
        self.assertIsNone(config_value(config, "missing.key"))


if __name__ == "__main__":
    unittest.main()
