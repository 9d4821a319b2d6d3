import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from campuscal.config_manager import ConfigManager
from campuscal.errors import ConfigError
from campuscal.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config_when_missing(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().calendar.default_duration_minutes, 60)

    def test_update_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"calendar": {"timezone": "Europe/Zurich"}})
            updated = manager.update({"calendar": {"default_duration_minutes": 45}})
            self.assertEqual(updated.calendar.timezone, "Europe/Zurich")
            self.assertEqual(updated.calendar.default_duration_minutes, 45)
            self.assertEqual(manager.load().calendar.timezone, "Europe/Zurich")

    def test_update_rejects_unknown_sections_and_keys(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))

            for payload in (
                {"caldav": {"url": "https://example.org"}},
                {"calendar": {"time_zone": "Europe/Zurich"}},
                {"colors": "#000000"},
            ):
                with self.subTest(payload=payload):
                    with self.assertRaises(ConfigError):
                        manager.update(payload)

    def test_update_rejects_invalid_values_without_saving(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            before = config_path.read_text(encoding="utf-8")

            for payload in (
                {"calendar": {"timezone": "Mars/Olympus_Mons"}},
                {"calendar": {"default_duration_minutes": 0}},
                {"calendar": {"default_duration_minutes": "soon"}},
                {"colors": {"owner": "orange"}},
            ):
                with self.subTest(payload=payload):
                    with self.assertRaises(ConfigError):
                        manager.update(payload)

            self.assertEqual(config_path.read_text(encoding="utf-8"), before)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "storage": {"db_path": "/var/lib/campuscal/db.sqlite"},
                    "colors": {"personal": "#000000"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["storage"]["db_path"], "/var/lib/campuscal/db.sqlite")
            self.assertEqual(data["colors"]["personal"], "#000000")


if __name__ == "__main__":
    unittest.main()
