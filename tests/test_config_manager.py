import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from plannersync.config_manager import ConfigManager, strip_masked_secrets
from plannersync.errors import ConfigurationError
from plannersync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "config.yaml"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_creates_defaults_when_missing(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.assertTrue(self.config_path.exists())
        config = manager.load()
        self.assertEqual(config.sync.interval_seconds, 900)
        self.assertFalse(config.sync.auto_sync)
        self.assertEqual(config.caldav.timeout_seconds, 30)

    def test_malformed_yaml_raises_configuration_error(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.config_path.write_text("caldav: [unclosed\n", encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            manager.load()

    def test_non_mapping_root_is_rejected(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.config_path.write_text("- just\n- a list\n", encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            manager.load()

    def test_path_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {"PLANNERSYNC_CONFIG_PATH": str(self.config_path)}):
            manager = ConfigManager()
        self.assertEqual(manager.config_path, self.config_path)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        manager = ConfigManager(str(self.config_path))
        config = AppConfig.from_dict(
            {"caldav": {"server_url": "https://dav.example.com", "username": "u", "password": "p"}}
        )

        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            manager.save(config)

        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["caldav"]["server_url"], "https://dav.example.com")
        self.assertFalse(self.config_path.with_suffix(".yaml.tmp").exists())

    def test_update_merges_and_keeps_secret(self) -> None:
        manager = ConfigManager(str(self.config_path))
        manager.update({"caldav": {"server_url": "https://dav.example.com", "username": "u", "password": "secret"}})

        updated = manager.update({"caldav": {"password": "***"}, "sync": {"interval_seconds": 5}})

        self.assertEqual(updated.caldav.password, "secret")
        self.assertEqual(updated.caldav.server_url, "https://dav.example.com")
        self.assertEqual(updated.sync.interval_seconds, 30)
        self.assertEqual(manager.masked()["caldav"]["password"], "***")

    def test_new_password_replaces_old(self) -> None:
        manager = ConfigManager(str(self.config_path))
        manager.update({"caldav": {"password": "first"}})
        self.assertEqual(manager.update({"caldav": {"password": "second"}}).caldav.password, "second")


class StripMaskedSecretsTests(unittest.TestCase):
    def test_blank_password_without_stored_secret_stays_blank(self) -> None:
        payload = strip_masked_secrets({"caldav": {"password": "***"}}, {"caldav": {"password": ""}})
        self.assertEqual(payload, {"caldav": {"password": ""}})

    def test_drops_emptied_section(self) -> None:
        payload = strip_masked_secrets({"caldav": {"password": ""}}, {"caldav": {"password": "x"}})
        self.assertEqual(payload, {})

    def test_does_not_mutate_input(self) -> None:
        original = {"caldav": {"password": "***", "username": "u"}}
        strip_masked_secrets(original, {"caldav": {"password": "x"}})
        self.assertEqual(original["caldav"]["password"], "***")


if __name__ == "__main__":
    unittest.main()
