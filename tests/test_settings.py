import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from chatsync.settings import ClientConfig, SettingsStore, load_client_config_from_env


class SettingsStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "nested" / "settings.json"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_defaults(self):
        settings = SettingsStore(self.path)

        self.assertEqual(settings.theme, "system")
        self.assertTrue(settings.notifications_enabled)
        self.assertEqual(settings.session_duration_minutes, 30)
        self.assertIsNone(settings.get("missing"))

    def test_values_persist(self):
        settings = SettingsStore(self.path)
        settings.theme = "dark"
        settings.notifications_enabled = False
        settings.session_duration_minutes = 45
        settings.set("last_user", "alice")

        reloaded = SettingsStore(self.path)

        self.assertEqual(reloaded.theme, "dark")
        self.assertFalse(reloaded.notifications_enabled)
        self.assertEqual(reloaded.session_duration_minutes, 45)
        self.assertEqual(reloaded.get("last_user"), "alice")
        self.assertFalse(self.path.with_suffix(".json.tmp").exists())

    def test_rejects_invalid_values(self):
        settings = SettingsStore(self.path)

        with self.assertRaises(ValueError):
            settings.theme = "neon"
        with self.assertRaises(ValueError):
            settings.session_duration_minutes = 0
        with self.assertRaises(TypeError):
            settings.set("tags", ["a", "b"])

    def test_corrupt_file_falls_back_to_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")

        self.assertEqual(SettingsStore(self.path).theme, "system")


class ClientConfigTests(unittest.TestCase):
    def test_defaults_without_environment(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_client_config_from_env()

        self.assertEqual(config.base_url, ClientConfig().base_url)
        self.assertEqual(config.max_image_bytes, 5 * 1024 * 1024)
        self.assertEqual(config.request_timeout_s, 30)

    def test_reads_environment(self):
        env = {
            "CHATSYNC_BASE_URL": "http://chat.internal:9000",
            "CHATSYNC_CLOUD_NAME": "demo",
            "CHATSYNC_UPLOAD_PRESET": "unsigned",
            "CHATSYNC_MAX_IMAGE_BYTES": "1024",
            "CHATSYNC_REQUEST_TIMEOUT_S": "5",
            "CHATSYNC_SETTINGS_PATH": "/tmp/chatsync/settings.json",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_client_config_from_env()

        self.assertEqual(config.base_url, "http://chat.internal:9000")
        self.assertEqual(config.cloud_name, "demo")
        self.assertEqual(config.upload_preset, "unsigned")
        self.assertEqual(config.max_image_bytes, 1024)
        self.assertEqual(config.request_timeout_s, 5)
        self.assertEqual(config.settings_path, Path("/tmp/chatsync/settings.json"))

    def test_rejects_bad_integers(self):
        for raw in ("abc", "0", "-5"):
            with mock.patch.dict(os.environ, {"CHATSYNC_MAX_IMAGE_BYTES": raw}, clear=True):
                with self.assertRaises(ValueError):
                    load_client_config_from_env()


if __name__ == "__main__":
    unittest.main()
