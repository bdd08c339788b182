import json
import os
import tempfile
import unittest
from pathlib import Path

from uaproxy.config.config_manager import ConfigManager, ProxySettings, build_settings
from uaproxy.unlimited.ctl import UnlimitedController


class BuildSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = build_settings({}, {})

        self.assertEqual(settings, ProxySettings())
        self.assertEqual(settings.port, 3000)
        self.assertIsNone(settings.rotation_limit)
        self.assertEqual(settings.session_ttl_seconds, 300.0)

    def test_environment_overrides_file(self) -> None:
        settings = build_settings(
            {"port": 8080, "api_key": "from-file", "rotation_limit": 5},
            {"PORT": "9090", "API_KEY": "from-env", "PROXY_URL": "socks5h://127.0.0.1:1080"},
        )

        self.assertEqual(settings.port, 9090)
        self.assertEqual(settings.api_key, "from-env")
        self.assertEqual(settings.rotation_limit, 5)
        self.assertEqual(settings.proxy_url, "socks5h://127.0.0.1:1080")

    def test_invalid_numbers_fall_back_to_defaults(self) -> None:
        with self.assertLogs("uaproxy.config.config_manager", level="WARNING"):
            settings = build_settings(
                {"port": "not-a-port", "session_ttl_seconds": -1},
                {"TOKEN_ROTATION_LIMIT": "0"},
            )

        self.assertEqual(settings.port, 3000)
        self.assertEqual(settings.session_ttl_seconds, 300.0)
        self.assertIsNone(settings.rotation_limit)

    def test_browser_headers_are_merged(self) -> None:
        settings = build_settings({"browser_headers": {"accept-language": "en"}}, {})

        headers = settings.request_headers()
        self.assertEqual(headers["accept-language"], "en")
        self.assertIn("sec-ch-ua", headers)
        self.assertIn("user-agent", headers)

    def test_upstream_url_trailing_slash_is_removed(self) -> None:
        settings = build_settings({}, {"UPSTREAM_URL": "https://example.test/"})

        self.assertEqual(settings.upstream_url, "https://example.test")


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config_dir = Path(self._tmp.name)
        self.manager = ConfigManager(config_dir=self.config_dir, env={})

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _write(self, data) -> None:
        self.manager.config_file.write_text(json.dumps(data), encoding="utf-8")

    def test_missing_file_gives_defaults(self) -> None:
        settings = self.manager.settings

        self.assertEqual(settings.port, 3000)
        self.assertEqual(settings.log_file, self.config_dir / "run" / "unlimited_proxy.log")

    def test_ensure_config_file_creates_empty_object(self) -> None:
        path = self.manager.ensure_config_file()

        self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {})

    def test_changes_on_disk_are_picked_up(self) -> None:
        self._write({"port": 4000})
        self.assertEqual(self.manager.settings.port, 4000)

        self._write({"port": 45000, "default_model": "other"})
        os.utime(self.manager.config_file, ns=(1, 1))

        settings = self.manager.settings
        self.assertEqual(settings.port, 45000)
        self.assertEqual(settings.default_model, "other")

    def test_corrupt_file_is_treated_as_empty(self) -> None:
        self.manager.config_file.write_text("{not json", encoding="utf-8")

        with self.assertLogs("uaproxy.config.config_manager", level="WARNING"):
            settings = self.manager.settings

        self.assertEqual(settings.port, 3000)

    def test_uap_home_environment_variable(self) -> None:
        manager = ConfigManager(env={"UAP_HOME": str(self.config_dir / "alt")})

        self.assertEqual(manager.config_file, self.config_dir / "alt" / "config.json")


class ControllerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.manager = ConfigManager(config_dir=Path(self._tmp.name), env={})
        self.controller = UnlimitedController(self.manager)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_pid_file_means_not_running(self) -> None:
        self.assertIsNone(self.controller.get_pid())
        self.assertFalse(self.controller.is_running())

    def test_garbage_pid_file_is_ignored(self) -> None:
        self.manager.ensure_run_dir()
        self.controller.pid_file.write_text("not-a-pid")

        self.assertIsNone(self.controller.get_pid())

    def test_current_process_is_reported_running(self) -> None:
        self.manager.ensure_run_dir()
        self.controller.pid_file.write_text(str(os.getpid()))

        self.assertEqual(self.controller.get_pid(), os.getpid())
        self.assertTrue(self.controller.is_running())

    def test_stop_without_running_process(self) -> None:
        self.assertFalse(self.controller.stop())


if __name__ == "__main__":
    unittest.main()
