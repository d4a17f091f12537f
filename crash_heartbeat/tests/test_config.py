from __future__ import annotations

import unittest

from crash_heartbeat.config import (
    MIN_CHECK_INTERVAL_MS,
    CrashHeartbeatConfig,
    load_config_from_env,
)


class TestCrashHeartbeatConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = CrashHeartbeatConfig()

        self.assertEqual(config.heartbeat_interval_ms, 3000)
        self.assertEqual(config.timeout_ms, 15000)
        self.assertEqual(config.check_interval_ms, 3000)
        self.assertEqual(config.storage_key, "__session_heartbeat__")
        self.assertEqual(config.identity_key, "__session_tab_id__")
        self.assertEqual(config.page, "")

    def test_rejects_invalid_values(self) -> None:
        with self.assertRaises(ValueError):
            CrashHeartbeatConfig(heartbeat_interval_ms=0)
        with self.assertRaises(ValueError):
            CrashHeartbeatConfig(timeout_ms=-1)
        with self.assertRaises(ValueError):
            CrashHeartbeatConfig(check_interval_ms=0)
        with self.assertRaises(ValueError):
            CrashHeartbeatConfig(storage_key="  ")

    def test_effective_check_interval_has_floor(self) -> None:
        self.assertEqual(
            CrashHeartbeatConfig(check_interval_ms=10).effective_check_interval_ms,
            MIN_CHECK_INTERVAL_MS,
        )
        self.assertEqual(CrashHeartbeatConfig(check_interval_ms=2500).effective_check_interval_ms, 2500)

    def test_strips_storage_key(self) -> None:
        config = CrashHeartbeatConfig(storage_key="  beats  ")

        self.assertEqual(config.storage_key, "beats")


class TestLoadConfigFromEnv(unittest.TestCase):
    def test_empty_env_gives_defaults(self) -> None:
        self.assertEqual(load_config_from_env({}), CrashHeartbeatConfig())

    def test_reads_overrides(self) -> None:
        config = load_config_from_env(
            {
                "CRASH_HEARTBEAT_HEARTBEAT_INTERVAL_MS": "1000",
                "CRASH_HEARTBEAT_TIMEOUT_MS": " 6000 ",
                "CRASH_HEARTBEAT_CHECK_INTERVAL_MS": "750",
                "CRASH_HEARTBEAT_STORAGE_KEY": "beats",
                "CRASH_HEARTBEAT_PAGE": "/orders#list",
            }
        )

        self.assertEqual(config.heartbeat_interval_ms, 1000)
        self.assertEqual(config.timeout_ms, 6000)
        self.assertEqual(config.check_interval_ms, 750)
        self.assertEqual(config.storage_key, "beats")
        self.assertEqual(config.page, "/orders#list")

    def test_non_integer_names_variable(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            load_config_from_env({"CRASH_HEARTBEAT_TIMEOUT_MS": "soon"})

        self.assertIn("CRASH_HEARTBEAT_TIMEOUT_MS", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
