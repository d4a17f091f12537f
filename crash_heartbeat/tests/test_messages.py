from __future__ import annotations

import unittest

from crash_heartbeat.messages import (
    ConfigMessage,
    ExitMessage,
    HeartbeatMessage,
    ReportConfigMessage,
    parse_message,
)


class TestMessages(unittest.TestCase):
    def test_outgoing_messages_use_wire_field_names(self) -> None:
        self.assertEqual(
            ConfigMessage(timeout_ms=5000, check_interval_ms=1000).to_dict(),
            {"type": "config", "timeoutMs": 5000, "checkIntervalMs": 1000},
        )
        self.assertEqual(
            HeartbeatMessage(process_id="A", timestamp=7).to_dict(),
            {"type": "heartbeat", "processId": "A", "timestamp": 7},
        )
        self.assertEqual(ExitMessage(process_id="A").to_dict(), {"type": "exit", "processId": "A"})

    def test_config_omits_unset_fields(self) -> None:
        self.assertEqual(ConfigMessage().to_dict(), {"type": "config"})

    def test_parse_reads_wire_names(self) -> None:
        self.assertEqual(
            parse_message({"type": "heartbeat", "processId": "A", "timestamp": 7, "page": "/x"}),
            HeartbeatMessage(process_id="A", timestamp=7, page="/x"),
        )
        self.assertEqual(
            parse_message({"type": "config", "timeoutMs": 5000, "checkIntervalMs": 1000.0}),
            ConfigMessage(timeout_ms=5000, check_interval_ms=1000),
        )

    def test_parse_accepts_aliases(self) -> None:
        self.assertEqual(
            parse_message({"type": "exit", "tabId": "tab-1", "ts": 9}),
            ExitMessage(process_id="tab-1", timestamp=9),
        )
        self.assertEqual(
            parse_message({"type": "heartbeat", "process_id": "svc"}),
            HeartbeatMessage(process_id="svc"),
        )
        self.assertEqual(
            parse_message({"type": "config", "timeout_ms": 1, "check_interval_ms": 2}),
            ConfigMessage(timeout_ms=1, check_interval_ms=2),
        )

    def test_wire_name_wins_over_alias(self) -> None:
        message = parse_message({"type": "heartbeat", "processId": "A", "tabId": "B"})

        self.assertEqual(message, HeartbeatMessage(process_id="A"))

    def test_missing_or_blank_id_becomes_unknown(self) -> None:
        self.assertEqual(parse_message({"type": "exit"}), ExitMessage(process_id="unknown"))
        self.assertEqual(
            parse_message({"type": "heartbeat", "processId": "  "}),
            HeartbeatMessage(process_id="unknown"),
        )

    def test_non_numeric_config_values_are_dropped(self) -> None:
        self.assertEqual(
            parse_message({"type": "config", "timeoutMs": "soon", "checkIntervalMs": True}),
            ConfigMessage(),
        )

    def test_report_config_and_fetch_config_carry_params(self) -> None:
        expected = ReportConfigMessage(params={"url": "https://r.example"})

        self.assertEqual(parse_message({"type": "report-config", "url": "https://r.example"}), expected)
        self.assertEqual(parse_message({"type": "fetch-config", "url": "https://r.example"}), expected)
        self.assertEqual(
            expected.to_dict(),
            {"type": "report-config", "url": "https://r.example"},
        )

    def test_unknown_or_malformed_input(self) -> None:
        self.assertIsNone(parse_message({"type": "reboot"}))
        self.assertIsNone(parse_message(["heartbeat"]))
        self.assertIsNone(parse_message(None))


if __name__ == "__main__":
    unittest.main()
