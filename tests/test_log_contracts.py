from __future__ import annotations

import unittest

from utils import log_contracts


class LogContractsTests(unittest.TestCase):
    def test_sell_event_gets_reason_code_and_event_id(self) -> None:
        row = log_contracts.trade_event(
            {
                "stage": "exit_submit",
                "side": "sell",
                "reason": "sell_live",
                "symbol": "AAA",
                "position_id": "pos-1",
                "token_address": "0x1111111111111111111111111111111111111111",
                "tx_hash": "0xabc",
            },
            run_tag="live_a",
        )
        self.assertEqual(row["reason_code"], "EXEC_SELL_LIVE")
        self.assertEqual(row["reason_category"], "execute")
        self.assertEqual(row["schema_name"], log_contracts.SCHEMA_TRADE_EVENT)
        self.assertEqual(row["run_tag"], "live_a")
        self.assertTrue(str(row.get("event_id", "")).startswith("evt_"))

    def test_abandon_reason_maps_to_manual_code(self) -> None:
        row = log_contracts.trade_event({"stage": "manual", "reason": "ABANDONED:rug pull"})
        self.assertEqual(row["reason_code"], "MANUAL_ABANDONED")
        self.assertEqual(row["reason_category"], "manual")

    def test_unknown_reason_falls_back_to_stage_prefix(self) -> None:
        code = log_contracts.reason_code_for_event(reason="Gas spike", stage="waiting")
        self.assertEqual(code, "LIQ_GAS_SPIKE")
        self.assertEqual(log_contracts.reason_code_meta(code)["category"], "unknown")
        self.assertEqual(log_contracts.reason_code_for_event(reason="", stage="trade_close"), "EXIT_UNKNOWN")

    def test_bad_address_and_amount_are_normalized(self) -> None:
        row = log_contracts.trade_event({"stage": "trade_close", "reason": "sell_live", "token_address": "0x12", "amount": "n/a"})
        self.assertEqual(row["token_address"], "")
        self.assertEqual(row["amount"], 0.0)
        self.assertEqual(row["symbol"], "N/A")

    def test_event_id_is_stable_for_same_input(self) -> None:
        event = {"ts": 1_700_000_000.0, "stage": "waiting", "reason": "no_route", "position_id": "pos-9"}
        first = log_contracts.trade_event(event, run_tag="r")
        second = log_contracts.trade_event(event, run_tag="r")
        self.assertEqual(first["event_id"], second["event_id"])
        self.assertEqual(first["timestamp"], "2023-11-14T22:13:20+00:00")


if __name__ == "__main__":
    unittest.main()
