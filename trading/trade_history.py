"""Append-only JSONL trade history. Write failures never reach the caller."""

from __future__ import annotations

import logging
import os
from typing import Any

import config
from utils.log_contracts import trade_event
from utils.state_file import append_jsonl_locked, read_jsonl

logger = logging.getLogger(__name__)


class TradeHistoryLogger:
    def __init__(self, path: str | None = None, run_tag: str | None = None) -> None:
        self.path = str(path or config.TRADE_HISTORY_FILE)
        self.run_tag = str(run_tag if run_tag is not None else getattr(config, "RUN_TAG", ""))

    def record(self, event: dict[str, Any]) -> None:
        try:
            row = trade_event(event, run_tag=self.run_tag)
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            append_jsonl_locked(self.path, row)
        except Exception as exc:
            logger.warning("TRADE_HISTORY write_failed path=%s err=%s", self.path, exc)

    def read_all(self) -> list[dict[str, Any]]:
        return read_jsonl(self.path)
