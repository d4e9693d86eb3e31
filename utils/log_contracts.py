"""Stable log contract for trade history rows."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_TRADE_EVENT = "trade_event.v1"

_STAGE_PREFIX: dict[str, str] = {
    "safety_check": "SAFETY",
    "trade_open": "EXEC",
    "exit_submit": "EXEC",
    "trade_partial": "EXIT",
    "trade_close": "EXIT",
    "waiting": "LIQ",
    "manual": "MANUAL",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "illiquid": "SAFETY_ILLIQUID",
    "honeypot": "SAFETY_HONEYPOT",
    "high_tax": "SAFETY_HIGH_TAX",
    "rate_limited": "ROUTE_RATE_LIMITED",
    "no_route": "LIQ_NO_ROUTE",
    "buy_live": "EXEC_BUY_LIVE",
    "sell_live": "EXEC_SELL_LIVE",
    "sell_fail": "EXEC_SELL_FAIL",
    "buy_fail": "EXEC_BUY_FAIL",
    "unconfirmed": "EXEC_UNCONFIRMED",
    "reconciled_dust": "EXIT_RECONCILED_DUST",
    "remainder_retry": "EXIT_REMAINDER_RETRY",
    "partial_exit": "EXIT_PARTIAL",
    "token_not_held": "EXIT_TOKEN_NOT_HELD",
    "abandoned": "MANUAL_ABANDONED",
    "reopened": "MANUAL_REOPENED",
    "moved_to_waiting": "LIQ_MOVED_TO_WAITING",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "SAFETY_ILLIQUID": {"severity": "INFO", "category": "safety", "title": "No buy route"},
    "SAFETY_HONEYPOT": {"severity": "WARN", "category": "safety", "title": "Token cannot be sold"},
    "SAFETY_HIGH_TAX": {"severity": "WARN", "category": "safety", "title": "Sell tax above block threshold"},
    "ROUTE_RATE_LIMITED": {"severity": "WARN", "category": "route", "title": "Venue rate limited"},
    "LIQ_NO_ROUTE": {"severity": "INFO", "category": "liquidity", "title": "Waiting for liquidity"},
    "LIQ_MOVED_TO_WAITING": {"severity": "INFO", "category": "liquidity", "title": "Moved to waiting pool"},
    "EXEC_BUY_LIVE": {"severity": "INFO", "category": "execute", "title": "Live buy confirmed"},
    "EXEC_SELL_LIVE": {"severity": "INFO", "category": "execute", "title": "Live sell confirmed"},
    "EXEC_SELL_FAIL": {"severity": "WARN", "category": "execute", "title": "Sell failed"},
    "EXEC_BUY_FAIL": {"severity": "WARN", "category": "execute", "title": "Buy failed"},
    "EXEC_UNCONFIRMED": {"severity": "WARN", "category": "execute", "title": "Submitted but unconfirmed"},
    "EXIT_RECONCILED_DUST": {"severity": "INFO", "category": "exit", "title": "Closed with dust remainder"},
    "EXIT_REMAINDER_RETRY": {"severity": "INFO", "category": "exit", "title": "Retried material remainder"},
    "EXIT_PARTIAL": {"severity": "WARN", "category": "exit", "title": "Partial exit"},
    "EXIT_TOKEN_NOT_HELD": {"severity": "WARN", "category": "exit", "title": "Token no longer held"},
    "MANUAL_ABANDONED": {"severity": "INFO", "category": "manual", "title": "Position abandoned"},
    "MANUAL_REOPENED": {"severity": "INFO", "category": "manual", "title": "Position moved back to open"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return float(default)


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except Exception:
        return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_address(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if len(raw) == 42 and raw.startswith("0x"):
        return raw
    return ""


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    text = re.sub(r"_+", "_", text).strip("_")
    if text.startswith("abandoned_"):
        return "abandoned"
    return text


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(*, reason: Any, stage: Any = "") -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        return f"{_stage_prefix(stage)}_UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def _event_id(payload: dict[str, Any], *, run_tag: str) -> str:
    raw = str(payload.get("event_id", "") or "").strip()
    if raw:
        return raw
    return (
        "evt_"
        + _digest_seed(
            run_tag,
            payload.get("position_id", ""),
            payload.get("stage", ""),
            payload.get("reason", ""),
            payload.get("token_address", ""),
            payload.get("tx_hash", ""),
            f"{payload['ts']:.6f}",
        )[:20]
    )


def trade_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    """Stamp a trade history row with schema, ids and a stable reason code."""
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = _iso_from_ts(ts)
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", SCHEMA_TRADE_EVENT)
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    payload["stage"] = str(payload.get("stage", "unknown") or "unknown")
    payload["side"] = str(payload.get("side", "") or "")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["symbol"] = str(payload.get("symbol", "N/A") or "N/A")
    payload["position_id"] = str(payload.get("position_id", "") or "")
    payload["token_address"] = _normalize_address(payload.get("token_address", ""))
    payload["venue"] = str(payload.get("venue", "") or "")
    payload["tx_hash"] = str(payload.get("tx_hash", "") or "")
    payload["amount"] = _safe_float(payload.get("amount", 0.0), 0.0)
    payload["value_eth"] = _safe_float(payload.get("value_eth", 0.0), 0.0)
    payload["reason_code"] = str(
        payload.get("reason_code", "") or reason_code_for_event(reason=payload["reason"], stage=payload["stage"])
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta.get("severity", "INFO")) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta.get("category", "unknown")) or "unknown")
    payload["event_id"] = _event_id(payload, run_tag=str(payload.get("run_tag", run_tag or "")))
    return payload
