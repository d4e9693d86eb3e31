"""Static honeypot signal from the honeypot.is API, cached per token."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import config
from trading.positions import RiskSignal
from utils.addressing import normalize_address, short_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

_CRITICAL_SEVERITIES = {"critical", "high"}


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no"):
            return False
        return None
    return bool(value)


def _as_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_honeypot_payload(payload: dict[str, Any]) -> RiskSignal:
    """Read the fields we rely on; the response shape drifts between API versions."""
    hp = payload if isinstance(payload, dict) else {}
    simulation = hp.get("simulationResult") or {}
    flags: list[str] = []

    is_honeypot = bool(_as_bool((hp.get("honeypotResult") or {}).get("isHoneypot")) or False)
    if is_honeypot:
        flags.append("is_honeypot")

    can_sell = _as_bool(simulation.get("canSell"))
    if can_sell is None:
        can_sell = _as_bool(simulation.get("sellSuccess"))
    if can_sell is False:
        is_honeypot = True
        flags.append("cannot_sell")

    if _as_bool(hp.get("simulationSuccess")) is False:
        flags.append("simulation_failed")
        error_text = str(hp.get("simulationError") or "").upper()
        if "SELL" in error_text or "TRANSFER" in error_text:
            is_honeypot = True

    for item in (hp.get("summary") or {}).get("flags") or []:
        if not isinstance(item, dict):
            continue
        name = str(item.get("flag") or "").strip()
        if name:
            flags.append(f"flag:{name}")
        if str(item.get("severity") or "").lower() in _CRITICAL_SEVERITIES and name in ("high_fail_rate", "honeypot"):
            is_honeypot = True

    buy_tax = _as_float(simulation.get("buyTax"))
    sell_tax = _as_float(simulation.get("sellTax"))
    detail = ",".join(flags) if flags else f"ok buyTax={buy_tax:.1f}% sellTax={sell_tax:.1f}%"
    return RiskSignal(
        available=True,
        is_honeypot=is_honeypot,
        sell_tax_pct=sell_tax,
        buy_tax_pct=buy_tax,
        detail=detail,
        flags=flags,
    )


class HoneypotGuard:
    def __init__(
        self,
        http: ResilientHttpClient | None = None,
        *,
        enabled: bool | None = None,
        url: str | None = None,
        chain_id: int | None = None,
        cache_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.HONEYPOT_API_TIMEOUT_SECONDS),
            source_limits={"honeypot": 3},
        )
        self._owns_http = http is None
        self.enabled = bool(config.HONEYPOT_API_ENABLED if enabled is None else enabled)
        self.url = str(url if url is not None else config.HONEYPOT_API_URL)
        self.chain_id = int(chain_id if chain_id is not None else config.LIVE_CHAIN_ID)
        self.cache_ttl_seconds = float(
            cache_ttl_seconds if cache_ttl_seconds is not None else config.HONEYPOT_API_CACHE_TTL_SECONDS
        )
        self._clock = clock
        self._cache: dict[str, tuple[float, RiskSignal]] = {}

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    def _cache_get(self, key: str) -> RiskSignal | None:
        row = self._cache.get(key)
        if not row:
            return None
        ts, signal = row
        if (self._clock() - ts) > self.cache_ttl_seconds:
            self._cache.pop(key, None)
            return None
        return signal

    def _cache_put(self, key: str, signal: RiskSignal) -> None:
        self._cache[key] = (self._clock(), signal)

    async def check(self, token_address: str) -> RiskSignal:
        if not self.enabled:
            return RiskSignal(available=False, detail="disabled")
        if not self.url:
            return RiskSignal(available=False, detail="no_url")

        key = normalize_address(token_address)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        result = await self._http.get_json(
            self.url,
            source="honeypot",
            params={"address": token_address, "chainID": self.chain_id},
        )
        if not result.ok or not isinstance(result.data, dict):
            detail = f"honeypot_api_status_{result.status}" if int(result.status or 0) > 0 else str(result.error or "honeypot_api_error")
            logger.warning("HONEYPOT unavailable token=%s detail=%s", short_address(key), detail)
            # Unavailable answers are not cached so the next check asks again.
            return RiskSignal(available=False, detail=detail)

        signal = parse_honeypot_payload(result.data)
        self._cache_put(key, signal)
        if signal.is_honeypot:
            logger.warning("HONEYPOT flagged token=%s detail=%s", short_address(key), signal.detail)
        return signal
