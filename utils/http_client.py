"""Shared aiohttp client with retry/backoff, per-source limits and 429 cooldowns."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

E_COOLDOWN_ACTIVE = "cooldown_active"


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""

    @property
    def rate_limited(self) -> bool:
        return self.status == 429 or self.error == E_COOLDOWN_ACTIVE

    @property
    def timed_out(self) -> bool:
        return self.error.startswith("http_timeout")


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector_limit = max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30))
            connector = aiohttp.TCPConnector(limit=connector_limit)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    def _get_semaphore(self, source_key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(source_key)
        if sem is not None:
            return sem
        default_limit = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
        limit = max(1, int(self._source_limits.get(source_key, default_limit)))
        sem = asyncio.Semaphore(limit)
        self._semaphores[source_key] = sem
        return sem

    def _source_429_cooldown_seconds(self, source_key: str) -> float:
        per_source = getattr(config, "HTTP_SOURCE_429_COOLDOWNS", {}) or {}
        if source_key in per_source:
            try:
                return max(0.0, float(per_source[source_key]))
            except Exception:
                pass
        return max(0.0, float(getattr(config, "HTTP_429_COOLDOWN_SECONDS", 30.0) or 30.0))

    def cooldown_remaining(self, source: str) -> float:
        until = float(self._cooldown_until.get(self._source_key(source), 0.0) or 0.0)
        return max(0.0, until - time.monotonic())

    def _apply_source_cooldown(self, source_key: str, response: aiohttp.ClientResponse) -> None:
        retry_after_raw = (response.headers or {}).get("Retry-After", "")
        retry_after = 0.0
        if retry_after_raw:
            try:
                retry_after = max(0.0, float(retry_after_raw))
            except Exception:
                retry_after = 0.0
        cooldown_seconds = max(self._source_429_cooldown_seconds(source_key), retry_after)
        if cooldown_seconds <= 0:
            return
        until = time.monotonic() + cooldown_seconds
        prev = float(self._cooldown_until.get(source_key, 0.0) or 0.0)
        self._cooldown_until[source_key] = max(prev, until)
        logger.warning("HTTP_COOLDOWN source=%s seconds=%.1f", source_key, cooldown_seconds)

    @staticmethod
    def _compute_delay(attempt: int) -> float:
        base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5))
        cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0))
        jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.25))
        exp = min(cap, base * (2 ** max(0, attempt - 1)))
        return max(0.01, exp + random.uniform(0.0, jitter))

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any | None:
        try:
            return await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return None

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        """Perform a JSON request.

        429 responses are never retried here: the source is put on cooldown and
        the caller gets a rate-limited result immediately. While a cooldown is
        active no request is sent at all. Non-200 bodies are still parsed so
        adapters can read API error codes.
        """
        attempts = max(1, int(max_attempts or int(getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3)))
        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)

        source_key = self._source_key(source)
        if self.cooldown_remaining(source_key) > 0:
            return HttpResult(ok=False, status=0, data=None, error=E_COOLDOWN_ACTIVE)

        sem = self._get_semaphore(source_key)
        for attempt in range(1, attempts + 1):
            status = 0
            async with sem:
                try:
                    session = await self._get_session()
                    async with session.request(
                        method.upper(),
                        url,
                        params=params,
                        json=json_body,
                        headers=req_headers,
                    ) as response:
                        status = int(response.status or 0)
                        body = await self._read_body(response)
                        if status == 200:
                            if body is None:
                                return HttpResult(ok=False, status=status, data=None, error="http_invalid_json")
                            return HttpResult(ok=True, status=status, data=body)
                        if status == 429:
                            self._apply_source_cooldown(source_key, response)
                            return HttpResult(ok=False, status=status, data=body, error="http_status_429")
                        retryable = 500 <= status <= 599
                        if not retryable or attempt >= attempts:
                            return HttpResult(ok=False, status=status, data=body, error=f"http_status_{status}")
                except (asyncio.TimeoutError, TimeoutError) as exc:
                    if attempt >= attempts:
                        return HttpResult(ok=False, status=status, data=None, error=f"http_timeout:{exc!r}")
                except aiohttp.ClientError as exc:
                    if attempt >= attempts:
                        return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")

            delay = self._compute_delay(attempt=attempt)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                source_key,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")

    async def get_json(self, url: str, **kwargs: Any) -> HttpResult:
        return await self.request_json("GET", url, **kwargs)

    async def post_json(self, url: str, payload: Any, **kwargs: Any) -> HttpResult:
        return await self.request_json("POST", url, json_body=payload, **kwargs)
