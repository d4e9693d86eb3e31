"""KyberSwap-style aggregator venue over the shared HTTP client."""

from __future__ import annotations

import logging
from typing import Any

import config
from trading.errors import ErrorKind
from utils.addressing import normalize_address
from utils.http_client import HttpResult, ResilientHttpClient
from venues.base import RouteQuote, UnsignedTransaction, VenueClient, VenueFailure

logger = logging.getLogger(__name__)

# API codes meaning "no path for this pair/amount" rather than a broken request.
NO_ROUTE_CODES = {4008, 4009, 4010, 4011}


class AggregatorVenue(VenueClient):
    name = "aggregator"

    def __init__(
        self,
        http: ResilientHttpClient | None = None,
        *,
        base_url: str | None = None,
        chain: str | None = None,
        client_id: str | None = None,
        weth_address: str | None = None,
        native_address: str | None = None,
    ) -> None:
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.VENUE_TIMEOUT_SECONDS),
            source_limits={self.name: 4},
        )
        self._owns_http = http is None
        self.base_url = str(base_url or config.AGGREGATOR_API_URL).rstrip("/")
        self.chain = str(chain or config.AGGREGATOR_CHAIN)
        self.client_id = str(client_id if client_id is not None else config.AGGREGATOR_CLIENT_ID)
        self.weth = normalize_address(weth_address or config.WETH_ADDRESS)
        self.native = str(native_address or config.NATIVE_TOKEN_ADDRESS)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    def _api_token(self, token: str) -> str:
        # Sells settle in native ETH, so WETH legs go out as the native sentinel.
        return self.native if normalize_address(token) == self.weth else token

    def _headers(self) -> dict[str, str]:
        return {"x-client-id": self.client_id} if self.client_id else {}

    def _classify(self, result: HttpResult) -> VenueFailure:
        if result.rate_limited:
            return self.fail(ErrorKind.RATE_LIMITED, result.error or "http_status_429")
        if result.timed_out:
            return self.fail(ErrorKind.TIMEOUT, result.error)
        body = result.data if isinstance(result.data, dict) else {}
        try:
            code = int(body.get("code", 0) or 0)
        except (TypeError, ValueError):
            code = 0
        if code in NO_ROUTE_CODES:
            return self.fail(ErrorKind.NO_ROUTE, f"api_code_{code}")
        return self.fail(ErrorKind.MALFORMED, result.error or f"api_code_{code}")

    @staticmethod
    def _price_impact_pct(summary: dict[str, Any]) -> float:
        try:
            usd_in = float(summary.get("amountInUsd") or 0)
            usd_out = float(summary.get("amountOutUsd") or 0)
        except (TypeError, ValueError):
            return 0.0
        if usd_in <= 0 or usd_out <= 0:
            return 0.0
        return max(0.0, (1.0 - usd_out / usd_in) * 100.0)

    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        max_slippage_bps: int,
        timeout: float,
    ) -> RouteQuote | VenueFailure:
        if int(amount_in) <= 0:
            return self.fail(ErrorKind.NO_ROUTE, "zero_amount")
        url = f"{self.base_url}/{self.chain}/api/v1/routes"
        params = {
            "tokenIn": self._api_token(token_in),
            "tokenOut": self._api_token(token_out),
            "amountIn": str(int(amount_in)),
        }
        result = await self._http.get_json(url, source=self.name, params=params, headers=self._headers(), max_attempts=1)
        if not result.ok:
            return self._classify(result)

        data = result.data.get("data") if isinstance(result.data, dict) else None
        summary = (data or {}).get("routeSummary") if isinstance(data, dict) else None
        if not isinstance(summary, dict):
            return self.fail(ErrorKind.MALFORMED, "missing_route_summary")
        try:
            amount_out = int(summary.get("amountOut") or 0)
        except (TypeError, ValueError):
            return self.fail(ErrorKind.MALFORMED, "bad_amount_out")
        if amount_out <= 0:
            return self.fail(ErrorKind.NO_ROUTE, "quote_zero")

        return RouteQuote(
            venue=self.name,
            token_in=normalize_address(token_in),
            token_out=normalize_address(token_out),
            amount_in=int(amount_in),
            amount_out=amount_out,
            price_impact_pct=self._price_impact_pct(summary),
            slippage_bps=int(max_slippage_bps),
            payload={"routeSummary": summary, "routerAddress": str(data.get("routerAddress") or "")},
        )

    async def build_transaction(self, quote: RouteQuote, owner: str) -> UnsignedTransaction | VenueFailure:
        url = f"{self.base_url}/{self.chain}/api/v1/route/build"
        body = {
            "routeSummary": quote.payload.get("routeSummary"),
            "sender": owner,
            "recipient": owner,
            "slippageTolerance": int(quote.slippage_bps),
        }
        result = await self._http.post_json(url, body, source=self.name, headers=self._headers(), max_attempts=1)
        if not result.ok:
            return self._classify(result)
        data = result.data.get("data") if isinstance(result.data, dict) else None
        if not isinstance(data, dict) or not data.get("data") or not data.get("routerAddress"):
            return self.fail(ErrorKind.MALFORMED, "missing_build_fields")

        router = str(data["routerAddress"])
        selling_erc20 = normalize_address(quote.token_in) != self.weth
        try:
            value = int(data.get("transactionValue") or 0)
        except (TypeError, ValueError):
            value = 0
        if not selling_erc20 and value <= 0:
            value = int(quote.amount_in)
        return UnsignedTransaction(
            venue=self.name,
            to=router,
            data=str(data["data"]),
            value=value,
            approve_token=quote.token_in if selling_erc20 else "",
            approve_spender=router if selling_erc20 else "",
            approve_amount=int(quote.amount_in) if selling_erc20 else 0,
            quote=quote,
        )
