"""Safety-gated buys that open a position on confirmation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import config
from trading.errors import ErrorKind
from trading.positions import STATUS_OPEN, BalanceReader, Position, PositionStore, Signer, TradeHistorySink
from trading.route_resolver import RouteResolver
from trading.trade_safety import TradeSafetyDecision, TradeSafetyValidator, dynamic_slippage_bps
from utils.addressing import normalize_address, short_address
from venues.base import VenueFailure

logger = logging.getLogger(__name__)


@dataclass
class EntryResult:
    ok: bool
    decision: TradeSafetyDecision | None = None
    position: Position | None = None
    tx_hash: str = ""
    venue: str = ""
    error_kind: ErrorKind | None = None
    message: str = ""


class EntryExecutor:
    def __init__(
        self,
        validator: TradeSafetyValidator,
        resolver: RouteResolver,
        signer: Signer,
        balances: BalanceReader,
        store: PositionStore,
        *,
        history: TradeHistorySink | None = None,
        account_id: str | None = None,
        owner: str | None = None,
        weth_address: str | None = None,
        confirm_timeout_seconds: float | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.validator = validator
        self.resolver = resolver
        self.signer = signer
        self.balances = balances
        self.store = store
        self.history = history
        self.account_id = str(account_id if account_id is not None else config.ACCOUNT_ID)
        self.owner = str(owner or getattr(signer, "wallet", "") or config.LIVE_WALLET_ADDRESS)
        self.weth = normalize_address(weth_address or config.WETH_ADDRESS)
        self.confirm_timeout_seconds = float(
            confirm_timeout_seconds if confirm_timeout_seconds is not None else config.LIVE_TX_TIMEOUT_SECONDS
        )
        self._now = now

    def _fail(self, kind: ErrorKind, message: str, **kwargs: Any) -> EntryResult:
        logger.warning("ENTRY failed kind=%s message=%s", kind.value, message)
        return EntryResult(ok=False, error_kind=kind, message=message, **kwargs)

    def _record(self, event: dict[str, Any]) -> None:
        if self.history is None:
            return
        try:
            self.history.record(event)
        except Exception as exc:
            logger.warning("TRADE_HISTORY record_failed err=%s", exc)

    async def buy(self, token_address: str, spend_eth: float, symbol: str = "") -> EntryResult:
        token = normalize_address(token_address)
        spend_wei = int(float(spend_eth) * 10**18)
        if spend_wei <= 0:
            return self._fail(ErrorKind.MALFORMED, "spend_eth must be positive")

        decision = await self.validator.validate_pre_buy(token, spend_wei)
        self._record(
            {
                "stage": "safety_check",
                "side": "buy",
                "reason": decision.block_reason.lower() if not decision.approved else "approved",
                "token_address": token,
                "symbol": symbol,
                "warnings": [w.kind for w in decision.warnings],
            }
        )
        if not decision.approved:
            return EntryResult(ok=False, decision=decision, message=decision.block_message)

        resolution = decision.liquidity_check
        if resolution is None or resolution.quote is None or resolution.quote.amount_in != spend_wei:
            resolution = await self.resolver.resolve(self.weth, token, spend_wei)
        if resolution.quote is None:
            kind = ErrorKind.RATE_LIMITED if resolution.rate_limited else ErrorKind.NO_ROUTE
            return self._fail(kind, f"buy route vanished: {resolution.summary()}", decision=decision)

        quote = resolution.quote
        quote.slippage_bps = max(int(quote.slippage_bps), dynamic_slippage_bps(quote.price_impact_pct, is_sell=False))
        venue = self.resolver.get_venue(quote.venue)
        if venue is None:
            return self._fail(ErrorKind.MALFORMED, f"unknown venue {quote.venue}", decision=decision)

        before = await self.balances.fetch_on_chain_balance(token, self.owner)
        built = await venue.build_transaction(quote, self.owner)
        if isinstance(built, VenueFailure):
            return self._fail(built.kind, str(built), decision=decision, venue=quote.venue)
        submitted = await self.signer.sign_and_submit(built)
        if not submitted.success:
            return self._fail(
                submitted.error_kind or ErrorKind.SUBMIT_FAILED,
                submitted.error or "submit failed",
                decision=decision,
                venue=quote.venue,
            )
        confirmation = await self.signer.wait_for_confirmation(submitted.tx_hash, self.confirm_timeout_seconds)
        if not confirmation.confirmed:
            kind = confirmation.error_kind or ErrorKind.REVERTED
            return self._fail(
                kind,
                f"buy not confirmed tx={submitted.tx_hash} {confirmation.error}".strip(),
                decision=decision,
                tx_hash=submitted.tx_hash,
                venue=quote.venue,
            )

        after = await self.balances.fetch_on_chain_balance(token, self.owner)
        acquired_raw = max(0, after.amount_raw - before.amount_raw)
        acquired_ui = acquired_raw / float(10**after.decimals)
        entry_price = (float(spend_eth) / acquired_ui) if acquired_ui > 0 else 0.0
        position = self.store.insert(
            Position(
                id=uuid.uuid4().hex,
                account_id=self.account_id,
                token_address=token,
                symbol=symbol,
                amount=acquired_ui,
                entry_price=entry_price,
                current_price=entry_price,
                entry_value=float(spend_eth),
                current_value=float(spend_eth),
                status=STATUS_OPEN,
                opened_at=self._now(),
            )
        )
        logger.info(
            "ENTRY opened id=%s token=%s venue=%s amount=%.8f spend_eth=%.6f tx=%s",
            position.id,
            short_address(token),
            quote.venue,
            acquired_ui,
            float(spend_eth),
            submitted.tx_hash,
        )
        self._record(
            {
                "stage": "trade_open",
                "side": "buy",
                "reason": "buy_live",
                "position_id": position.id,
                "token_address": token,
                "symbol": symbol,
                "venue": quote.venue,
                "tx_hash": submitted.tx_hash,
                "amount": acquired_ui,
                "value_eth": float(spend_eth),
            }
        )
        return EntryResult(
            ok=True,
            decision=decision,
            position=position,
            tx_hash=submitted.tx_hash,
            venue=quote.venue,
        )
