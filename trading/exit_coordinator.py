"""One exit attempt end to end: lock, route, submit, confirm, reconcile, persist.

The per-token sell lock is held for the whole attempt and released in a
`finally` on every path. The on-chain balance is authoritative: the
recorded amount is only ever corrected from chain, never the other way.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import config
from trading.errors import VENUE_FALLBACK_KINDS, ErrorKind
from trading.positions import (
    STATUS_CLOSED,
    STATUS_OPEN,
    STATUS_PENDING,
    STATUS_WAITING,
    BalanceReader,
    Position,
    PositionStore,
    RiskSignalSource,
    Signer,
    TokenBalance,
    TradeHistorySink,
)
from trading.route_resolver import RouteResolution, RouteResolver
from trading.sell_lock import (
    SOURCE_LIQUIDITY_WORKER,
    SOURCE_MANUAL_EXIT,
    SOURCE_PARTIAL_RETRY,
    ExclusiveSellLock,
    make_holder_tag,
)
from trading.trade_safety import dynamic_slippage_bps
from utils.addressing import normalize_address, short_address
from venues.base import RouteQuote, VenueFailure

logger = logging.getLogger(__name__)

EXIT_CLOSED = "CLOSED"
EXIT_PARTIAL = "PARTIAL"
EXIT_WAITING = "WAITING"
EXIT_RATE_LIMITED = "RATE_LIMITED"
EXIT_LOCK_BUSY = "LOCK_BUSY"
EXIT_TOKEN_NOT_HELD = "TOKEN_NOT_HELD"
EXIT_PENDING = "PENDING"
EXIT_FAILED = "FAILED"
EXIT_HONEYPOT = "HONEYPOT"
EXIT_ABANDONED = "ABANDONED"
EXIT_REOPENED = "REOPENED"

# Outcomes the user has to look at; everything else resolves on its own.
ATTENTION_KINDS = frozenset({EXIT_PARTIAL, EXIT_TOKEN_NOT_HELD, EXIT_PENDING, EXIT_FAILED, EXIT_HONEYPOT})
RETRY_KINDS = frozenset({EXIT_WAITING, EXIT_RATE_LIMITED, EXIT_LOCK_BUSY})

WEI_PER_ETH = 10**18


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExitOutcome:
    kind: str
    position_id: str
    token_address: str
    message: str = ""
    tx_hash: str = ""
    venue: str = ""
    error_kind: ErrorKind | None = None
    remaining_amount: float | None = None
    retried: bool = False
    failures: list[str] = field(default_factory=list)

    @property
    def needs_attention(self) -> bool:
        return self.kind in ATTENTION_KINDS

    @property
    def will_retry(self) -> bool:
        return self.kind in RETRY_KINDS


@dataclass
class _Attempt:
    ok: bool = False
    pending: bool = False
    tx_hash: str = ""
    kind: ErrorKind | None = None
    detail: str = ""


@dataclass
class _Submission:
    confirmed: bool = False
    pending: bool = False
    no_route: bool = False
    rate_limited: bool = False
    tx_hash: str = ""
    quote: RouteQuote | None = None
    kinds: list[ErrorKind] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


class ExitExecutionCoordinator:
    def __init__(
        self,
        resolver: RouteResolver,
        signer: Signer,
        balances: BalanceReader,
        store: PositionStore,
        lock: ExclusiveSellLock,
        *,
        risk_signal: RiskSignalSource | None = None,
        history: TradeHistorySink | None = None,
        owner: str | None = None,
        weth_address: str | None = None,
        dust_amount: float | None = None,
        dust_percent: float | None = None,
        retry_slippage_bps: int | None = None,
        retry_slippage_step_bps: int | None = None,
        confirm_timeout_seconds: float | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.resolver = resolver
        self.signer = signer
        self.balances = balances
        self.store = store
        self.lock = lock
        self.risk_signal = risk_signal
        self.history = history
        self.owner = str(owner or getattr(signer, "wallet", "") or config.LIVE_WALLET_ADDRESS)
        self.weth = normalize_address(weth_address or config.WETH_ADDRESS)
        self.dust_amount = float(dust_amount if dust_amount is not None else config.RECONCILE_DUST_AMOUNT)
        self.dust_percent = float(dust_percent if dust_percent is not None else config.RECONCILE_DUST_PERCENT)
        self.retry_slippage_bps = int(
            retry_slippage_bps if retry_slippage_bps is not None else config.RECONCILE_RETRY_SLIPPAGE_BPS
        )
        self.retry_slippage_step_bps = max(
            1,
            int(
                retry_slippage_step_bps
                if retry_slippage_step_bps is not None
                else config.RECONCILE_RETRY_SLIPPAGE_STEP_BPS
            ),
        )
        self.confirm_timeout_seconds = float(
            confirm_timeout_seconds if confirm_timeout_seconds is not None else config.LIVE_TX_TIMEOUT_SECONDS
        )
        self._now = now
        # Tokens whose sells revert and that the risk signal flags; kept out of automatic retries.
        self.review_tokens: set[str] = set()

    # ------------------------------------------------------------------ entry points

    async def exit_position(self, position: Position, source: str = SOURCE_MANUAL_EXIT) -> ExitOutcome:
        """Sell the full on-chain balance of `position.token_address`."""

        async def body() -> ExitOutcome:
            balance = await self.balances.fetch_on_chain_balance(position.token_address, self.owner)
            if balance.amount_raw <= 0:
                return self._token_not_held(position)
            self._correct_recorded_amount(position, balance)
            resolution = await self.resolver.resolve(position.token_address, self.weth, balance.amount_raw)
            if resolution.quote is None:
                return self._no_route(position, resolution)
            return await self._execute_locked(position, resolution.quote, balance, source)

        return await self._with_lock(position, source, body)

    async def execute_resolved(
        self,
        position: Position,
        resolution: RouteResolution,
        source: str = SOURCE_LIQUIDITY_WORKER,
    ) -> ExitOutcome:
        """Submit a route someone else already resolved (the recovery worker)."""
        if resolution.quote is None:
            raise ValueError("execute_resolved requires a resolution with a quote")

        async def body() -> ExitOutcome:
            balance = await self.balances.fetch_on_chain_balance(position.token_address, self.owner)
            if balance.amount_raw <= 0:
                return self._token_not_held(position)
            self._correct_recorded_amount(position, balance)
            quote = resolution.quote
            if quote.amount_in != balance.amount_raw:
                # Holding moved since the route was quoted; requote what is actually held.
                fresh = await self.resolver.resolve(position.token_address, self.weth, balance.amount_raw)
                if fresh.quote is None:
                    return self._no_route(position, fresh)
                quote = fresh.quote
            return await self._execute_locked(position, quote, balance, source)

        return await self._with_lock(position, source, body)

    async def quote_exit(self, position: Position) -> tuple[TokenBalance, RouteResolution]:
        """Read the holding and resolve a sell route for it without submitting anything."""
        balance = await self.balances.fetch_on_chain_balance(position.token_address, self.owner)
        if balance.amount_raw <= 0:
            return balance, RouteResolution()
        resolution = await self.resolver.resolve(position.token_address, self.weth, balance.amount_raw)
        return balance, resolution

    # ------------------------------------------------------------------ manual pool controls

    def move_to_waiting(self, position: Position) -> ExitOutcome:
        if position.is_closed:
            return self._outcome(EXIT_FAILED, position, "Position is already closed.")
        if self.lock.is_locked(position.token_address):
            return self._lock_busy(position)
        # A manual hand-off clears any honeypot review hold.
        self.review_tokens.discard(normalize_address(position.token_address))
        self._set_waiting(position)
        self._history(position, stage="waiting", reason="moved_to_waiting")
        return self._outcome(EXIT_WAITING, position, "Moved to the liquidity recovery pool.")

    def move_back_to_open(self, position: Position) -> ExitOutcome:
        if position.is_closed:
            return self._outcome(EXIT_FAILED, position, "Closed positions cannot be reopened.")
        if not position.is_wallet_scan:
            self.store.update_status(
                position.id,
                position.account_id,
                STATUS_OPEN,
                waiting_since=None,
                liquidity_check_count=0,
            )
        position.status = STATUS_OPEN
        position.waiting_since = None
        position.liquidity_check_count = 0
        logger.info("EXIT reopened id=%s token=%s", position.id, short_address(position.token_address))
        self._history(position, stage="manual", reason="reopened")
        return self._outcome(EXIT_REOPENED, position, "Moved back to open.")

    def abandon(self, position: Position, reason: str = "manual") -> ExitOutcome:
        """Close without selling. Refused while a sell for the token is in flight."""
        if position.is_closed:
            return self._outcome(EXIT_FAILED, position, "Position is already closed.")
        holder = make_holder_tag(SOURCE_MANUAL_EXIT)
        if not self.lock.try_acquire(position.token_address, holder):
            return self._lock_busy(position)
        try:
            exit_reason = f"ABANDONED:{reason}"
            if not position.is_wallet_scan:
                self.store.update_status(
                    position.id,
                    position.account_id,
                    STATUS_CLOSED,
                    closed_at=self._now(),
                    exit_reason=exit_reason,
                )
            position.status = STATUS_CLOSED
            position.exit_reason = exit_reason
            logger.info("EXIT abandoned id=%s token=%s reason=%s", position.id, short_address(position.token_address), reason)
            self._history(position, stage="manual", reason=exit_reason)
            return self._outcome(EXIT_ABANDONED, position, f"Abandoned ({reason}).")
        finally:
            self.lock.release(position.token_address, holder)

    def record_liquidity_check(self, position: Position) -> None:
        """One more no-route poll for a waiting position; status stays as is."""
        now = self._now()
        position.liquidity_check_count = int(position.liquidity_check_count or 0) + 1
        position.liquidity_last_checked_at = now
        if position.is_wallet_scan:
            return
        self.store.update_liquidity_check(
            position.id,
            position.account_id,
            count=position.liquidity_check_count,
            checked_at=now,
        )

    def is_immaterial(self, remaining_ui: float, original_ui: float) -> bool:
        """Dust only when below both the absolute floor and the percent-of-original floor."""
        if remaining_ui <= 0:
            return True
        pct_floor = max(0.0, float(original_ui)) * self.dust_percent / 100.0
        return remaining_ui < self.dust_amount and remaining_ui < pct_floor

    def remainder_retry_slippage_bps(self, sold_quote: RouteQuote) -> int:
        """Always wider than the tolerance the first sell actually went out with."""
        widened = int(sold_quote.slippage_bps) + self.retry_slippage_step_bps
        configured = self.retry_slippage_bps or dynamic_slippage_bps(
            sold_quote.price_impact_pct, is_sell=True, retry_count=1
        )
        return min(max(widened, configured), 5000)

    # ------------------------------------------------------------------ internals

    async def _with_lock(
        self,
        position: Position,
        source: str,
        body: Callable[[], Awaitable[ExitOutcome]],
    ) -> ExitOutcome:
        token = position.token_address
        if position.is_closed:
            return self._outcome(EXIT_FAILED, position, "Position is already closed.")
        if self.lock.is_locked(token):
            return self._lock_busy(position)
        holder = make_holder_tag(source)
        if not self.lock.try_acquire(token, holder):
            return self._lock_busy(position)
        keepalive = asyncio.create_task(self._keep_lock(token, holder))
        try:
            return await body()
        finally:
            keepalive.cancel()
            await asyncio.gather(keepalive, return_exceptions=True)
            self.lock.release(token, holder)

    async def _keep_lock(self, token: str, holder: str) -> None:
        # Receipt waits can outlast max_hold_seconds; the entry must stay fresh for the whole attempt.
        interval = max(0.001, float(self.lock.max_hold_seconds) / 3.0)
        while True:
            await asyncio.sleep(interval)
            if not self.lock.refresh(token, holder):
                logger.warning("SELL_LOCK refresh_lost token=%s holder=%s", short_address(token), holder)
                return

    async def _execute_locked(
        self,
        position: Position,
        quote: RouteQuote,
        balance: TokenBalance,
        source: str,
    ) -> ExitOutcome:
        sub = await self._submit_with_fallback(position, quote, balance.amount_raw)
        if sub.confirmed:
            return await self._reconcile(position, balance, sub, source)
        if sub.pending:
            return self._mark_pending(position, sub)
        if sub.kinds and all(kind == ErrorKind.REVERTED for kind in sub.kinds):
            if await self._risk_flags_honeypot(position.token_address):
                logger.warning(
                    "EXIT honeypot id=%s token=%s failures=%s",
                    position.id,
                    short_address(position.token_address),
                    ";".join(sub.failures),
                )
                self._escalate_honeypot(position)
                self._history(position, stage="exit_submit", reason="honeypot")
                return self._outcome(
                    EXIT_HONEYPOT,
                    position,
                    "Sells revert and the token is flagged as a honeypot; manual review needed.",
                    error_kind=ErrorKind.HONEYPOT,
                    failures=sub.failures,
                )
        if sub.rate_limited:
            return self._outcome(
                EXIT_RATE_LIMITED,
                position,
                "Fallback venue rate limited; retry shortly.",
                error_kind=ErrorKind.RATE_LIMITED,
                failures=sub.failures,
            )
        if sub.no_route:
            outcome = self._enter_waiting(position, ";".join(sub.failures))
            outcome.failures = sub.failures
            return outcome

        last_kind = sub.kinds[-1] if sub.kinds else ErrorKind.SUBMIT_FAILED
        logger.warning(
            "EXIT failed id=%s token=%s kind=%s failures=%s",
            position.id,
            short_address(position.token_address),
            last_kind.value,
            ";".join(sub.failures),
        )
        self._history(position, stage="exit_submit", reason="sell_fail", error_kind=last_kind.value)
        return self._outcome(
            EXIT_FAILED,
            position,
            f"Sell failed ({last_kind.value}).",
            error_kind=last_kind,
            failures=sub.failures,
        )

    async def _submit_once(self, quote: RouteQuote, retry_count: int = 0) -> _Attempt:
        venue = self.resolver.get_venue(quote.venue)
        if venue is None:
            return _Attempt(kind=ErrorKind.MALFORMED, detail=f"unknown_venue:{quote.venue}")
        quote.slippage_bps = max(
            int(quote.slippage_bps),
            dynamic_slippage_bps(quote.price_impact_pct, is_sell=True, retry_count=retry_count),
        )
        try:
            built = await venue.build_transaction(quote, self.owner)
        except Exception as exc:
            logger.warning("EXIT build_error venue=%s err=%s", quote.venue, exc)
            return _Attempt(kind=ErrorKind.MALFORMED, detail=f"build_exception:{exc.__class__.__name__}")
        if isinstance(built, VenueFailure):
            return _Attempt(kind=built.kind, detail=built.detail)

        submitted = await self.signer.sign_and_submit(built)
        if not submitted.success:
            return _Attempt(kind=submitted.error_kind or ErrorKind.SUBMIT_FAILED, detail=submitted.error)
        confirmation = await self.signer.wait_for_confirmation(submitted.tx_hash, self.confirm_timeout_seconds)
        if confirmation.confirmed:
            return _Attempt(ok=True, tx_hash=submitted.tx_hash)
        if confirmation.pending:
            return _Attempt(pending=True, tx_hash=submitted.tx_hash, kind=ErrorKind.UNCONFIRMED)
        return _Attempt(
            tx_hash=submitted.tx_hash,
            kind=confirmation.error_kind or ErrorKind.REVERTED,
            detail=confirmation.error,
        )

    async def _submit_with_fallback(self, position: Position, quote: RouteQuote, amount_raw: int) -> _Submission:
        """Submit on the resolved venue; on a venue-level failure try the next venue once."""
        sub = _Submission()
        tried: list[str] = []
        current = quote
        while True:
            tried.append(current.venue)
            attempt = await self._submit_once(current)
            if attempt.ok:
                sub.confirmed = True
                sub.tx_hash = attempt.tx_hash
                sub.quote = current
                return sub
            if attempt.pending:
                sub.pending = True
                sub.tx_hash = attempt.tx_hash
                sub.quote = current
                return sub

            kind = attempt.kind or ErrorKind.SUBMIT_FAILED
            sub.kinds.append(kind)
            sub.failures.append(f"{current.venue}:{kind.value}:{attempt.detail}" if attempt.detail else f"{current.venue}:{kind.value}")
            logger.warning(
                "EXIT attempt_failed id=%s venue=%s kind=%s detail=%s",
                position.id,
                current.venue,
                kind.value,
                attempt.detail,
            )
            if len(tried) >= 2 or kind not in VENUE_FALLBACK_KINDS:
                return sub

            fallback = await self.resolver.resolve(position.token_address, self.weth, amount_raw, exclude_venues=tried)
            if fallback.quote is None:
                sub.failures.extend(str(item) for item in fallback.failures)
                sub.rate_limited = fallback.rate_limited
                sub.no_route = not fallback.rate_limited
                return sub
            logger.info("EXIT fallback id=%s from=%s to=%s", position.id, current.venue, fallback.venue)
            current = fallback.quote

    async def _reconcile(
        self,
        position: Position,
        before: TokenBalance,
        sub: _Submission,
        source: str,
    ) -> ExitOutcome:
        sold_quote = sub.quote
        if sold_quote is None:
            logger.error("EXIT reconcile_without_quote id=%s tx=%s", position.id, sub.tx_hash)
            return self._outcome(
                EXIT_FAILED,
                position,
                f"Sell {sub.tx_hash} confirmed without a quote; reconcile the position manually.",
                tx_hash=sub.tx_hash,
                error_kind=ErrorKind.MALFORMED,
            )
        value_eth = sold_quote.amount_out / WEI_PER_ETH
        self._history(
            position,
            stage="exit_submit",
            reason="sell_live",
            venue=sold_quote.venue,
            tx_hash=sub.tx_hash,
            amount=sold_quote.amount_in / float(10**before.decimals),
            value_eth=value_eth,
        )

        after = await self.balances.fetch_on_chain_balance(position.token_address, self.owner)
        if self.is_immaterial(after.amount_ui, before.amount_ui):
            reason = "sell_live" if after.amount_raw <= 0 else "reconciled_dust"
            return self._close(position, sub.tx_hash, sold_quote.venue, before.amount_ui, value_eth, source, reason)

        logger.info(
            "EXIT remainder id=%s token=%s remaining=%.8f original=%.8f",
            position.id,
            short_address(position.token_address),
            after.amount_ui,
            before.amount_ui,
        )
        retry_slip = self.remainder_retry_slippage_bps(sold_quote)
        final = after
        retry_tx = ""
        retry = await self.resolver.resolve(position.token_address, self.weth, after.amount_raw, slippage_bps=retry_slip)
        if retry.quote is not None:
            attempt = await self._submit_once(retry.quote, retry_count=1)
            if attempt.pending:
                return self._mark_pending(position, _Submission(pending=True, tx_hash=attempt.tx_hash, quote=retry.quote))
            if attempt.ok:
                retry_tx = attempt.tx_hash
                value_eth += retry.quote.amount_out / WEI_PER_ETH
                self._history(
                    position,
                    stage="exit_submit",
                    reason="remainder_retry",
                    source=SOURCE_PARTIAL_RETRY,
                    venue=retry.quote.venue,
                    tx_hash=retry_tx,
                    amount=after.amount_ui,
                )
                final = await self.balances.fetch_on_chain_balance(position.token_address, self.owner)
            else:
                logger.warning(
                    "EXIT remainder_retry_failed id=%s kind=%s detail=%s",
                    position.id,
                    (attempt.kind or ErrorKind.SUBMIT_FAILED).value,
                    attempt.detail,
                )

        if retry_tx and self.is_immaterial(final.amount_ui, before.amount_ui):
            outcome = self._close(
                position, retry_tx, retry.venue, before.amount_ui, value_eth, source, "remainder_retry"
            )
            outcome.retried = True
            return outcome

        return self._partial(position, final, sub.tx_hash, retried=bool(retry.quote is not None))

    def _close(
        self,
        position: Position,
        tx_hash: str,
        venue: str,
        sold_ui: float,
        value_eth: float,
        source: str,
        reason: str,
    ) -> ExitOutcome:
        now = self._now()
        self.review_tokens.discard(normalize_address(position.token_address))
        exit_price = value_eth / sold_ui if sold_ui > 0 else 0.0
        fields: dict[str, Any] = {
            "closed_at": now,
            "exit_price": exit_price,
            "exit_tx_hash": tx_hash,
            "exit_reason": source,
            "current_price": exit_price,
            "current_value": value_eth,
        }
        if position.entry_value > 0:
            fields["pnl_value"] = value_eth - position.entry_value
            fields["pnl_percent"] = (value_eth - position.entry_value) / position.entry_value * 100.0
        if not position.is_wallet_scan:
            self.store.update_status(position.id, position.account_id, STATUS_CLOSED, **fields)
        position.status = STATUS_CLOSED
        position.exit_tx_hash = tx_hash
        position.exit_price = exit_price
        logger.info(
            "EXIT closed id=%s token=%s venue=%s tx=%s value_eth=%.8f",
            position.id,
            short_address(position.token_address),
            venue,
            tx_hash,
            value_eth,
        )
        self._history(position, stage="trade_close", reason=reason, venue=venue, tx_hash=tx_hash, value_eth=value_eth)
        return self._outcome(EXIT_CLOSED, position, "Position closed.", tx_hash=tx_hash, venue=venue, remaining_amount=0.0)

    def _partial(self, position: Position, final: TokenBalance, tx_hash: str, retried: bool) -> ExitOutcome:
        if not position.is_wallet_scan:
            self.store.update_amount(position.id, position.account_id, final.amount_ui)
            self.store.update_status(position.id, position.account_id, STATUS_OPEN, liquidity_check_count=0)
        position.amount = final.amount_ui
        position.status = STATUS_OPEN
        position.waiting_since = None
        logger.warning(
            "EXIT partial id=%s token=%s remaining=%.8f retried=%s",
            position.id,
            short_address(position.token_address),
            final.amount_ui,
            retried,
        )
        self._history(position, stage="trade_partial", reason="partial_exit", tx_hash=tx_hash, amount=final.amount_ui)
        return self._outcome(
            EXIT_PARTIAL,
            position,
            f"Partial exit: {final.amount_ui:.8f} tokens still held.",
            tx_hash=tx_hash,
            error_kind=ErrorKind.BALANCE_MISMATCH,
            remaining_amount=final.amount_ui,
            retried=retried,
        )

    def _mark_pending(self, position: Position, sub: _Submission) -> ExitOutcome:
        if not position.is_wallet_scan:
            self.store.update_status(position.id, position.account_id, STATUS_PENDING, exit_tx_hash=sub.tx_hash)
        position.status = STATUS_PENDING
        logger.warning(
            "EXIT unconfirmed id=%s token=%s tx=%s",
            position.id,
            short_address(position.token_address),
            sub.tx_hash,
        )
        self._history(position, stage="exit_submit", reason="unconfirmed", tx_hash=sub.tx_hash)
        return self._outcome(
            EXIT_PENDING,
            position,
            f"Transaction {sub.tx_hash} not confirmed in time; check it before retrying.",
            tx_hash=sub.tx_hash,
            venue=sub.quote.venue if sub.quote else "",
            error_kind=ErrorKind.UNCONFIRMED,
        )

    def _no_route(self, position: Position, resolution: RouteResolution) -> ExitOutcome:
        failures = [str(item) for item in resolution.failures]
        if resolution.rate_limited:
            logger.info("EXIT rate_limited id=%s token=%s", position.id, short_address(position.token_address))
            return self._outcome(
                EXIT_RATE_LIMITED,
                position,
                "Route providers are rate limiting; retry shortly.",
                error_kind=ErrorKind.RATE_LIMITED,
                failures=failures,
            )
        outcome = self._enter_waiting(position, resolution.summary())
        outcome.failures = failures
        return outcome

    def _enter_waiting(self, position: Position, detail: str) -> ExitOutcome:
        if position.status == STATUS_WAITING:
            self.record_liquidity_check(position)
        else:
            self._set_waiting(position)
            self._history(position, stage="waiting", reason="no_route")
        logger.info(
            "EXIT waiting id=%s token=%s checks=%s detail=%s",
            position.id,
            short_address(position.token_address),
            position.liquidity_check_count,
            detail,
        )
        return self._outcome(
            EXIT_WAITING,
            position,
            "No sell route right now; will keep trying automatically.",
            error_kind=ErrorKind.NO_ROUTE,
        )

    def _set_waiting(self, position: Position) -> None:
        now = self._now()
        if not position.is_wallet_scan:
            self.store.update_status(
                position.id,
                position.account_id,
                STATUS_WAITING,
                waiting_since=now,
                liquidity_check_count=0,
            )
        position.status = STATUS_WAITING
        position.waiting_since = now
        position.liquidity_check_count = 0

    def _token_not_held(self, position: Position) -> ExitOutcome:
        logger.warning("EXIT token_not_held id=%s token=%s", position.id, short_address(position.token_address))
        self._history(position, stage="exit_submit", reason="token_not_held")
        return self._outcome(
            EXIT_TOKEN_NOT_HELD,
            position,
            "Wallet no longer holds this token; reconcile the position manually.",
            error_kind=ErrorKind.TOKEN_NOT_HELD,
            remaining_amount=0.0,
        )

    def _correct_recorded_amount(self, position: Position, balance: TokenBalance) -> None:
        recorded = float(position.amount or 0.0)
        drift = abs(balance.amount_ui - recorded)
        if drift <= max(self.dust_amount, recorded * self.dust_percent / 100.0):
            return
        logger.warning(
            "EXIT balance_mismatch id=%s token=%s recorded=%.8f on_chain=%.8f",
            position.id,
            short_address(position.token_address),
            recorded,
            balance.amount_ui,
        )
        if not position.is_wallet_scan:
            self.store.update_amount(position.id, position.account_id, balance.amount_ui)
        position.amount = balance.amount_ui

    def needs_review(self, token_address: str) -> bool:
        return normalize_address(token_address) in self.review_tokens

    def _escalate_honeypot(self, position: Position) -> None:
        """Park the position for manual review so no automatic trigger sells it again."""
        self.review_tokens.add(normalize_address(position.token_address))
        if not position.is_wallet_scan:
            self.store.update_status(
                position.id,
                position.account_id,
                STATUS_PENDING,
                exit_reason=ErrorKind.HONEYPOT.value,
            )
        position.status = STATUS_PENDING
        position.waiting_since = None
        position.exit_reason = ErrorKind.HONEYPOT.value

    async def _risk_flags_honeypot(self, token_address: str) -> bool:
        if self.risk_signal is None:
            return False
        try:
            signal = await self.risk_signal.check(token_address)
        except Exception as exc:
            logger.warning("EXIT risk_signal_error token=%s err=%s", short_address(token_address), exc)
            return False
        return bool(signal.available and signal.is_honeypot)

    def _lock_busy(self, position: Position) -> ExitOutcome:
        return self._outcome(
            EXIT_LOCK_BUSY,
            position,
            "A sell for this token is already in progress.",
            error_kind=ErrorKind.LOCK_BUSY,
        )

    @staticmethod
    def _outcome(kind: str, position: Position, message: str, **kwargs: Any) -> ExitOutcome:
        return ExitOutcome(
            kind=kind,
            position_id=position.id,
            token_address=normalize_address(position.token_address),
            message=message,
            **kwargs,
        )

    def _history(self, position: Position, *, stage: str, reason: str, **fields: Any) -> None:
        if self.history is None:
            return
        event = {
            "stage": stage,
            "reason": reason,
            "side": "sell",
            "position_id": position.id,
            "account_id": position.account_id,
            "token_address": position.token_address,
            "symbol": position.symbol,
        }
        event.update(fields)
        try:
            self.history.record(event)
        except Exception as exc:
            logger.warning("TRADE_HISTORY record_failed id=%s err=%s", position.id, exc)
