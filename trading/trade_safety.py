"""Pre-buy trade safety: buy-route check plus a small-probe sell simulation.

The sell tax estimate is the price impact of a tiny probe sell. That
conflates AMM impact with a real transfer tax, so treat it as a best-effort
heuristic, never as ground truth.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import config
from trading.errors import ErrorKind
from trading.positions import BalanceReader, RiskSignal, RiskSignalSource
from trading.route_resolver import RouteResolution, RouteResolver
from utils.addressing import normalize_address, short_address

logger = logging.getLogger(__name__)

BLOCK_ILLIQUID = "ILLIQUID"
BLOCK_HONEYPOT = "HONEYPOT"
BLOCK_HIGH_TAX = "HIGH_TAX"
BLOCK_RATE_LIMITED = "RATE_LIMITED"

WARN_HIGH_IMPACT = "high_impact"
WARN_SELL_TAX = "sell_tax"
WARN_SELL_PROBE_FAILED = "sell_probe_failed"
WARN_THIN_LIQUIDITY = "thin_liquidity"

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"


def dynamic_slippage_bps(price_impact_pct: float = 0.0, is_sell: bool = False, retry_count: int = 0) -> int:
    """Slippage tolerance sized to the quoted impact, widened 50% per retry and capped at 50%."""
    bps = 150 if is_sell else 100
    impact = float(price_impact_pct or 0.0)
    if impact >= float(config.VERY_HIGH_PRICE_IMPACT_PERCENT):
        bps = max(bps, 2000)
    elif impact >= float(config.HIGH_PRICE_IMPACT_WARN_PERCENT):
        bps = max(bps, 1500)
    if retry_count > 0:
        bps = min(int(bps * (1 + retry_count * 0.5)), 5000)
    return int(bps)


@dataclass
class TradeWarning:
    kind: str
    severity: str
    message: str


@dataclass
class SellSimulation:
    can_sell: bool
    estimated_tax_bps: int | None = None
    price_impact_pct: float | None = None
    venue: str = ""
    error: str = ""
    rate_limited: bool = False
    # Probe failed but the static signal did not corroborate a honeypot.
    uncorroborated: bool = False
    risk_signal: RiskSignal | None = None


@dataclass
class TradeSafetyDecision:
    approved: bool
    liquidity_check: RouteResolution | None = None
    sell_simulation: SellSimulation | None = None
    warnings: list[TradeWarning] = field(default_factory=list)
    block_reason: str = ""
    block_message: str = ""

    def as_dict(self) -> dict[str, Any]:
        sim = self.sell_simulation
        return {
            "approved": self.approved,
            "block_reason": self.block_reason,
            "block_message": self.block_message,
            "buy_venue": self.liquidity_check.venue if self.liquidity_check else "",
            "can_sell": sim.can_sell if sim else None,
            "estimated_tax_bps": sim.estimated_tax_bps if sim else None,
            "warnings": [{"kind": w.kind, "severity": w.severity, "message": w.message} for w in self.warnings],
        }


class SellSimulator:
    def __init__(
        self,
        resolver: RouteResolver,
        balances: BalanceReader,
        risk_signal: RiskSignalSource | None = None,
        *,
        probe_amount_tokens: float | None = None,
        fail_closed: bool | None = None,
        weth_address: str | None = None,
    ) -> None:
        self.resolver = resolver
        self.balances = balances
        self.risk_signal = risk_signal
        self.probe_amount_tokens = float(
            probe_amount_tokens if probe_amount_tokens is not None else config.SELL_PROBE_AMOUNT_TOKENS
        )
        self.fail_closed = bool(config.HONEYPOT_API_FAIL_CLOSED if fail_closed is None else fail_closed)
        self.weth = normalize_address(weth_address or config.WETH_ADDRESS)

    async def probe_amount_raw(self, token_address: str) -> int:
        decimals = int(max(0, min(36, await self.balances.token_decimals(token_address))))
        return max(1, int(self.probe_amount_tokens * (10**decimals)))

    async def _consult_risk_signal(self, token_address: str) -> RiskSignal:
        if self.risk_signal is None:
            return RiskSignal(available=False, detail="no_risk_source")
        return await self.risk_signal.check(token_address)

    async def simulate_sell(self, token_address: str, buy_route_found: bool = True) -> SellSimulation:
        probe_raw = await self.probe_amount_raw(token_address)
        resolution = await self.resolver.resolve(token_address, self.weth, probe_raw)

        if resolution.quote is not None:
            impact = float(resolution.quote.price_impact_pct)
            return SellSimulation(
                can_sell=True,
                estimated_tax_bps=int(round(impact * 100)),
                price_impact_pct=impact,
                venue=resolution.venue,
            )
        if resolution.rate_limited:
            return SellSimulation(can_sell=False, rate_limited=True, error=ErrorKind.RATE_LIMITED.value)
        if not buy_route_found:
            return SellSimulation(can_sell=False, error="no_route_either_direction")

        # No sell path where a buy path exists: strong but not conclusive honeypot evidence.
        signal = await self._consult_risk_signal(token_address)
        if signal.available and signal.is_honeypot:
            logger.warning(
                "SAFETY honeypot_confirmed token=%s detail=%s",
                short_address(token_address),
                signal.detail,
            )
            return SellSimulation(can_sell=False, error="honeypot_confirmed", risk_signal=signal)
        if not signal.available and self.fail_closed:
            logger.warning(
                "SAFETY honeypot_unverified token=%s detail=%s fail_closed=true",
                short_address(token_address),
                signal.detail,
            )
            return SellSimulation(can_sell=False, error="probe_failed_risk_unavailable", risk_signal=signal)
        tax_bps = int(round(signal.sell_tax_pct * 100)) if signal.available else None
        return SellSimulation(
            can_sell=True,
            estimated_tax_bps=tax_bps,
            error=f"probe_no_route:{resolution.summary()}",
            uncorroborated=True,
            risk_signal=signal,
        )


class TradeSafetyValidator:
    """Composes the buy-route check and sell simulation into one decision.

    Holds no mutable state, so checks for different tokens may run
    concurrently.
    """

    def __init__(
        self,
        resolver: RouteResolver,
        simulator: SellSimulator,
        *,
        tax_block_bps: int | None = None,
        tax_warn_bps: int | None = None,
        buy_check_wei: int | None = None,
        weth_address: str | None = None,
    ) -> None:
        self.resolver = resolver
        self.simulator = simulator
        self.tax_block_bps = int(tax_block_bps if tax_block_bps is not None else config.SELL_TAX_BLOCK_BPS)
        self.tax_warn_bps = int(tax_warn_bps if tax_warn_bps is not None else config.SELL_TAX_WARN_BPS)
        self.buy_check_wei = int(
            buy_check_wei if buy_check_wei is not None else int(float(config.SAFETY_BUY_CHECK_ETH) * 10**18)
        )
        self.weth = normalize_address(weth_address or config.WETH_ADDRESS)

    def _impact_warnings(self, impact_pct: float) -> list[TradeWarning]:
        if impact_pct >= float(config.VERY_HIGH_PRICE_IMPACT_PERCENT):
            return [TradeWarning(WARN_HIGH_IMPACT, SEVERITY_ERROR, f"Very high price impact {impact_pct:.1f}%")]
        if impact_pct >= float(config.HIGH_PRICE_IMPACT_WARN_PERCENT):
            return [TradeWarning(WARN_HIGH_IMPACT, SEVERITY_WARNING, f"High price impact {impact_pct:.1f}%")]
        return []

    @staticmethod
    def _liquidity_warnings(buy: RouteResolution) -> list[TradeWarning]:
        # Higher-priority venues had no route; only a fallback venue could quote.
        missing = [f.venue for f in buy.failures if f.kind == ErrorKind.NO_ROUTE]
        if not missing:
            return []
        return [
            TradeWarning(
                WARN_THIN_LIQUIDITY,
                SEVERITY_INFO,
                f"Only {buy.venue} quoted a buy; no route on {', '.join(missing)}.",
            )
        ]

    def _block(self, reason: str, message: str, **kwargs: Any) -> TradeSafetyDecision:
        decision = TradeSafetyDecision(approved=False, block_reason=reason, block_message=message, **kwargs)
        logger.info("SAFETY blocked reason=%s message=%s", reason, message)
        return decision

    async def validate_pre_buy(self, token_address: str, spend_wei: int | None = None) -> TradeSafetyDecision:
        token = normalize_address(token_address)
        amount = int(spend_wei if spend_wei is not None else self.buy_check_wei)

        buy = await self.resolver.resolve(self.weth, token, amount)
        if buy.quote is None:
            if buy.rate_limited:
                return self._block(
                    BLOCK_RATE_LIMITED,
                    "Route providers are rate limiting requests; try again shortly.",
                    liquidity_check=buy,
                )
            return self._block(BLOCK_ILLIQUID, "No venue can quote a buy for this token.", liquidity_check=buy)

        sim = await self.simulator.simulate_sell(token, buy_route_found=True)
        if sim.rate_limited:
            return self._block(
                BLOCK_RATE_LIMITED,
                "Route providers are rate limiting requests; try again shortly.",
                liquidity_check=buy,
                sell_simulation=sim,
            )
        if not sim.can_sell:
            return self._block(
                BLOCK_HONEYPOT,
                f"Token cannot be sold back ({sim.error or 'sell simulation failed'}).",
                liquidity_check=buy,
                sell_simulation=sim,
            )
        tax_bps = int(sim.estimated_tax_bps or 0)
        if tax_bps >= self.tax_block_bps:
            return self._block(
                BLOCK_HIGH_TAX,
                f"Estimated sell tax {tax_bps / 100:.1f}% is at or above {self.tax_block_bps / 100:.0f}%.",
                liquidity_check=buy,
                sell_simulation=sim,
            )

        warnings = self._impact_warnings(float(buy.quote.price_impact_pct))
        warnings.extend(self._liquidity_warnings(buy))
        if tax_bps >= self.tax_warn_bps:
            warnings.append(TradeWarning(WARN_SELL_TAX, SEVERITY_WARNING, f"Estimated sell tax {tax_bps / 100:.1f}%"))
        if sim.uncorroborated:
            warnings.append(
                TradeWarning(WARN_SELL_PROBE_FAILED, SEVERITY_WARNING, "Sell probe found no route; static check passed.")
            )
        logger.info(
            "SAFETY approved token=%s venue=%s tax_bps=%s warnings=%s",
            short_address(token),
            buy.venue,
            tax_bps,
            ",".join(w.kind for w in warnings) or "-",
        )
        return TradeSafetyDecision(approved=True, liquidity_check=buy, sell_simulation=sim, warnings=warnings)
