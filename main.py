"""Entry point: recovery worker and one-shot trade commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler

import config
from database.db import SqlPositionStore
from monitor.honeypot_guard import HoneypotGuard
from trading.auto_exit import AutoExitSweep
from trading.entry_executor import EntryExecutor
from trading.errors import ConfigurationError, EngineError
from trading.exit_coordinator import ExitExecutionCoordinator, ExitOutcome
from trading.live_executor import LiveExecutor
from trading.liquidity_worker import LiquidityRecoveryWorker
from trading.route_resolver import RouteResolver
from trading.sell_lock import ExclusiveSellLock
from trading.trade_history import TradeHistoryLogger
from trading.trade_safety import SellSimulator, TradeSafetyValidator
from trading.wallet_scan import WalletScanner
from utils.http_client import ResilientHttpClient
from venues.aggregator import AggregatorVenue
from venues.base import VenueClient
from venues.onchain import BondingCurveVenue, UniswapV2RouterVenue


def configure_logging() -> None:
    os.makedirs(config.LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(config.APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Transport loggers are noisy at DEBUG and can echo RPC URLs with keys.
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: SqlPositionStore
    http: ResilientHttpClient
    executor: LiveExecutor
    resolver: RouteResolver
    guard: HoneypotGuard
    lock: ExclusiveSellLock
    coordinator: ExitExecutionCoordinator
    validator: TradeSafetyValidator
    entry: EntryExecutor

    async def close(self) -> None:
        await self.resolver.close()
        await self.http.close()


def build_venues(executor: LiveExecutor, http: ResilientHttpClient) -> list[VenueClient]:
    available: dict[str, VenueClient] = {}
    for name in config.VENUE_PRIORITY:
        if name == "aggregator":
            available[name] = AggregatorVenue(http)
        elif name == "router" and config.LIVE_ROUTER_ADDRESS:
            available[name] = UniswapV2RouterVenue(executor.w3)
        elif name == "launchpad" and config.LAUNCHPAD_ADDRESS:
            available[name] = BondingCurveVenue(executor.w3)
        else:
            logger.warning("VENUE skipped name=%s reason=not_configured", name)
    if not available:
        raise ConfigurationError("VENUE_PRIORITY has no usable venues")
    return list(available.values())


def build_engine() -> Engine:
    if not config.ACCOUNT_ID:
        raise ConfigurationError("ACCOUNT_ID (or LIVE_WALLET_ADDRESS) is empty")
    store = SqlPositionStore(config.DATABASE_URL)
    store.init_db()
    http = ResilientHttpClient(
        timeout_seconds=float(config.VENUE_TIMEOUT_SECONDS),
        source_limits={"aggregator": 4, "honeypot": 3},
    )
    executor = LiveExecutor()
    resolver = RouteResolver(build_venues(executor, http))
    guard = HoneypotGuard(http)
    history = TradeHistoryLogger()
    lock = ExclusiveSellLock()
    coordinator = ExitExecutionCoordinator(
        resolver,
        executor,
        executor,
        store,
        lock,
        risk_signal=guard,
        history=history,
    )
    simulator = SellSimulator(resolver, executor, guard)
    validator = TradeSafetyValidator(resolver, simulator)
    entry = EntryExecutor(validator, resolver, executor, executor, store, history=history)
    return Engine(
        store=store,
        http=http,
        executor=executor,
        resolver=resolver,
        guard=guard,
        lock=lock,
        coordinator=coordinator,
        validator=validator,
        entry=entry,
    )


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _outcome_payload(outcome: ExitOutcome) -> dict:
    return {
        "kind": outcome.kind,
        "position_id": outcome.position_id,
        "message": outcome.message,
        "tx_hash": outcome.tx_hash,
        "venue": outcome.venue,
        "error_kind": outcome.error_kind.value if outcome.error_kind else None,
        "remaining_amount": outcome.remaining_amount,
        "needs_attention": outcome.needs_attention,
        "failures": outcome.failures,
    }


def build_background(engine: Engine) -> tuple[LiquidityRecoveryWorker, AutoExitSweep | None]:
    scanner = WalletScanner(engine.executor, engine.store, owner=engine.executor.wallet)
    worker = LiquidityRecoveryWorker(engine.coordinator, engine.store, wallet_positions=scanner)
    sweep = AutoExitSweep(engine.coordinator, engine.store) if config.AUTO_EXIT_ENABLED else None
    return worker, sweep


async def run_worker(engine: Engine) -> int:
    worker, sweep = build_background(engine)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    worker.start()
    if sweep is not None:
        sweep.start()
    try:
        await stop.wait()
    finally:
        if sweep is not None:
            await sweep.stop()
        await worker.stop()
    return 0


async def _run(args: argparse.Namespace) -> int:
    engine = build_engine()
    try:
        if args.command == "worker":
            return await run_worker(engine)

        if args.command == "check":
            decision = await engine.validator.validate_pre_buy(args.token)
            _print(decision.as_dict())
            return 0 if decision.approved else 2

        if args.command == "buy":
            result = await engine.entry.buy(args.token, args.spend_eth, symbol=args.symbol)
            _print(
                {
                    "ok": result.ok,
                    "position_id": result.position.id if result.position else None,
                    "tx_hash": result.tx_hash,
                    "venue": result.venue,
                    "message": result.message,
                    "decision": result.decision.as_dict() if result.decision else None,
                }
            )
            return 0 if result.ok else 2

        position = engine.store.get(args.position_id, config.ACCOUNT_ID)
        if position is None:
            logger.error("Position not found id=%s account=%s", args.position_id, config.ACCOUNT_ID)
            return 1
        if args.command == "exit":
            outcome = await engine.coordinator.exit_position(position)
        elif args.command == "abandon":
            outcome = engine.coordinator.abandon(position, args.reason)
        elif args.command == "reopen":
            outcome = engine.coordinator.move_back_to_open(position)
        else:
            outcome = engine.coordinator.move_to_waiting(position)
        _print(_outcome_payload(outcome))
        return 1 if outcome.needs_attention else 0
    finally:
        await engine.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Route-checked DEX exits with liquidity recovery")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Run the liquidity recovery worker and auto-exit sweep until interrupted")

    p_exit = sub.add_parser("exit", help="Sell a position now")
    p_exit.add_argument("position_id")

    p_check = sub.add_parser("check", help="Run pre-buy trade safety checks")
    p_check.add_argument("token")

    p_buy = sub.add_parser("buy", help="Buy a token after safety checks")
    p_buy.add_argument("token")
    p_buy.add_argument("--spend-eth", type=float, required=True)
    p_buy.add_argument("--symbol", default="")

    p_abandon = sub.add_parser("abandon", help="Close a position without selling")
    p_abandon.add_argument("position_id")
    p_abandon.add_argument("--reason", default="manual")

    p_reopen = sub.add_parser("reopen", help="Move a waiting position back to open")
    p_reopen.add_argument("position_id")

    p_wait = sub.add_parser("wait", help="Hand a position to the liquidity recovery pool")
    p_wait.add_argument("position_id")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(_run(args))
    except EngineError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
