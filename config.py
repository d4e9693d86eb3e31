"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _parse_csv(raw: str) -> List[str]:
    return [item.strip().lower() for item in str(raw or "").split(",") if item.strip()]


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except Exception:
            continue
    return out


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


RUN_TAG = os.getenv("RUN_TAG", "").strip()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///positions.db")

# Chain
CHAIN_NAME = os.getenv("CHAIN_NAME", "base")
EVM_CHAIN_ID = os.getenv("EVM_CHAIN_ID", "8453")
RPC_PRIMARY = os.getenv("RPC_PRIMARY", "").strip()
RPC_SECONDARY = os.getenv("RPC_SECONDARY", "").strip()
RPC_TIMEOUT_SECONDS = max(3, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
WETH_ADDRESS = os.getenv("WETH_ADDRESS", "0x4200000000000000000000000000000000000006").strip().lower()
# Aggregator APIs address native ETH with this sentinel instead of WETH.
NATIVE_TOKEN_ADDRESS = os.getenv(
    "NATIVE_TOKEN_ADDRESS",
    "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE",
).strip()

# Wallet
LIVE_WALLET_ADDRESS = os.getenv("LIVE_WALLET_ADDRESS", "").strip()
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "").strip()
LIVE_CHAIN_ID = int(os.getenv("LIVE_CHAIN_ID", EVM_CHAIN_ID))
ACCOUNT_ID = os.getenv("ACCOUNT_ID", LIVE_WALLET_ADDRESS).strip().lower()

# Transaction policy
LIVE_SLIPPAGE_BPS = max(1, int(os.getenv("LIVE_SLIPPAGE_BPS", "200")))
LIVE_SWAP_DEADLINE_SECONDS = max(30, int(os.getenv("LIVE_SWAP_DEADLINE_SECONDS", "45")))
LIVE_TX_TIMEOUT_SECONDS = max(10, int(os.getenv("LIVE_TX_TIMEOUT_SECONDS", "90")))
LIVE_MAX_GAS_GWEI = float(os.getenv("LIVE_MAX_GAS_GWEI", "2.0"))
LIVE_PRIORITY_FEE_GWEI = float(os.getenv("LIVE_PRIORITY_FEE_GWEI", "0.02"))
LIVE_MAX_SWAP_GAS = max(50_000, int(os.getenv("LIVE_MAX_SWAP_GAS", "650000")))

# Venues, tried strictly in this order.
VENUE_PRIORITY = _parse_csv(os.getenv("VENUE_PRIORITY", "aggregator,router,launchpad"))
VENUE_TIMEOUT_SECONDS = max(1.0, float(os.getenv("VENUE_TIMEOUT_SECONDS", "8")))
AGGREGATOR_API_URL = os.getenv("AGGREGATOR_API_URL", "https://aggregator-api.kyberswap.com").strip().rstrip("/")
AGGREGATOR_CHAIN = os.getenv("AGGREGATOR_CHAIN", CHAIN_NAME).strip().lower()
AGGREGATOR_CLIENT_ID = os.getenv("AGGREGATOR_CLIENT_ID", "routeguard").strip()
LIVE_ROUTER_ADDRESS = os.getenv("LIVE_ROUTER_ADDRESS", "0x4752ba5DBc23f44D87826276BF6Fd6b1C372aD24").strip()
LAUNCHPAD_ADDRESS = os.getenv("LAUNCHPAD_ADDRESS", "").strip()

# Trade safety
SELL_PROBE_AMOUNT_TOKENS = max(0.000001, float(os.getenv("SELL_PROBE_AMOUNT_TOKENS", "1.0")))
SAFETY_BUY_CHECK_ETH = max(0.000001, float(os.getenv("SAFETY_BUY_CHECK_ETH", "0.001")))
SELL_TAX_BLOCK_BPS = max(1, int(os.getenv("SELL_TAX_BLOCK_BPS", "5000")))
SELL_TAX_WARN_BPS = max(1, int(os.getenv("SELL_TAX_WARN_BPS", "1500")))
HIGH_PRICE_IMPACT_WARN_PERCENT = float(os.getenv("HIGH_PRICE_IMPACT_WARN_PERCENT", "5"))
VERY_HIGH_PRICE_IMPACT_PERCENT = float(os.getenv("VERY_HIGH_PRICE_IMPACT_PERCENT", "10"))

# Static honeypot signal (honeypot.is)
HONEYPOT_API_ENABLED = _env_bool("HONEYPOT_API_ENABLED", "true")
HONEYPOT_API_URL = os.getenv("HONEYPOT_API_URL", "https://api.honeypot.is/v2/IsHoneypot").strip()
HONEYPOT_API_TIMEOUT_SECONDS = max(3, int(os.getenv("HONEYPOT_API_TIMEOUT_SECONDS", "10")))
HONEYPOT_API_CACHE_TTL_SECONDS = max(60, int(os.getenv("HONEYPOT_API_CACHE_TTL_SECONDS", "1800")))
HONEYPOT_API_FAIL_CLOSED = _env_bool("HONEYPOT_API_FAIL_CLOSED", "true")

# Sell lock
SELL_LOCK_MAX_HOLD_SECONDS = max(5.0, float(os.getenv("SELL_LOCK_MAX_HOLD_SECONDS", "60")))

# Liquidity recovery worker
LIQUIDITY_RETRY_INTERVAL_SECONDS = max(1.0, float(os.getenv("LIQUIDITY_RETRY_INTERVAL_SECONDS", "30")))
LIQUIDITY_RETRY_BATCH_SIZE = max(1, int(os.getenv("LIQUIDITY_RETRY_BATCH_SIZE", "3")))
LIQUIDITY_RETRY_BATCH_PAUSE_SECONDS = max(0.0, float(os.getenv("LIQUIDITY_RETRY_BATCH_PAUSE_SECONDS", "0.5")))

# Tokens read from the wallet each tick; holdings without a stored row join the recovery pool.
WALLET_SCAN_TOKENS = _parse_csv(os.getenv("WALLET_SCAN_TOKENS", ""))

# Take-profit / stop-loss sweep over open positions. A threshold of 0 disables that side.
AUTO_EXIT_ENABLED = _env_bool("AUTO_EXIT_ENABLED", "true")
AUTO_EXIT_INTERVAL_SECONDS = max(1.0, float(os.getenv("AUTO_EXIT_INTERVAL_SECONDS", "20")))
AUTO_EXIT_TAKE_PROFIT_PERCENT = max(0.0, float(os.getenv("AUTO_EXIT_TAKE_PROFIT_PERCENT", "100")))
AUTO_EXIT_STOP_LOSS_PERCENT = max(0.0, float(os.getenv("AUTO_EXIT_STOP_LOSS_PERCENT", "50")))
AUTO_EXIT_MAX_GAIN_PERCENT = max(1.0, float(os.getenv("AUTO_EXIT_MAX_GAIN_PERCENT", "10000")))
AUTO_EXIT_MAX_LOSS_PERCENT = min(100.0, max(1.0, float(os.getenv("AUTO_EXIT_MAX_LOSS_PERCENT", "99.99"))))

# Leftover-balance reconciliation. A remainder is dust only below BOTH floors.
RECONCILE_DUST_AMOUNT = max(0.0, float(os.getenv("RECONCILE_DUST_AMOUNT", "0.001")))
RECONCILE_DUST_PERCENT = max(0.0, float(os.getenv("RECONCILE_DUST_PERCENT", "1.0")))
RECONCILE_RETRY_SLIPPAGE_BPS = max(0, int(os.getenv("RECONCILE_RETRY_SLIPPAGE_BPS", "0")))
# The remainder retry is always at least this much wider than the first sell.
RECONCILE_RETRY_SLIPPAGE_STEP_BPS = max(1, int(os.getenv("RECONCILE_RETRY_SLIPPAGE_STEP_BPS", "100")))

# HTTP client
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(os.getenv("HTTP_SOURCE_429_COOLDOWNS", "aggregator:20,honeypot:60"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
TRADE_HISTORY_FILE = os.getenv("TRADE_HISTORY_FILE", os.path.join(LOG_DIR, "trade_history.jsonl"))
