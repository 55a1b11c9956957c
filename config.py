"""
config.py — central configuration and .env loading.

Safe defaults:
- LIVE_MODE is False (paper trading only).
- Requires explicit LIVE_MODE=True AND POLY_PRIVATE_KEY set to trade.
- Guard limits default to the small budgets the bots were run with
  ($5/trade, $15 portfolio, 3 positions, $10/day, 5c max spread).
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
import os

from dotenv import load_dotenv

from errors import ConfigurationError
from risk_manager import GuardLimits


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    try:
        return float(v) if v is not None else float(default)
    except Exception:
        return float(default)


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    try:
        return int(v) if v is not None else int(default)
    except Exception:
        return int(default)


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip()


@dataclass(slots=True)
class Settings:
    # --- Mode ---
    LIVE_MODE: bool = False                # must be explicitly enabled
    BOT_MODE: str = "auto"                 # "auto" (scan + score) or "copy" (mirror a target wallet)
    LOG_LEVEL: str = "INFO"

    # --- Polymarket endpoints ---
    POLY_GAMMA_BASE: str = "https://gamma-api.polymarket.com"
    POLY_CLOB_BASE: str = "https://clob.polymarket.com"
    POLY_DATA_BASE: str = "https://data-api.polymarket.com"

    # --- Polymarket chain (Polygon mainnet) ---
    POLY_CHAIN_ID: int = 137
    POLY_CTF_EXCHANGE: str = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"
    POLY_NEG_RISK_EXCHANGE: str = "0xC5d563A36AE78145C45a50134d48A1215220f80a"
    POLY_NEG_RISK_ADAPTER: str = "0xd91E80cF2E7be2e162c6513ceD06f1dD0dA35296"
    POLY_USDC_E: str = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
    POLY_CTF: str = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"

    POLYGON_RPC_URL: str = "https://polygon-bor-rpc.publicnode.com"
    MIN_GAS_BALANCE: float = 0.01          # MATIC (POL) needed for approval transactions

    # --- Credentials (keep in .env) ---
    POLY_PRIVATE_KEY: str = ""             # required for L1 auth + order signing
    POLY_SIGNATURE_TYPE: int = 0           # 0=EOA

    # Optional: pre-provisioned L2 creds; re-derived on the first auth failure
    POLY_API_KEY: str = ""
    POLY_API_SECRET: str = ""
    POLY_API_PASSPHRASE: str = ""
    CLOB_CREATE_KEY: bool = False          # True: POST /auth/api-key first, derive on failure

    # --- Orders ---
    FEE_RATE_BPS: int = 200                # 2%
    ORDER_TYPE: str = "FOK"

    # --- Guards ---
    MAX_TRADE_USDC: float = 5.0
    MAX_PORTFOLIO_USDC: float = 15.0
    MAX_POSITIONS: int = 3
    MAX_DAILY_USDC: float = 10.0
    MAX_SPREAD_CENTS: int = 5
    MAX_NEW_PER_CYCLE: int = 2
    MIN_TRADE_USDC: float = 1.0

    # --- Strategy knobs (auto mode) ---
    MIN_EDGE: float = 0.05
    MIN_LIQUIDITY: float = 3000.0
    SCAN_MAX_MARKETS: int = 500

    # --- Copy mode ---
    TARGET_USERNAME: str = ""
    TARGET_ADDRESS: str = ""

    # --- Loop / timeouts ---
    SCAN_INTERVAL_SEC: int = 45
    ERROR_BACKOFF_SEC: float = 5.0
    ORDER_PAUSE_SEC: float = 1.0           # pause between consecutive submissions
    HTTP_TIMEOUT_SEC: float = 15.0
    SCAN_TIMEOUT_SEC: float = 30.0
    ORDER_TIMEOUT_SEC: float = 20.0
    AUTH_STARTUP_ATTEMPTS: int = 5
    AUTH_REFRESH_ATTEMPTS: int = 3
    AUTH_BACKOFF_SEC: float = 3.0
    AUTH_BACKOFF_CAP_SEC: float = 30.0
    UNKNOWN_OUTCOME_HOLD_SEC: int = 3600   # block re-entry on a key after an ambiguous submit

    # --- State ---
    STATE_PATH: str = "data/polyguard-state.json"
    LOCK_PATH: str = "data/polyguard.lock"
    TRADING_TZ: str = "America/New_York"   # daily spend resets at local midnight here

    def guard_limits(self) -> GuardLimits:
        return GuardLimits(
            max_positions=int(self.MAX_POSITIONS),
            max_trade_usdc=Decimal(str(self.MAX_TRADE_USDC)),
            portfolio_cap=Decimal(str(self.MAX_PORTFOLIO_USDC)),
            daily_cap=Decimal(str(self.MAX_DAILY_USDC)),
            max_spread_cents=int(self.MAX_SPREAD_CENTS),
            max_new_per_cycle=int(self.MAX_NEW_PER_CYCLE),
        )

    def validate(self) -> None:
        if self.BOT_MODE not in ("auto", "copy"):
            raise ConfigurationError("BOT_MODE must be 'auto' or 'copy'", details={"BOT_MODE": self.BOT_MODE})
        if self.LIVE_MODE and not self.POLY_PRIVATE_KEY:
            raise ConfigurationError("LIVE_MODE requires POLY_PRIVATE_KEY")
        if self.BOT_MODE == "copy" and not (self.TARGET_ADDRESS or self.TARGET_USERNAME):
            raise ConfigurationError("copy mode requires TARGET_ADDRESS or TARGET_USERNAME")
        if self.MAX_TRADE_USDC <= 0 or self.MAX_POSITIONS <= 0:
            raise ConfigurationError("MAX_TRADE_USDC and MAX_POSITIONS must be positive")


def load_settings(dotenv_path: str | None = ".env") -> Settings:
    if dotenv_path:
        p = Path(dotenv_path)
        if p.exists():
            load_dotenv(p)

    s = Settings()
    s.LIVE_MODE = _env_bool("LIVE_MODE", s.LIVE_MODE)
    s.BOT_MODE = _env_str("BOT_MODE", s.BOT_MODE).lower()
    s.LOG_LEVEL = _env_str("LOG_LEVEL", s.LOG_LEVEL)

    s.POLY_GAMMA_BASE = _env_str("POLY_GAMMA_BASE", s.POLY_GAMMA_BASE)
    s.POLY_CLOB_BASE = _env_str("POLY_CLOB_BASE", s.POLY_CLOB_BASE)
    s.POLY_DATA_BASE = _env_str("POLY_DATA_BASE", s.POLY_DATA_BASE)
    s.POLY_CHAIN_ID = _env_int("POLY_CHAIN_ID", s.POLY_CHAIN_ID)
    s.POLYGON_RPC_URL = _env_str("POLYGON_RPC_URL", s.POLYGON_RPC_URL)
    s.MIN_GAS_BALANCE = _env_float("MIN_GAS_BALANCE", s.MIN_GAS_BALANCE)

    s.POLY_PRIVATE_KEY = _env_str("POLY_PRIVATE_KEY", s.POLY_PRIVATE_KEY)
    s.POLY_SIGNATURE_TYPE = _env_int("POLY_SIGNATURE_TYPE", s.POLY_SIGNATURE_TYPE)
    s.POLY_API_KEY = _env_str("POLY_API_KEY", s.POLY_API_KEY)
    s.POLY_API_SECRET = _env_str("POLY_API_SECRET", s.POLY_API_SECRET)
    s.POLY_API_PASSPHRASE = _env_str("POLY_API_PASSPHRASE", s.POLY_API_PASSPHRASE)
    s.CLOB_CREATE_KEY = _env_bool("CLOB_CREATE_KEY", s.CLOB_CREATE_KEY)

    s.FEE_RATE_BPS = _env_int("FEE_RATE_BPS", s.FEE_RATE_BPS)
    s.ORDER_TYPE = _env_str("ORDER_TYPE", s.ORDER_TYPE).upper()

    s.MAX_TRADE_USDC = _env_float("MAX_TRADE_USDC", s.MAX_TRADE_USDC)
    s.MAX_PORTFOLIO_USDC = _env_float("MAX_PORTFOLIO_USDC", s.MAX_PORTFOLIO_USDC)
    s.MAX_POSITIONS = _env_int("MAX_POSITIONS", s.MAX_POSITIONS)
    s.MAX_DAILY_USDC = _env_float("MAX_DAILY_USDC", s.MAX_DAILY_USDC)
    s.MAX_SPREAD_CENTS = _env_int("MAX_SPREAD_CENTS", s.MAX_SPREAD_CENTS)
    s.MAX_NEW_PER_CYCLE = _env_int("MAX_NEW_PER_CYCLE", s.MAX_NEW_PER_CYCLE)
    s.MIN_TRADE_USDC = _env_float("MIN_TRADE_USDC", s.MIN_TRADE_USDC)

    s.MIN_EDGE = _env_float("MIN_EDGE", s.MIN_EDGE)
    s.MIN_LIQUIDITY = _env_float("MIN_LIQUIDITY", s.MIN_LIQUIDITY)
    s.SCAN_MAX_MARKETS = _env_int("SCAN_MAX_MARKETS", s.SCAN_MAX_MARKETS)

    s.TARGET_USERNAME = _env_str("TARGET_USERNAME", s.TARGET_USERNAME)
    s.TARGET_ADDRESS = _env_str("TARGET_ADDRESS", s.TARGET_ADDRESS)

    s.SCAN_INTERVAL_SEC = _env_int("SCAN_INTERVAL_SEC", s.SCAN_INTERVAL_SEC)
    s.ERROR_BACKOFF_SEC = _env_float("ERROR_BACKOFF_SEC", s.ERROR_BACKOFF_SEC)
    s.ORDER_PAUSE_SEC = _env_float("ORDER_PAUSE_SEC", s.ORDER_PAUSE_SEC)
    s.HTTP_TIMEOUT_SEC = _env_float("HTTP_TIMEOUT_SEC", s.HTTP_TIMEOUT_SEC)
    s.SCAN_TIMEOUT_SEC = _env_float("SCAN_TIMEOUT_SEC", s.SCAN_TIMEOUT_SEC)
    s.ORDER_TIMEOUT_SEC = _env_float("ORDER_TIMEOUT_SEC", s.ORDER_TIMEOUT_SEC)
    s.AUTH_STARTUP_ATTEMPTS = _env_int("AUTH_STARTUP_ATTEMPTS", s.AUTH_STARTUP_ATTEMPTS)
    s.AUTH_REFRESH_ATTEMPTS = _env_int("AUTH_REFRESH_ATTEMPTS", s.AUTH_REFRESH_ATTEMPTS)
    s.AUTH_BACKOFF_SEC = _env_float("AUTH_BACKOFF_SEC", s.AUTH_BACKOFF_SEC)
    s.AUTH_BACKOFF_CAP_SEC = _env_float("AUTH_BACKOFF_CAP_SEC", s.AUTH_BACKOFF_CAP_SEC)
    s.UNKNOWN_OUTCOME_HOLD_SEC = _env_int("UNKNOWN_OUTCOME_HOLD_SEC", s.UNKNOWN_OUTCOME_HOLD_SEC)

    s.STATE_PATH = _env_str("STATE_PATH", s.STATE_PATH)
    s.LOCK_PATH = _env_str("LOCK_PATH", s.LOCK_PATH)
    s.TRADING_TZ = _env_str("TRADING_TZ", s.TRADING_TZ)

    return s
