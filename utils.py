"""
utils.py — shared helpers: logging setup, time, JSON, fixed-point amounts, retry policy.

Notes:
- Money and share quantities are handled as decimal.Decimal; floats only reach
  log lines and the console.
- Exchange amounts are integers in micro-units (6 dp); conversions always
  round DOWN so an order never spends more than the stated budget.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Any, Awaitable, Callable, ClassVar, Optional, TypeVar
from zoneinfo import ZoneInfo


_LOG = logging.getLogger("utils")

T = TypeVar("T")

MICRO = Decimal("1000000")
SIX_DP = Decimal("0.000001")


class SecretRedactionFilter(logging.Filter):
    """
    Redacts the wallet key and L2 credentials from log records.
    Values come from the environment at construction time plus anything
    registered later (derived API creds) via `register()`.
    """
    _PATTERNS = [
        re.compile(r"(?i)(private[_ ]?key|secret|passphrase)(\s*[=:]\s*)([^\s,'\"}]+)"),
    ]

    _ENV_KEYS = (
        "POLY_PRIVATE_KEY",
        "POLY_API_KEY",
        "POLY_API_SECRET",
        "POLY_API_PASSPHRASE",
    )

    _registered: ClassVar[set[str]] = set()

    def __init__(self) -> None:
        super().__init__()
        self._exact: list[str] = []
        for k in self._ENV_KEYS:
            v = os.getenv(k)
            if v and len(v) >= 6:
                self._exact.append(v)

    @classmethod
    def register(cls, *values: str) -> None:
        for v in values:
            if v and len(v) >= 6:
                cls._registered.add(v)

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        red = msg

        for v in (*self._exact, *self._registered):
            if v in red:
                red = red.replace(v, "***REDACTED***")

        for pat in self._PATTERNS:
            red = pat.sub(r"\1\2***REDACTED***", red)

        if red != msg:
            record.msg = red
            record.args = ()
        return True


def setup_logging(level: str = "INFO") -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # Add redaction filter to every handler
    flt = SecretRedactionFilter()
    root = logging.getLogger()
    for h in root.handlers:
        h.addFilter(flt)


def utc_ts() -> int:
    return int(time.time())


def now_ms() -> int:
    return int(time.time() * 1000)


def safe_json_dumps(obj: Any) -> str:
    # Compact separators: the exact string is HMAC-signed and sent as the body
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def trading_day(tz_name: str, now: Optional[datetime] = None) -> str:
    """Calendar date (ISO) in the trading timezone."""
    tz = ZoneInfo(tz_name)
    dt = now.astimezone(tz) if now is not None else datetime.now(tz)
    return date(dt.year, dt.month, dt.day).isoformat()


# ──────────────────────────────────────────────────────────────────────────────
# Fixed-point amounts
# ──────────────────────────────────────────────────────────────────────────────

def to_decimal(x: Any) -> Decimal:
    """Decimal from str/int/float; floats go through str() so 0.2 stays 0.2."""
    if isinstance(x, Decimal):
        return x
    if isinstance(x, float):
        x = repr(x)
    try:
        return Decimal(str(x).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"not a decimal: {x!r}") from e


def floor6(x: Decimal) -> Decimal:
    return x.quantize(SIX_DP, rounding=ROUND_DOWN)


def to_micro(x: Decimal) -> int:
    """Round down to 6 dp, then scale to integer micro-units."""
    return int(floor6(x) * MICRO)


def from_micro(units: int) -> Decimal:
    return Decimal(int(units)) / MICRO


# ──────────────────────────────────────────────────────────────────────────────
# Retry policy
# ──────────────────────────────────────────────────────────────────────────────

def linear_backoff(step: float, cap: Optional[float] = None) -> Callable[[int], float]:
    """attempt 1 -> step, attempt 2 -> 2*step, ... optionally capped."""
    def _delay(attempt: int) -> float:
        d = float(step) * attempt
        return min(d, float(cap)) if cap is not None else d
    return _delay


@dataclass(slots=True)
class RetryPolicy:
    """
    max_attempts: total tries (>= 1).
    backoff: attempt number (1-based, the one that just failed) -> seconds to wait.
    retryable: exception -> bool; non-retryable errors propagate immediately.
    """
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: linear_backoff(3.0))
    retryable: Callable[[BaseException], bool] = lambda e: True
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    what: str = "operation",
    logger: Optional[logging.Logger] = None,
) -> T:
    log = logger or _LOG
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt >= attempts or not policy.retryable(e):
                log.error("%s failed after %d attempt(s): %s", what, attempt, e)
                raise
            delay = policy.backoff(attempt)
            log.warning("%s attempt %d/%d failed (%s). Retrying in %.1fs", what, attempt, attempts, e, delay)
            await policy.sleep(delay)
    raise AssertionError("unreachable")
