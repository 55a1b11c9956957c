"""
risk_manager.py — pre-trade guard rails.

Every check here is a pure function of (candidate, ledger snapshot, limits):
no I/O, no clock, no randomness. The engine asks `evaluate()` / `select_batch()`
before any order is built, so a rejected candidate never reaches the signer.

Checks, first failing one wins:
1) price strictly inside (0, 1)
2) key not already open and not blocked by an unknown outcome
3) open positions < max_positions
4) exposure + size <= portfolio cap
5) daily spent + size <= daily cap
6) two-sided book with spread (cents) <= max_spread_cents
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import FrozenSet, List, Optional, Sequence, Tuple

log = logging.getLogger("risk")

ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True, slots=True)
class GuardLimits:
    max_positions: int = 3
    max_trade_usdc: Decimal = Decimal("5")
    portfolio_cap: Decimal = Decimal("15")
    daily_cap: Decimal = Decimal("10")
    max_spread_cents: int = 5
    max_new_per_cycle: int = 2


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """
    Read-only view of the ledger, as seen by the guard.

    Exposure, daily spend and the position count are worst case: a BUY whose
    outcome is unknown (`pending_buy_keys`) is counted as if it had filled.
    """
    open_keys: FrozenSet[str] = frozenset()
    blocked_keys: FrozenSet[str] = frozenset()
    exposure_usdc: Decimal = ZERO
    daily_spent: Decimal = ZERO
    pending_buy_keys: FrozenSet[str] = frozenset()

    @property
    def open_count(self) -> int:
        return len(self.open_keys | self.pending_buy_keys)

    def with_entry(self, key: str, size_usdc: Decimal) -> "LedgerSnapshot":
        return replace(
            self,
            open_keys=self.open_keys | {key},
            exposure_usdc=self.exposure_usdc + size_usdc,
            daily_spent=self.daily_spent + size_usdc,
        )


@dataclass(frozen=True, slots=True)
class TradeCandidate:
    key: str                         # "{condition_id}_{token_id}"
    token_id: str
    condition_id: str
    price: Decimal                   # limit price (0..1)
    size_usdc: Decimal
    best_bid: Optional[Decimal] = None
    best_ask: Optional[Decimal] = None
    title: str = ""
    outcome: str = ""
    neg_risk: bool = False
    score: float = 0.0
    reasons: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class GuardDecision:
    allowed: bool
    reason: str
    candidate: TradeCandidate

    def __bool__(self) -> bool:
        return self.allowed


def spread_cents(best_bid: Optional[Decimal], best_ask: Optional[Decimal]) -> Optional[int]:
    """Spread in whole cents, half-up rounding. None for a one-sided/empty book."""
    if best_bid is None or best_ask is None:
        return None
    cents = (best_ask - best_bid) * 100
    return int(cents.quantize(ONE, rounding=ROUND_HALF_UP))


def evaluate(c: TradeCandidate, snap: LedgerSnapshot, limits: GuardLimits) -> GuardDecision:
    if not (ZERO < c.price < ONE):
        return GuardDecision(False, f"price {c.price} outside (0,1)", c)

    if c.key in snap.open_keys:
        return GuardDecision(False, "position already open", c)
    if c.key in snap.blocked_keys:
        return GuardDecision(False, "unknown outcome pending for key", c)

    if snap.open_count >= limits.max_positions:
        return GuardDecision(False, f"max positions reached ({snap.open_count}/{limits.max_positions})", c)

    if snap.exposure_usdc + c.size_usdc > limits.portfolio_cap:
        return GuardDecision(
            False,
            f"portfolio cap: {snap.exposure_usdc} + {c.size_usdc} > {limits.portfolio_cap}",
            c,
        )

    if snap.daily_spent + c.size_usdc > limits.daily_cap:
        return GuardDecision(
            False,
            f"daily cap: {snap.daily_spent} + {c.size_usdc} > {limits.daily_cap}",
            c,
        )

    sc = spread_cents(c.best_bid, c.best_ask)
    if sc is None:
        return GuardDecision(False, "no two-sided book", c)
    if sc > limits.max_spread_cents:
        return GuardDecision(False, f"spread {sc}c > {limits.max_spread_cents}c", c)

    return GuardDecision(True, "ok", c)


def select_batch(
    candidates: Sequence[TradeCandidate],
    snap: LedgerSnapshot,
    limits: GuardLimits,
) -> Tuple[List[TradeCandidate], List[GuardDecision]]:
    """
    Evaluate candidates in order. Accepted trades are folded into the running
    snapshot so later candidates see their exposure. At most
    `limits.max_new_per_cycle` are accepted.

    Returns (accepted, all decisions).
    """
    accepted: List[TradeCandidate] = []
    decisions: List[GuardDecision] = []
    running = snap

    for c in candidates:
        if len(accepted) >= limits.max_new_per_cycle:
            decisions.append(GuardDecision(False, f"per-cycle limit ({limits.max_new_per_cycle}) reached", c))
            continue
        d = evaluate(c, running, limits)
        decisions.append(d)
        if d.allowed:
            accepted.append(c)
            running = running.with_entry(c.key, c.size_usdc)
        else:
            log.debug("guard reject %s: %s", c.key, d.reason)

    return accepted, decisions
