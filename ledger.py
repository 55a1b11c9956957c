"""
ledger.py — the Position Ledger: the bot's only durable record.

Lifecycle per key "{condition_id}_{token_id}":  absent -> open -> closed.

- open_position()  only after a BUY came back Filled
- close_position() only after a SELL came back Filled
- failures / rejections / ambiguous outcomes never transition a key;
  ambiguous ones are parked in `unknown` and block re-entry for a while

Every transition is persisted before the call returns. Money and share
quantities are Decimal in memory and decimal strings on disk.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.snapshot import LedgerRepository
from errors import LedgerError
from risk_manager import LedgerSnapshot
from utils import to_decimal, utc_ts

log = logging.getLogger("ledger")

STATE_VERSION = 1
ZERO = Decimal("0")

_DECIMAL_FIELDS = {
    "entry_price", "shares", "cost_usdc", "current_price", "unrealized_pnl",
    "exit_price", "proceeds_usdc", "realized_pnl", "amount", "price",
}


def _encode(obj: Any) -> Dict[str, Any]:
    return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(obj).items()}


def _decode(cls: Any, d: Dict[str, Any]) -> Any:
    kw: Dict[str, Any] = {}
    for k in cls.__dataclass_fields__:
        if k not in d:
            continue
        v = d[k]
        if k in _DECIMAL_FIELDS and v is not None:
            v = to_decimal(v)
        kw[k] = v
    return cls(**kw)


def position_key(condition_id: str, token_id: str) -> str:
    return f"{condition_id}_{token_id}"


@dataclass(slots=True)
class Position:
    token_id: str
    condition_id: str
    outcome: str
    title: str
    entry_price: Decimal
    shares: Decimal
    cost_usdc: Decimal
    neg_risk: bool = False
    opened_ts: int = 0
    order_id: str = ""
    current_price: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None

    @property
    def key(self) -> str:
        return position_key(self.condition_id, self.token_id)


@dataclass(frozen=True, slots=True)
class ClosedTrade:
    key: str
    title: str
    outcome: str
    shares: Decimal
    cost_usdc: Decimal
    exit_price: Decimal
    proceeds_usdc: Decimal
    realized_pnl: Decimal
    opened_ts: int
    closed_ts: int
    order_id: str = ""


@dataclass(frozen=True, slots=True)
class UnknownOutcome:
    key: str
    side: str
    salt: str
    token_id: str
    amount: Decimal              # USDC for BUY, shares for SELL
    price: Decimal
    ts: int
    detail: str = ""


@dataclass(slots=True)
class LedgerState:
    positions: Dict[str, Position] = field(default_factory=dict)
    history: List[ClosedTrade] = field(default_factory=list)
    unknown: Dict[str, UnknownOutcome] = field(default_factory=dict)
    daily_spent: Decimal = ZERO
    daily_reset_date: str = ""
    total_invested: Decimal = ZERO
    total_returned: Decimal = ZERO

    def to_json(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "positions": {k: _encode(p) for k, p in self.positions.items()},
            "history": [_encode(t) for t in self.history],
            "unknown": {k: _encode(u) for k, u in self.unknown.items()},
            "daily_spent": str(self.daily_spent),
            "daily_reset_date": self.daily_reset_date,
            "total_invested": str(self.total_invested),
            "total_returned": str(self.total_returned),
        }

    @classmethod
    def from_json(cls, doc: Dict[str, Any]) -> "LedgerState":
        ver = doc.get("version", STATE_VERSION)
        if ver != STATE_VERSION:
            raise LedgerError("unsupported state version", details={"version": ver})
        try:
            return cls(
                positions={k: _decode(Position, v) for k, v in (doc.get("positions") or {}).items()},
                history=[_decode(ClosedTrade, t) for t in doc.get("history") or []],
                unknown={k: _decode(UnknownOutcome, u) for k, u in (doc.get("unknown") or {}).items()},
                daily_spent=to_decimal(doc.get("daily_spent", "0")),
                daily_reset_date=str(doc.get("daily_reset_date") or ""),
                total_invested=to_decimal(doc.get("total_invested", "0")),
                total_returned=to_decimal(doc.get("total_returned", "0")),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise LedgerError(f"corrupt state document: {e}") from e


class PositionLedger:
    def __init__(self, repo: LedgerRepository):
        self.repo = repo
        self.state = LedgerState()

    @classmethod
    def open(cls, repo: LedgerRepository) -> "PositionLedger":
        led = cls(repo)
        led.load()
        return led

    # -------- persistence --------

    def load(self) -> None:
        doc = self.repo.load()
        self.state = LedgerState.from_json(doc) if doc is not None else LedgerState()
        log.info("Loaded %d open position(s), %d closed trade(s)", len(self.state.positions), len(self.state.history))

    def save(self) -> None:
        self.repo.save(self.state.to_json())

    # -------- reads --------

    @property
    def positions(self) -> Dict[str, Position]:
        return self.state.positions

    def get(self, key: str) -> Optional[Position]:
        return self.state.positions.get(key)

    def exposure(self) -> Decimal:
        return sum((p.cost_usdc for p in self.state.positions.values()), ZERO)

    def unrealized_total(self) -> Decimal:
        return sum((p.unrealized_pnl or ZERO for p in self.state.positions.values()), ZERO)

    def realized_total(self) -> Decimal:
        return sum((t.realized_pnl for t in self.state.history), ZERO)

    def pending_buys(self) -> List[UnknownOutcome]:
        """BUYs whose outcome is unknown; they may have filled."""
        return [u for u in self.state.unknown.values() if u.side == "BUY"]

    def snapshot(self) -> LedgerSnapshot:
        pending = self.pending_buys()
        worst_case = sum((u.amount for u in pending), ZERO)
        return LedgerSnapshot(
            open_keys=frozenset(self.state.positions),
            blocked_keys=frozenset(self.state.unknown),
            exposure_usdc=self.exposure() + worst_case,
            daily_spent=self.state.daily_spent + worst_case,
            pending_buy_keys=frozenset(u.key for u in pending),
        )

    # -------- transitions --------

    def open_position(
        self,
        *,
        token_id: str,
        condition_id: str,
        outcome: str,
        title: str,
        entry_price: Decimal,
        cost_usdc: Decimal,
        shares: Decimal,
        neg_risk: bool = False,
        order_id: str = "",
        ts: Optional[int] = None,
    ) -> Position:
        key = position_key(condition_id, token_id)
        if key in self.state.positions:
            raise LedgerError("position already open", details={"key": key})
        if cost_usdc <= 0 or shares <= 0:
            raise LedgerError("cost and shares must be positive", details={"key": key})

        pos = Position(
            token_id=str(token_id),
            condition_id=str(condition_id),
            outcome=outcome,
            title=title[:80],
            entry_price=entry_price,
            shares=shares,
            cost_usdc=cost_usdc,
            neg_risk=bool(neg_risk),
            opened_ts=int(ts if ts is not None else utc_ts()),
            order_id=order_id,
        )
        self.state.positions[key] = pos
        self.state.daily_spent += cost_usdc
        self.state.total_invested += cost_usdc
        self.save()
        return pos

    def mark(self, key: str, price: Decimal) -> Optional[Position]:
        pos = self.state.positions.get(key)
        if pos is None:
            return None
        pos.current_price = price
        pos.unrealized_pnl = pos.shares * price - pos.cost_usdc
        return pos

    def close_position(self, key: str, exit_price: Decimal, *, order_id: str = "", ts: Optional[int] = None) -> ClosedTrade:
        pos = self.state.positions.get(key)
        if pos is None:
            raise LedgerError("no open position", details={"key": key})

        proceeds = pos.shares * exit_price
        trade = ClosedTrade(
            key=key,
            title=pos.title,
            outcome=pos.outcome,
            shares=pos.shares,
            cost_usdc=pos.cost_usdc,
            exit_price=exit_price,
            proceeds_usdc=proceeds,
            realized_pnl=proceeds - pos.cost_usdc,
            opened_ts=pos.opened_ts,
            closed_ts=int(ts if ts is not None else utc_ts()),
            order_id=order_id,
        )
        del self.state.positions[key]
        self.state.history.append(trade)
        self.state.total_returned += proceeds
        self.save()
        return trade

    def roll_day(self, today: str) -> bool:
        """Reset the daily spend counter when the trading date changes. True if it rolled."""
        if self.state.daily_reset_date == today:
            return False
        self.state.daily_spent = ZERO
        self.state.daily_reset_date = today
        self.save()
        return True

    def record_unknown(
        self,
        *,
        key: str,
        side: str,
        salt: int,
        token_id: str,
        amount: Decimal,
        price: Decimal,
        detail: str = "",
        ts: Optional[int] = None,
    ) -> UnknownOutcome:
        u = UnknownOutcome(
            key=key,
            side=side,
            salt=str(salt),
            token_id=str(token_id),
            amount=amount,
            price=price,
            ts=int(ts if ts is not None else utc_ts()),
            detail=detail[:300],
        )
        self.state.unknown[key] = u
        self.save()
        return u

    def prune_unknown(self, now: int, hold_sec: int) -> List[UnknownOutcome]:
        expired = [u for u in self.state.unknown.values() if now - u.ts >= hold_sec]
        if not expired:
            return []
        for u in expired:
            del self.state.unknown[u.key]
        self.save()
        return expired
