"""
strategy.py — opportunity scoring ("auto" mode) and target diffing ("copy" mode).

Auto mode is a contrarian / value heuristic over the Gamma catalog:
- cheap outcomes on active markets (possible panic selling)
- expensive complement (mean reversion)
- near expiry with a cheap price (time decay)
- volume / liquidity bonuses
A crude fair-value model turns the price bucket into an edge; the composite
score is `rule points + edge*10 + min(reward/risk, 5)`.

Copy mode holds what the target holds: enter keys the target has and we
don't, exit keys we have and the target no longer does.

Scores use floats; they only rank and are logged. Prices handed to the
order path are converted to Decimal by the engine.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from exchange import GammaMarket, TargetPosition
from utils import utc_ts

log = logging.getLogger("strategy")

MAX_HOURS_OUT = 90 * 24


@dataclass(slots=True)
class Opportunity:
    condition_id: str
    question: str
    neg_risk: bool
    outcome: str
    token_id: str
    price: float
    fair_value: float
    edge: float
    rr_ratio: float
    score: float
    hours_left: Optional[float]
    liquidity: float
    volume_24h: float
    reasons: List[str] = field(default_factory=list)
    side: str = "BUY"

    @property
    def key(self) -> str:
        return f"{self.condition_id}_{self.token_id}"


def _fair_value(price: float) -> float:
    if price <= 0.10:
        return price + 0.08
    if price <= 0.20:
        return price + 0.06
    if price <= 0.30:
        return price + 0.04
    if price >= 0.85:
        return price - 0.04
    return price


def score_outcome(
    market: GammaMarket,
    label: str,
    price: Optional[float],
    token_id: str,
    *,
    min_edge: float,
    min_liquidity: float,
    now_ts: Optional[int] = None,
) -> Optional[Opportunity]:
    """Score one outcome of one market. None when it is not tradeable."""
    if price is None or price <= 0 or price >= 1:
        return None
    if market.liquidity < min_liquidity:
        return None

    now = int(now_ts if now_ts is not None else utc_ts())
    hours_left: Optional[float] = (market.end_ts - now) / 3600.0 if market.end_ts else None
    if hours_left is not None and (hours_left < 1 or hours_left > MAX_HOURS_OUT):
        return None

    score = 0
    reasons: List[str] = []
    vol24 = market.volume_24h

    if price <= 0.15 and vol24 > 500:
        score += 3
        reasons.append(f"cheap@{price * 100:.0f}c")
    elif price <= 0.25 and vol24 > 1000:
        score += 2
        reasons.append(f"underpriced@{price * 100:.0f}c")

    if 1 - price > 0.90:
        score += 2
        reasons.append("complement>90c")

    if hours_left is not None and 1 <= hours_left <= 168 and price <= 0.30:
        score += 2
        reasons.append(f"expires_{round(hours_left)}h")

    if vol24 > 5000:
        score += 1
        reasons.append("high_vol")

    if market.liquidity > 10000:
        score += 1
        reasons.append("deep_liquidity")

    fair = _fair_value(price)
    edge = fair - price
    if edge < min_edge and score < 4:
        return None

    rr = (1 - price) / price
    composite = score + edge * 10 + min(rr, 5.0)

    return Opportunity(
        condition_id=market.condition_id,
        question=market.question,
        neg_risk=market.neg_risk,
        outcome=label,
        token_id=token_id,
        price=price,
        fair_value=round(fair, 2),
        edge=round(edge, 3),
        rr_ratio=round(rr, 1),
        score=round(composite, 1),
        hours_left=round(hours_left) if hours_left is not None else None,
        liquidity=market.liquidity,
        volume_24h=vol24,
        reasons=reasons,
        side="BUY" if edge > 0 else "SKIP",
    )


def rank_opportunities(
    markets: Iterable[GammaMarket],
    *,
    min_edge: float,
    min_liquidity: float,
    now_ts: Optional[int] = None,
) -> List[Opportunity]:
    """All BUY opportunities across `markets`, best composite score first."""
    out: List[Opportunity] = []
    for m in markets:
        for i, label in enumerate(m.outcomes):
            if i >= len(m.clob_token_ids) or not m.clob_token_ids[i]:
                continue
            price = m.outcome_prices[i] if i < len(m.outcome_prices) else None
            opp = score_outcome(
                m, label, price, m.clob_token_ids[i],
                min_edge=min_edge, min_liquidity=min_liquidity, now_ts=now_ts,
            )
            if opp is not None and opp.side == "BUY":
                out.append(opp)
    out.sort(key=lambda o: o.score, reverse=True)
    return out


def diff_positions(
    target: Sequence[TargetPosition],
    held_keys: Set[str] | frozenset[str],
) -> Tuple[List[TargetPosition], List[str]]:
    """(positions to enter, keys to exit). Entry order follows the target's order."""
    by_key = {}
    for p in target:
        by_key.setdefault(p.key, p)
    to_enter = [p for k, p in by_key.items() if k not in held_keys]
    to_exit = sorted(k for k in held_keys if k not in by_key)
    return to_enter, to_exit
