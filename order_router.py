"""
order_router.py — single choke-point for ALL order actions.

builder -> signer -> submitter -> ledger, nothing else talks to the exchange.

Security goals:
- Strategies emit candidates; only OrderRouter builds, signs and submits.
- Avoids auto-retrying non-idempotent calls (order placement).
- The ledger changes only on a Filled result.

This is intentionally conservative: if a submission outcome is ambiguous,
the router records it in the ledger's unknown set, marks itself
"needs_reconcile", and the key stays blocked for new entries.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional, Protocol

from clob_auth import Credentials
from errors import AuthError, BusinessRejection
from exchange import Ambiguous, Filled, Rejected, SubmitResult
from ledger import ClosedTrade, Position, PositionLedger
from orders import OrderBuilder, SignedOrder
from risk_manager import TradeCandidate
from utils import from_micro

log = logging.getLogger("router")


class Submitter(Protocol):
    async def submit(self, signed: SignedOrder, creds: Optional[Credentials] = None, order_type: Optional[str] = None) -> SubmitResult:
        ...


class OrderRouter:
    def __init__(self, builder: OrderBuilder, submitter: Submitter, ledger: PositionLedger):
        self.builder = builder
        self.submitter = submitter
        self.ledger = ledger
        self.needs_reconcile: bool = False

    def _raise_for_rejection(self, res: Rejected, ctx: dict[str, Any]) -> None:
        details = {**ctx, "http_status": res.http_status}
        if res.is_auth_failure:
            raise AuthError(f"order rejected (auth): {res.reason}", details=details)
        raise BusinessRejection(res.reason, http_status=res.http_status, details=details)

    def _park_ambiguous(self, res: Ambiguous, *, key: str, signed: SignedOrder, amount: Decimal) -> None:
        self.needs_reconcile = True
        self.ledger.record_unknown(
            key=key,
            side=signed.side.name,
            salt=signed.salt,
            token_id=str(signed.order.token_id),
            amount=amount,
            price=signed.price,
            detail=f"http={res.http_status} {res.detail}",
        )
        log.warning(
            "UNKNOWN OUTCOME %s %s salt=%s (%s). Key blocked; reconcile manually.",
            signed.side.name, key, signed.salt, res.detail,
        )

    async def enter(self, c: TradeCandidate, creds: Optional[Credentials]) -> Optional[Position]:
        """
        BUY `c.size_usdc` of `c.token_id` at `c.price`.
        Returns the opened Position, or None when the outcome is unknown.
        Raises InvalidOrderError / SubmissionError / BusinessRejection / AuthError.
        """
        signed = self.builder.build_buy_order(c.token_id, c.price, c.size_usdc, c.neg_risk)
        res = await self.submitter.submit(signed, creds)

        if isinstance(res, Filled):
            pos = self.ledger.open_position(
                token_id=c.token_id,
                condition_id=c.condition_id,
                outcome=c.outcome,
                title=c.title,
                entry_price=c.price,
                cost_usdc=from_micro(signed.order.maker_amount),
                shares=from_micro(signed.order.taker_amount),
                neg_risk=c.neg_risk,
                order_id=res.order_id,
            )
            log.info("FILLED BUY %s @ %s: %s shares for $%s (order %s)", c.key, c.price, pos.shares, pos.cost_usdc, res.order_id)
            return pos

        if isinstance(res, Rejected):
            self._raise_for_rejection(res, {"key": c.key, "side": "BUY", "price": c.price, "usdc": c.size_usdc})

        if isinstance(res, Ambiguous):
            self._park_ambiguous(res, key=c.key, signed=signed, amount=c.size_usdc)
            return None

        raise TypeError(f"unexpected submit result: {res!r}")

    async def exit(self, pos: Position, price: Decimal, creds: Optional[Credentials]) -> Optional[ClosedTrade]:
        """SELL the whole position at `price`. Returns the ClosedTrade, or None when unknown."""
        key = pos.key
        signed = self.builder.build_sell_order(pos.token_id, price, pos.shares, pos.neg_risk)
        res = await self.submitter.submit(signed, creds)

        if isinstance(res, Filled):
            trade = self.ledger.close_position(key, price, order_id=res.order_id)
            log.info("FILLED SELL %s @ %s: realized %s (order %s)", key, price, trade.realized_pnl, res.order_id)
            return trade

        if isinstance(res, Rejected):
            self._raise_for_rejection(res, {"key": key, "side": "SELL", "price": price, "shares": pos.shares})

        if isinstance(res, Ambiguous):
            self._park_ambiguous(res, key=key, signed=signed, amount=pos.shares)
            return None

        raise TypeError(f"unexpected submit result: {res!r}")
