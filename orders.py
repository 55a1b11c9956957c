"""
orders.py — EIP-712 `Order` construction for the CTF exchange.

maker/taker mapping:
  BUY:  makerAmount = USDC offered,   takerAmount = shares requested
  SELL: makerAmount = shares offered, takerAmount = USDC requested

All amounts are integer micro-units (6 dp), rounded DOWN with Decimal arithmetic.
"""
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Tuple

from web3 import Web3

from clob_auth import WalletSigner
from config import Settings
from errors import InvalidOrderError
from utils import safe_json_dumps, to_decimal, to_micro

log = logging.getLogger("orders")


# Domain constants from Polymarket open-source order-utils
PROTOCOL_NAME = "Polymarket CTF Exchange"
PROTOCOL_VERSION = "1"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ORDER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "signer", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "takerAmount", "type": "uint256"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "feeRateBps", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "signatureType", "type": "uint8"},
    ],
}


class Side(enum.IntEnum):
    BUY = 0
    SELL = 1


@dataclass(frozen=True, slots=True)
class Order:
    salt: int
    maker: str
    signer: str
    taker: str
    token_id: int
    maker_amount: int
    taker_amount: int
    expiration: int
    nonce: int
    fee_rate_bps: int
    side: Side
    signature_type: int

    def message(self) -> Dict[str, Any]:
        return {
            "salt": self.salt,
            "maker": self.maker,
            "signer": self.signer,
            "taker": self.taker,
            "tokenId": self.token_id,
            "makerAmount": self.maker_amount,
            "takerAmount": self.taker_amount,
            "expiration": self.expiration,
            "nonce": self.nonce,
            "feeRateBps": self.fee_rate_bps,
            "side": int(self.side),
            "signatureType": self.signature_type,
        }


@dataclass(frozen=True, slots=True)
class SignedOrder:
    order: Order
    signature: str
    neg_risk: bool
    price: Decimal

    @property
    def side(self) -> Side:
        return self.order.side

    @property
    def salt(self) -> int:
        return self.order.salt

    def to_wire(self) -> Dict[str, Any]:
        o = self.order
        return {
            "salt": str(o.salt),
            "maker": o.maker,
            "signer": o.signer,
            "taker": o.taker,
            "tokenId": str(o.token_id),
            "makerAmount": str(o.maker_amount),
            "takerAmount": str(o.taker_amount),
            "expiration": str(o.expiration),
            "nonce": str(o.nonce),
            "feeRateBps": str(o.fee_rate_bps),
            "side": int(o.side),
            "signatureType": int(o.signature_type),
            "signature": self.signature,
        }

    @classmethod
    def from_wire(cls, w: Dict[str, Any], *, neg_risk: bool = False, price: Decimal = Decimal("0")) -> "SignedOrder":
        order = Order(
            salt=int(w["salt"]),
            maker=str(w["maker"]),
            signer=str(w["signer"]),
            taker=str(w["taker"]),
            token_id=int(w["tokenId"]),
            maker_amount=int(w["makerAmount"]),
            taker_amount=int(w["takerAmount"]),
            expiration=int(w["expiration"]),
            nonce=int(w["nonce"]),
            fee_rate_bps=int(w["feeRateBps"]),
            side=Side(int(w["side"])),
            signature_type=int(w["signatureType"]),
        )
        return cls(order=order, signature=str(w["signature"]), neg_risk=neg_risk, price=price)


def order_amounts(side: Side, price: Decimal, amount: Decimal) -> Tuple[int, int]:
    """
    (maker_amount, taker_amount) in micro-units.
    `amount` is USDC for BUY and shares for SELL.
    """
    price = to_decimal(price)
    amount = to_decimal(amount)
    if side == Side.BUY:
        return to_micro(amount), to_micro(amount / price)
    return to_micro(amount), to_micro(amount * price)


def order_body(signed: SignedOrder, owner: str, order_type: str = "FOK") -> str:
    """Serialized POST /order body; the same string is HMAC-signed and sent."""
    return safe_json_dumps({"order": signed.to_wire(), "owner": owner, "orderType": order_type})


def _new_salt() -> int:
    return int.from_bytes(os.urandom(32), "big")


class OrderBuilder:
    def __init__(self, settings: Settings, signer: WalletSigner):
        self.s = settings
        self.signer = signer

    def order_domain(self, neg_risk: bool) -> Dict[str, Any]:
        verifying = self.s.POLY_NEG_RISK_EXCHANGE if neg_risk else self.s.POLY_CTF_EXCHANGE
        return {
            "name": PROTOCOL_NAME,
            "version": PROTOCOL_VERSION,
            "chainId": int(self.s.POLY_CHAIN_ID),
            "verifyingContract": Web3.to_checksum_address(verifying),
        }

    def build_buy_order(self, token_id: str, price: Any, usdc_amount: Any, neg_risk: bool = False) -> SignedOrder:
        return self._build(Side.BUY, token_id, price, usdc_amount, neg_risk)

    def build_sell_order(self, token_id: str, price: Any, shares: Any, neg_risk: bool = False) -> SignedOrder:
        return self._build(Side.SELL, token_id, price, shares, neg_risk)

    def _build(self, side: Side, token_id: str, price: Any, amount: Any, neg_risk: bool) -> SignedOrder:
        try:
            px = to_decimal(price)
            amt = to_decimal(amount)
        except ValueError as e:
            raise InvalidOrderError(str(e)) from e
        ctx = {"side": side.name, "token_id": token_id, "price": px, "amount": amt}

        if not px.is_finite() or not (Decimal("0") < px < Decimal("1")):
            raise InvalidOrderError("price must be in (0, 1)", details=ctx)
        if not amt.is_finite() or amt <= 0:
            raise InvalidOrderError("amount must be positive", details=ctx)
        try:
            tid = int(str(token_id).strip(), 10)
        except ValueError as e:
            raise InvalidOrderError("token id must be a decimal integer", details=ctx) from e
        if tid < 0:
            raise InvalidOrderError("token id must be non-negative", details=ctx)

        maker_amt, taker_amt = order_amounts(side, px, amt)
        if maker_amt <= 0 or taker_amt <= 0:
            raise InvalidOrderError("amounts round to zero", details={**ctx, "maker": maker_amt, "taker": taker_amt})

        order = Order(
            salt=_new_salt(),
            maker=self.signer.address,
            signer=self.signer.address,
            taker=ZERO_ADDRESS,
            token_id=tid,
            maker_amount=maker_amt,
            taker_amount=taker_amt,
            expiration=0,
            nonce=0,
            fee_rate_bps=int(self.s.FEE_RATE_BPS),
            side=side,
            signature_type=int(self.s.POLY_SIGNATURE_TYPE),
        )
        typed = {
            "types": ORDER_TYPES,
            "primaryType": "Order",
            "domain": self.order_domain(neg_risk),
            "message": order.message(),
        }
        signature = self.signer.sign_typed(typed)
        log.debug("signed %s token=%s maker=%d taker=%d neg_risk=%s", side.name, tid, maker_amt, taker_amt, neg_risk)
        return SignedOrder(order=order, signature=signature, neg_risk=bool(neg_risk), price=px)
