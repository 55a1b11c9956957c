"""
exchange.py — market-data + execution wrappers

Components:
- PolymarketGammaClient: scans Gamma /markets (public, paginated) and caches per-market info.
- PolymarketCLOBPublic: reads orderbooks (public) -> best bid / best ask / spread.
- PolymarketDataClient: copy-target resolution and positions (public data API).
- PolygonChain: USDC.e balance and one-time exchange approvals (web3, on-chain).
- PolymarketCLOBTrader: live order submission (L2-signed POST /order).
- PaperTrader: same interface, local fills only.

Submission outcomes are a tagged union, matched exhaustively downstream:
  Filled    : exchange reported success or returned an order id
  Rejected  : well-formed refusal (auth failures flagged)
  Ambiguous : timeout / disconnect / unparsable 5xx: the order MAY exist

Safety:
- LIVE_MODE defaults to False (paper trading only).
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Union

import aiohttp
from eth_account.signers.local import LocalAccount
from web3 import Web3

from clob_auth import Credentials, WalletSigner, sign_request
from config import Settings
from errors import SubmissionError
from orders import SignedOrder, order_body
from utils import from_micro, to_decimal


log = logging.getLogger("exchange")


# ──────────────────────────────────────────────────────────────────────────────
# Polymarket Gamma: market discovery (public REST)
# ──────────────────────────────────────────────────────────────────────────────

def _parse_iso_to_ts(s: Any) -> int:
    if not s:
        return 0
    if isinstance(s, (int, float)):
        return int(s)
    try:
        # Gamma typically uses ISO8601
        dt = datetime.fromisoformat(str(s).replace("Z", "+00:00"))
        return int(dt.timestamp())
    except ValueError:
        return 0


def _safe_float(x: Any, default: float = 0.0) -> float:
    try:
        if x is None or x == "":
            return default
        return float(x)
    except (TypeError, ValueError):
        return default


def _parse_json_list(val: Any) -> List[Any]:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    if isinstance(val, str):
        s = val.strip()
        if not s:
            return []
        try:
            out = json.loads(s)
            return out if isinstance(out, list) else []
        except ValueError:
            return [p.strip() for p in s.split(",") if p.strip()]
    return []


def _truthy(x: Any) -> bool:
    if isinstance(x, str):
        return x.strip().lower() == "true"
    return bool(x)


@dataclass(slots=True)
class GammaMarket:
    """
    Unified view of Gamma market entries with the fields we need.
    NOTE: Gamma schemas evolve; keep this parser tolerant.
    """
    id: str
    question: str
    condition_id: str
    end_ts: int                      # 0 when unknown
    outcomes: List[str]
    outcome_prices: List[Optional[float]]
    clob_token_ids: List[str]
    neg_risk: bool = False
    liquidity: float = 0.0
    volume_24h: float = 0.0

    @classmethod
    def from_json(cls, m: Dict[str, Any]) -> Optional["GammaMarket"]:
        mid = str(m.get("id") or "").strip()
        cond = str(m.get("conditionId") or m.get("condition_id") or "").strip()
        q = str(m.get("question") or "").strip()
        if not (mid or cond):
            return None
        prices: List[Optional[float]] = []
        for x in _parse_json_list(m.get("outcomePrices")):
            try:
                prices.append(float(x))
            except (TypeError, ValueError):
                prices.append(None)
        return cls(
            id=mid or cond,
            question=q,
            condition_id=cond or mid,
            end_ts=_parse_iso_to_ts(m.get("endDate") or m.get("end_date_iso")),
            outcomes=[str(o) for o in _parse_json_list(m.get("outcomes"))],
            outcome_prices=prices,
            clob_token_ids=[str(t) for t in _parse_json_list(m.get("clobTokenIds"))],
            neg_risk=_truthy(m.get("negRisk")),
            liquidity=_safe_float(m.get("liquidityNum") or m.get("liquidity")),
            volume_24h=_safe_float(m.get("volume24hr") or m.get("volume_24h")),
        )


class PolymarketGammaClient:
    PAGE_SIZE = 100

    def __init__(self, settings: Settings, session: aiohttp.ClientSession):
        self.s = settings
        self.http = session
        self._info_cache: Dict[str, GammaMarket] = {}

    async def list_markets(self, *, offset: int = 0, limit: int = PAGE_SIZE) -> List[Dict[str, Any]]:
        params = {
            "active": "true",
            "closed": "false",
            "enableOrderBook": "true",
            "limit": str(limit),
            "offset": str(offset),
        }
        url = f"{self.s.POLY_GAMMA_BASE}/markets"
        timeout = aiohttp.ClientTimeout(total=self.s.SCAN_TIMEOUT_SEC)
        async with self.http.get(url, params=params, timeout=timeout) as r:
            if r.status != 200:
                log.warning("gamma /markets offset=%d -> HTTP %d", offset, r.status)
                return []
            data = await r.json(content_type=None)
        arr = data.get("markets") if isinstance(data, dict) else data
        return arr if isinstance(arr, list) else []

    async def scan_markets(self, max_markets: Optional[int] = None) -> List[GammaMarket]:
        """Paginate until a short page, an empty page, or the market cap."""
        cap = int(max_markets if max_markets is not None else self.s.SCAN_MAX_MARKETS)
        out: List[GammaMarket] = []
        offset = 0
        while True:
            batch = await self.list_markets(offset=offset, limit=self.PAGE_SIZE)
            if not batch:
                break
            for m in batch:
                if not isinstance(m, dict):
                    continue
                gm = GammaMarket.from_json(m)
                if gm is not None:
                    out.append(gm)
            if len(batch) < self.PAGE_SIZE:
                break
            offset += self.PAGE_SIZE
            if offset >= cap:
                break
        return out

    async def get_market_info(self, condition_id: str) -> Optional[GammaMarket]:
        """Cached lookup by condition id (neg-risk flag, title)."""
        if condition_id in self._info_cache:
            return self._info_cache[condition_id]
        url = f"{self.s.POLY_GAMMA_BASE}/markets"
        timeout = aiohttp.ClientTimeout(total=self.s.HTTP_TIMEOUT_SEC)
        async with self.http.get(url, params={"condition_id": condition_id, "limit": "1"}, timeout=timeout) as r:
            if r.status != 200:
                return None
            data = await r.json(content_type=None)
        m = data[0] if isinstance(data, list) and data else data
        if not isinstance(m, dict) or not m:
            return None
        gm = GammaMarket.from_json(m)
        if gm is not None:
            self._info_cache[condition_id] = gm
        return gm


# ──────────────────────────────────────────────────────────────────────────────
# Polymarket CLOB public endpoints (public REST)
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(slots=True)
class OrderBookLevel:
    price: Decimal
    size: Decimal


@dataclass(slots=True)
class OrderBook:
    token_id: str
    bids: List[OrderBookLevel]
    asks: List[OrderBookLevel]
    market: str = ""
    neg_risk: bool = False

    @property
    def best_bid(self) -> Optional[Decimal]:
        return max((lvl.price for lvl in self.bids), default=None)

    @property
    def best_ask(self) -> Optional[Decimal]:
        return min((lvl.price for lvl in self.asks), default=None)

    @property
    def spread(self) -> Optional[Decimal]:
        bb, ba = self.best_bid, self.best_ask
        if bb is None or ba is None:
            return None
        return ba - bb


class PolymarketCLOBPublic:
    def __init__(self, settings: Settings, session: aiohttp.ClientSession):
        self.s = settings
        self.http = session

    async def get_orderbook(self, token_id: str) -> Optional[OrderBook]:
        url = f"{self.s.POLY_CLOB_BASE}/book"
        timeout = aiohttp.ClientTimeout(total=self.s.HTTP_TIMEOUT_SEC)
        async with self.http.get(url, params={"token_id": token_id}, timeout=timeout) as r:
            if r.status != 200:
                return None
            j = await r.json(content_type=None)
        if not isinstance(j, dict):
            return None
        try:
            bids = [OrderBookLevel(price=to_decimal(x["price"]), size=to_decimal(x.get("size", 0))) for x in j.get("bids") or []]
            asks = [OrderBookLevel(price=to_decimal(x["price"]), size=to_decimal(x.get("size", 0))) for x in j.get("asks") or []]
        except (KeyError, TypeError, ValueError) as e:
            log.warning("malformed book for %s: %s", token_id, e)
            return None
        return OrderBook(
            token_id=str(j.get("asset_id") or token_id),
            bids=bids,
            asks=asks,
            market=str(j.get("market") or ""),
            neg_risk=_truthy(j.get("neg_risk")),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Polymarket data API (copy target)
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class TargetPosition:
    condition_id: str
    asset: str                        # outcome token id
    title: str = ""
    outcome: str = ""
    size: float = 0.0
    cur_price: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.condition_id}_{self.asset}"


class PolymarketDataClient:
    def __init__(self, settings: Settings, session: aiohttp.ClientSession):
        self.s = settings
        self.http = session

    async def resolve_address(self, username: str) -> Optional[str]:
        """public-search on Gamma first, then the data-api profile endpoint."""
        timeout = aiohttp.ClientTimeout(total=self.s.HTTP_TIMEOUT_SEC)
        want = username.strip().lstrip("@").lower()

        async with self.http.get(f"{self.s.POLY_GAMMA_BASE}/public-search", params={"query": want}, timeout=timeout) as r:
            if r.status == 200:
                data = await r.json(content_type=None)
                profiles = data.get("profiles", []) if isinstance(data, dict) else data
                for p in profiles if isinstance(profiles, list) else []:
                    name = str(p.get("pseudonym") or p.get("displayUsernamePublic") or p.get("name") or "").lower()
                    if name == want and p.get("proxyWallet"):
                        return str(p["proxyWallet"])

        async with self.http.get(f"{self.s.POLY_DATA_BASE}/profile", params={"username": want}, timeout=timeout) as r:
            if r.status == 200:
                p = await r.json(content_type=None)
                if isinstance(p, dict):
                    addr = p.get("proxyWallet") or p.get("address")
                    if addr:
                        return str(addr)
        return None

    async def fetch_positions(self, address: str) -> List[TargetPosition]:
        params = {
            "user": address,
            "sortBy": "CURRENT",
            "sortDirection": "DESC",
            "sizeThreshold": "0.1",
            "limit": "200",
        }
        timeout = aiohttp.ClientTimeout(total=self.s.HTTP_TIMEOUT_SEC)
        async with self.http.get(f"{self.s.POLY_DATA_BASE}/positions", params=params, timeout=timeout) as r:
            if r.status != 200:
                raise aiohttp.ClientResponseError(r.request_info, r.history, status=r.status, message="positions")
            data = await r.json(content_type=None)
        out: List[TargetPosition] = []
        for p in data if isinstance(data, list) else []:
            cond = str(p.get("conditionId") or "")
            asset = str(p.get("asset") or "")
            if not cond or not asset:
                continue
            out.append(TargetPosition(
                condition_id=cond,
                asset=asset,
                title=str(p.get("title") or p.get("slug") or cond[:12]),
                outcome=str(p.get("outcome") or "?"),
                size=_safe_float(p.get("size")),
                cur_price=_safe_float(p.get("curPrice")),
            ))
        return out


# ──────────────────────────────────────────────────────────────────────────────
# Polygon: balance + approvals (web3; blocking calls run in a worker thread)
# ──────────────────────────────────────────────────────────────────────────────

ERC20_ABI = [
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "allowance", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "approve", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
]

ERC1155_ABI = [
    {"name": "isApprovedForAll", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "operator", "type": "address"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"name": "setApprovalForAll", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "operator", "type": "address"}, {"name": "approved", "type": "bool"}],
     "outputs": []},
]

MAX_UINT256 = 2**256 - 1
MIN_ALLOWANCE = 1_000_000 * 10**6       # 1M USDC in micro-units


class PolygonChain:
    def __init__(self, settings: Settings, account: LocalAccount):
        self.s = settings
        self.acct = account
        self.address = Web3.to_checksum_address(account.address)
        self.w3 = Web3(Web3.HTTPProvider(self.s.POLYGON_RPC_URL, request_kwargs={"timeout": 15}))
        self.usdc = self.w3.eth.contract(address=Web3.to_checksum_address(self.s.POLY_USDC_E), abi=ERC20_ABI)
        self.ctf = self.w3.eth.contract(address=Web3.to_checksum_address(self.s.POLY_CTF), abi=ERC1155_ABI)

    def spenders(self) -> List[tuple[str, str]]:
        return [
            ("CTF Exchange", self.s.POLY_CTF_EXCHANGE),
            ("Neg-Risk CTF Exchange", self.s.POLY_NEG_RISK_EXCHANGE),
            ("Neg-Risk Adapter", self.s.POLY_NEG_RISK_ADAPTER),
        ]

    async def usdc_balance(self, address: Optional[str] = None) -> Decimal:
        who = Web3.to_checksum_address(address or self.address)
        raw = await asyncio.to_thread(self.usdc.functions.balanceOf(who).call)
        return from_micro(int(raw))

    async def gas_balance(self, address: Optional[str] = None) -> Decimal:
        """Native MATIC (POL) balance, paid as gas by approval transactions."""
        who = Web3.to_checksum_address(address or self.address)
        wei = await asyncio.to_thread(self.w3.eth.get_balance, who)
        return Decimal(int(wei)) / Decimal(10**18)

    def _send(self, fn: Any) -> str:
        tx = fn.build_transaction({
            "from": self.address,
            "nonce": self.w3.eth.get_transaction_count(self.address),
            "chainId": int(self.s.POLY_CHAIN_ID),
        })
        signed = self.acct.sign_transaction(tx)
        h = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        self.w3.eth.wait_for_transaction_receipt(h, timeout=180)
        return Web3.to_hex(h)

    def _ensure_approvals_sync(self) -> List[str]:
        hashes: List[str] = []
        for label, spender in self.spenders():
            sp = Web3.to_checksum_address(spender)
            allowance = int(self.usdc.functions.allowance(self.address, sp).call())
            if allowance < MIN_ALLOWANCE:
                log.info("Approving USDC for %s...", label)
                hashes.append(self._send(self.usdc.functions.approve(sp, MAX_UINT256)))
            else:
                log.info("USDC already approved for %s", label)

            if not self.ctf.functions.isApprovedForAll(self.address, sp).call():
                log.info("Approving CTF for %s...", label)
                hashes.append(self._send(self.ctf.functions.setApprovalForAll(sp, True)))
            else:
                log.info("CTF already approved for %s", label)
        return hashes

    async def ensure_approvals(self) -> List[str]:
        return await asyncio.to_thread(self._ensure_approvals_sync)


# ──────────────────────────────────────────────────────────────────────────────
# Submission results
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Filled:
    order_id: str
    status: str = ""
    raw: Any = None


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: str
    http_status: Optional[int] = None
    raw: Any = None

    @property
    def is_auth_failure(self) -> bool:
        return self.http_status in (401, 403) or "auth" in self.reason.lower()


@dataclass(frozen=True, slots=True)
class Ambiguous:
    http_status: Optional[int] = None
    detail: str = ""


SubmitResult = Union[Filled, Rejected, Ambiguous]


def classify_response(status: int, text: str) -> SubmitResult:
    """Map one POST /order HTTP response to a tagged result."""
    try:
        j = json.loads(text) if text else None
    except ValueError:
        j = None

    if not isinstance(j, dict):
        if status >= 500:
            return Ambiguous(http_status=status, detail=f"unparsable {status} body: {text[:200]}")
        return Rejected(reason=f"HTTP {status}", http_status=status, raw=text)

    order_id = str(j.get("orderID") or j.get("orderId") or "")
    if _truthy(j.get("success")) or order_id:
        return Filled(order_id=order_id, status=str(j.get("status") or ""), raw=j)

    reason = str(j.get("errorMsg") or j.get("error") or j.get("message") or f"HTTP {status}")
    return Rejected(reason=reason, http_status=status, raw=j)


# ──────────────────────────────────────────────────────────────────────────────
# Polymarket CLOB trading (L2-signed orders)
# ──────────────────────────────────────────────────────────────────────────────

class PolymarketCLOBTrader:
    """
    POST /order with an L2-signed body. Never retries: a resubmitted FOK order
    with a fresh salt is a second order.
    """
    ORDER_PATH = "/order"

    def __init__(self, settings: Settings, session: aiohttp.ClientSession, signer: WalletSigner):
        self.s = settings
        self.http = session
        self.signer = signer

    async def submit(self, signed: SignedOrder, creds: Credentials, order_type: Optional[str] = None) -> SubmitResult:
        body = order_body(signed, self.signer.address, order_type or self.s.ORDER_TYPE)
        headers = sign_request(creds, self.signer.address, "POST", self.ORDER_PATH, body)
        url = f"{self.s.POLY_CLOB_BASE}{self.ORDER_PATH}"
        timeout = aiohttp.ClientTimeout(total=self.s.ORDER_TIMEOUT_SEC)
        try:
            async with self.http.post(url, data=body.encode("utf-8"), headers=headers, timeout=timeout) as r:
                status = r.status
                text = await r.text()
        except aiohttp.ClientConnectorError as e:
            # never reached the exchange
            raise SubmissionError(f"connect failed: {e}", details={"url": url}) from e
        except asyncio.TimeoutError:
            return Ambiguous(detail=f"timeout after {self.s.ORDER_TIMEOUT_SEC}s")
        except (aiohttp.ServerDisconnectedError, aiohttp.ClientPayloadError, aiohttp.ClientOSError) as e:
            return Ambiguous(detail=f"connection lost: {e!r}")
        except aiohttp.ClientError as e:
            return Ambiguous(detail=f"transport error after send: {e!r}")

        res = classify_response(status, text)
        log.debug("POST /order salt=%s -> %s", signed.salt, res)
        return res


class PaperTrader:
    """Local fill simulator: every order fills immediately at its signed price."""
    MAX_FILLS = 500

    def __init__(self, settings: Settings):
        self.s = settings
        self.fills: Deque[Dict[str, Any]] = deque(maxlen=self.MAX_FILLS)

    async def submit(self, signed: SignedOrder, creds: Optional[Credentials] = None, order_type: Optional[str] = None) -> SubmitResult:
        oid = "paper_" + secrets.token_hex(8)
        raw = {
            "orderID": oid,
            "success": True,
            "status": "matched",
            "makingAmount": str(signed.order.maker_amount),
            "takingAmount": str(signed.order.taker_amount),
            "orderType": order_type or self.s.ORDER_TYPE,
        }
        self.fills.append(raw)
        log.info("[PAPER] %s token=%s price=%s -> %s", signed.side.name, signed.order.token_id, signed.price, oid)
        return Filled(order_id=oid, status="matched", raw=raw)
