"""
clob_auth.py — CLOB credentials: L1 derivation (wallet signature) and L2 request signing (HMAC).

L1: EIP-712 signature over a `ClobAuth` struct proves control of the wallet and
    yields {apiKey, secret, passphrase}.
L2: every authenticated request carries an HMAC-SHA256 of
    `timestamp + METHOD + path + body`, keyed with the base64-decoded secret.

Credentials have no advertised expiry. They are replaced wholesale when an
authenticated call comes back as an auth failure (see order_router / engine).
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from config import Settings
from errors import AuthError
from utils import SecretRedactionFilter, now_ms as _now_ms, utc_ts

log = logging.getLogger("auth")


CLOB_AUTH_DOMAIN_NAME = "ClobAuthDomain"
CLOB_AUTH_VERSION = "1"
CLOB_AUTH_MSG = "This message attests that I control the given wallet"

CLOB_AUTH_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
    ],
    "ClobAuth": [
        {"name": "address", "type": "address"},
        {"name": "timestamp", "type": "string"},
        {"name": "nonce", "type": "uint256"},
        {"name": "message", "type": "string"},
    ],
}


@dataclass(frozen=True, slots=True)
class Credentials:
    api_key: str
    secret: str          # base64 (standard or url-safe)
    passphrase: str

    @classmethod
    def from_response(cls, j: Any) -> "Credentials":
        if not isinstance(j, dict):
            raise AuthError("credential response is not an object", details={"body": str(j)[:200]})
        key = str(j.get("apiKey") or j.get("api_key") or "").strip()
        secret = str(j.get("secret") or "").strip()
        passphrase = str(j.get("passphrase") or "").strip()
        missing = [n for n, v in (("apiKey", key), ("secret", secret), ("passphrase", passphrase)) if not v]
        if missing:
            raise AuthError("credential response missing fields", details={"missing": ",".join(missing)})
        return cls(api_key=key, secret=secret, passphrase=passphrase)

    @classmethod
    def from_settings(cls, s: Settings) -> Optional["Credentials"]:
        if s.POLY_API_KEY and s.POLY_API_SECRET and s.POLY_API_PASSPHRASE:
            return cls(api_key=s.POLY_API_KEY, secret=s.POLY_API_SECRET, passphrase=s.POLY_API_PASSPHRASE)
        return None

    def __repr__(self) -> str:
        return f"Credentials(api_key={self.api_key[:6]}…)"


class WalletSigner:
    """Thin wrapper over an eth-account LocalAccount; all EIP-712 signing goes through here."""

    def __init__(self, private_key: Optional[str] = None):
        # Paper mode without a key signs with a throwaway account
        self.acct = Account.from_key(private_key) if private_key else Account.create()
        self.address = Web3.to_checksum_address(self.acct.address)
        self.ephemeral = not private_key

    def sign_typed(self, typed: Dict[str, Any]) -> str:
        msg = encode_typed_data(full_message=typed)
        signed = self.acct.sign_message(msg)
        return Web3.to_hex(signed.signature)

    def sign_clob_auth(self, *, chain_id: int, ts: str, nonce: int = 0) -> str:
        typed = {
            "types": CLOB_AUTH_TYPES,
            "primaryType": "ClobAuth",
            "domain": {
                "name": CLOB_AUTH_DOMAIN_NAME,
                "version": CLOB_AUTH_VERSION,
                "chainId": int(chain_id),
            },
            "message": {
                "address": self.address,
                "timestamp": str(ts),
                "nonce": int(nonce),
                "message": CLOB_AUTH_MSG,
            },
        }
        return self.sign_typed(typed)


# ──────────────────────────────────────────────────────────────────────────────
# L1: credential derivation
# ──────────────────────────────────────────────────────────────────────────────

class CredentialManager:
    """
    Stateless and retry-free: one call, one outcome. Callers wrap `derive()`
    in a RetryPolicy (startup: bounded linear backoff, then fatal).
    """

    def __init__(self, settings: Settings, http: aiohttp.ClientSession, signer: WalletSigner):
        self.s = settings
        self.http = http
        self.signer = signer

    def _l1_headers(self) -> Dict[str, str]:
        ts = str(utc_ts())
        nonce = 0
        sig = self.signer.sign_clob_auth(chain_id=self.s.POLY_CHAIN_ID, ts=ts, nonce=nonce)
        return {
            "Content-Type": "application/json",
            "POLY-ADDRESS": self.signer.address,
            "POLY-SIGNATURE": sig,
            "POLY-TIMESTAMP": ts,
            "POLY-NONCE": str(nonce),
        }

    async def _call(self, method: str, path: str) -> Credentials:
        url = f"{self.s.POLY_CLOB_BASE}{path}"
        timeout = aiohttp.ClientTimeout(total=self.s.HTTP_TIMEOUT_SEC)
        try:
            async with self.http.request(method, url, headers=self._l1_headers(), timeout=timeout) as r:
                text = await r.text()
                if r.status < 200 or r.status >= 300:
                    raise AuthError(f"{method} {path} {r.status}: {text[:300]}", details={"http_status": r.status})
                try:
                    j = await r.json(content_type=None)
                except ValueError as e:
                    raise AuthError(f"{method} {path}: unparsable body: {text[:200]}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthError(f"{method} {path} transport error: {e!r}") from e

        creds = Credentials.from_response(j)
        SecretRedactionFilter.register(creds.api_key, creds.secret, creds.passphrase)
        return creds

    async def derive(self, *, create: bool = False) -> Credentials:
        if not create:
            creds = await self._call("POST", "/auth/derive-api-key")
            log.info("Derived L2 credentials for %s", self.signer.address)
            return creds

        try:
            creds = await self._call("POST", "/auth/api-key")
            log.info("Created L2 credentials for %s", self.signer.address)
            return creds
        except AuthError as e:
            log.warning("create api key failed (%s); falling back to derive", e)
        creds = await self._call("GET", "/auth/derive-api-key")
        log.info("Derived L2 credentials for %s", self.signer.address)
        return creds


# ──────────────────────────────────────────────────────────────────────────────
# L2: request signing
# ──────────────────────────────────────────────────────────────────────────────

def decode_secret(secret: str) -> bytes:
    """base64 decode accepting either alphabet and missing padding."""
    s = secret.strip().replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AuthError("API secret is not valid base64") from e


def hmac_signature(secret: str, ts: str, method: str, path: str, body: str = "") -> str:
    payload = f"{ts}{method.upper()}{path}{body}"
    digest = hmac.new(decode_secret(secret), payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_request(
    creds: Credentials,
    address: str,
    method: str,
    path: str,
    body: str = "",
    *,
    now_ms: Optional[int] = None,
) -> Dict[str, str]:
    """
    L2 headers for one request. `body` must be the exact string sent on the wire.
    Pure given `now_ms`.
    """
    ms = int(now_ms) if now_ms is not None else _now_ms()
    ts = str(ms // 1000)
    return {
        "POLY-ADDRESS": address,
        "POLY-SIGNATURE": hmac_signature(creds.secret, ts, method, path, body),
        "POLY-TIMESTAMP": ts,
        "POLY-NONCE": str(ms),
        "POLY-API-KEY": creds.api_key,
        "POLY-PASSPHRASE": creds.passphrase,
        "Content-Type": "application/json",
    }
