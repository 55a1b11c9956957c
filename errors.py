"""
errors.py — exception hierarchy for the trading core.

BotError
├── ConfigurationError   bad/missing settings (e.g. LIVE_MODE without a key)
├── AuthError            L1 credential derivation failed or L2 creds rejected
├── InvalidOrderError    order constraints violated before signing
├── SubmissionError      transport failure before the exchange saw the order
├── BusinessRejection    well-formed refusal from the exchange
└── LedgerError          corrupt state file / illegal position transition

Ambiguous submissions (timeouts) are NOT exceptions: they come back as
`exchange.Ambiguous` results so callers cannot mistake them for failures.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BotError(Exception):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = dict(details or {})
        super().__init__(message)

    def __str__(self) -> str:
        if not self.details:
            return self.message
        ctx = " ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} [{ctx}]"


class ConfigurationError(BotError):
    pass


class AuthError(BotError):
    pass


class InvalidOrderError(BotError):
    pass


class SubmissionError(BotError):
    pass


class BusinessRejection(BotError):
    def __init__(self, message: str, *, http_status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.http_status = http_status
        super().__init__(message, details=details)


class LedgerError(BotError):
    pass
