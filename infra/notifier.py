from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol

log = logging.getLogger("notify")


class Notifier(Protocol):
    """Out-of-band alert sink (SMS, chat, ...). Called after the ledger is persisted."""

    async def profit_taken(self, *, title: str, outcome: str, profit: Decimal, total_realized: Decimal) -> None:
        ...


def profit_message(*, title: str, outcome: str, profit: Decimal, total_realized: Decimal) -> str:
    cents = Decimal("0.01")
    return (
        "Polymarket profit!\n"
        f"Market: {title}\n"
        f"Outcome: {outcome}\n"
        f"Profit: +${profit.quantize(cents)}\n"
        f"Total P&L: ${total_realized.quantize(cents)}"
    )


class LogNotifier:
    """Default sink: writes the alert to the log."""

    async def profit_taken(self, *, title: str, outcome: str, profit: Decimal, total_realized: Decimal) -> None:
        msg = profit_message(title=title, outcome=outcome, profit=profit, total_realized=total_realized)
        log.info("%s", msg.replace("\n", " | "))
