"""
main.py — runner (console-first)

Usage:
  python main.py                  # paper mode (default), auto strategy
  python main.py --mode copy      # mirror TARGET_ADDRESS / TARGET_USERNAME
  python main.py --live           # live mode (still requires LIVE_MODE=True in .env)
  python main.py --once           # single cycle, then exit
  python main.py --approve        # one-time USDC/CTF approvals for the exchange contracts
  python main.py --balance        # print USDC.e and MATIC gas balances

Safety:
- LIVE_MODE defaults to False.
- Even with --live, LIVE_MODE must be True to place orders.

Exit status: 0 normal, 1 credential derivation exhausted, 2 configuration error.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from decimal import Decimal
from typing import List, Optional

import aiohttp

from clob_auth import WalletSigner
from config import Settings, load_settings
from core.runtime_engine import BotSession, TradingEngine
from errors import AuthError, ConfigurationError
from exchange import PolygonChain
from infra.instance_lock import InstanceLock
from infra.structured_logging import configure_logging
from utils import setup_logging

log = logging.getLogger("main")


async def report_balances(chain: PolygonChain, s: Settings) -> bool:
    """Log USDC.e and gas balances. False when the wallet needs funding."""
    usdc = await chain.usdc_balance()
    gas = await chain.gas_balance()
    usdc_ok = usdc >= Decimal(str(s.MIN_TRADE_USDC))
    gas_ok = gas >= Decimal(str(s.MIN_GAS_BALANCE))
    log.info("USDC balance: $%s | MATIC: %s [%s]", usdc.quantize(Decimal("0.01")), gas.quantize(Decimal("0.0001")),
             "READY" if usdc_ok and gas_ok else "NEEDS FUNDING")
    if not gas_ok:
        log.warning("Gas balance %s MATIC < %s; approvals and on-chain actions will fail", gas, s.MIN_GAS_BALANCE)
    if not usdc_ok:
        log.warning("USDC balance $%s < MIN_TRADE_USDC ($%s)", usdc, s.MIN_TRADE_USDC)
    return usdc_ok and gas_ok


async def _chain_tasks(s: Settings, *, approve: bool, balance: bool) -> int:
    if not s.POLY_PRIVATE_KEY:
        raise ConfigurationError("POLY_PRIVATE_KEY is required for on-chain actions")
    signer = WalletSigner(s.POLY_PRIVATE_KEY)
    chain = PolygonChain(s, signer.acct)
    log.info("Wallet: %s", chain.address)
    if balance:
        await report_balances(chain, s)
    if approve:
        hashes = await chain.ensure_approvals()
        log.info("Approvals done (%d transaction(s))", len(hashes))
    return 0


async def run(args: argparse.Namespace) -> int:
    s = load_settings(".env")
    if args.mode:
        s.BOT_MODE = args.mode
    setup_logging(s.LOG_LEVEL)
    configure_logging(s.LOG_LEVEL)
    s.validate()

    if args.approve or args.balance:
        return await _chain_tasks(s, approve=args.approve, balance=args.balance)

    live = bool(args.live and s.LIVE_MODE)
    if args.live and not s.LIVE_MODE:
        log.warning("--live given but LIVE_MODE is not True in .env; staying in PAPER mode")

    with InstanceLock(s.LOCK_PATH):
        async with aiohttp.ClientSession(headers={"User-Agent": "PolyGuard/1.0"}) as http:
            session = BotSession.build(s, http, live=live)
            log.info("Wallet: %s%s", session.signer.address, " (ephemeral, paper)" if session.signer.ephemeral else "")
            try:
                await session.authenticate()
            except AuthError as e:
                log.critical("CLOB auth failed after %d attempts: %s", s.AUTH_STARTUP_ATTEMPTS, e)
                return 1

            if live:
                log.warning("LIVE MODE ENABLED.")
                chain = PolygonChain(s, session.signer.acct)
                try:
                    await report_balances(chain, s)
                except Exception as e:
                    log.warning("Could not check wallet balances: %s", e)

            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)

            engine = TradingEngine(session)
            await engine.run(stop, once=args.once)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="polyguard", description="Guard-railed Polymarket CLOB trading bot")
    ap.add_argument("--live", action="store_true", help="Attempt live mode (also requires LIVE_MODE=True in .env)")
    ap.add_argument("--mode", choices=("auto", "copy"), default=None, help="Strategy (defaults to BOT_MODE)")
    ap.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    ap.add_argument("--approve", action="store_true", help="Set USDC/CTF approvals for the exchange contracts and exit")
    ap.add_argument("--balance", action="store_true", help="Print the wallet's USDC.e and MATIC balances and exit")
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        code = asyncio.run(run(args))
    except ConfigurationError as e:
        logging.getLogger("main").error("Configuration error: %s", e)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
