from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import aiohttp

from clob_auth import CredentialManager, Credentials, WalletSigner
from config import Settings
from core.snapshot import JsonFileRepository, LedgerRepository
from errors import AuthError, BusinessRejection, ConfigurationError, InvalidOrderError, LedgerError, SubmissionError
from exchange import (
    PaperTrader,
    PolymarketCLOBPublic,
    PolymarketCLOBTrader,
    PolymarketDataClient,
    PolymarketGammaClient,
)
from infra.notifier import LogNotifier, Notifier
from infra.structured_logging import get_logger
from ledger import ClosedTrade, Position, PositionLedger
from order_router import OrderRouter
from orders import OrderBuilder
from risk_manager import GuardLimits, TradeCandidate, select_batch
from strategy import diff_positions, rank_opportunities
from utils import RetryPolicy, SecretRedactionFilter, linear_backoff, retry_async, to_decimal, trading_day, utc_ts

log = logging.getLogger("engine")

# order books fetched per cycle while building candidates
MAX_BOOK_LOOKUPS = 10


def _is_auth_error(e: BaseException) -> bool:
    return isinstance(e, AuthError)


@dataclass
class BotSession:
    """Everything one running bot owns. Credentials are replaced wholesale on refresh."""
    settings: Settings
    http: aiohttp.ClientSession
    signer: WalletSigner
    ledger: PositionLedger
    router: OrderRouter
    gamma: PolymarketGammaClient
    clob: PolymarketCLOBPublic
    data: PolymarketDataClient
    creds_manager: Optional[CredentialManager] = None
    creds: Optional[Credentials] = None
    target_address: str = ""
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    notifier: Notifier = field(default_factory=LogNotifier)

    @property
    def live(self) -> bool:
        return self.creds_manager is not None

    async def _derive(self) -> Credentials:
        assert self.creds_manager is not None
        return await self.creds_manager.derive(create=self.settings.CLOB_CREATE_KEY)

    @classmethod
    def build(
        cls,
        settings: Settings,
        http: aiohttp.ClientSession,
        *,
        live: bool,
        repo: Optional[LedgerRepository] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "BotSession":
        signer = WalletSigner(settings.POLY_PRIVATE_KEY or None)
        ledger = PositionLedger.open(repo if repo is not None else JsonFileRepository(settings.STATE_PATH))
        trader: Any = PolymarketCLOBTrader(settings, http, signer) if live else PaperTrader(settings)
        router = OrderRouter(OrderBuilder(settings, signer), trader, ledger)
        return cls(
            settings=settings,
            http=http,
            signer=signer,
            ledger=ledger,
            router=router,
            gamma=PolymarketGammaClient(settings, http),
            clob=PolymarketCLOBPublic(settings, http),
            data=PolymarketDataClient(settings, http),
            creds_manager=CredentialManager(settings, http, signer) if live else None,
            sleep=sleep,
        )

    async def authenticate(self) -> None:
        """Startup: bounded linear backoff. AuthError escapes when attempts run out."""
        if not self.live:
            return
        assert self.creds_manager is not None
        pre = Credentials.from_settings(self.settings)
        if pre is not None:
            SecretRedactionFilter.register(pre.api_key, pre.secret, pre.passphrase)
            self.creds = pre
            log.info("Using pre-provisioned L2 credentials %s...", pre.api_key[:8])
            return
        s = self.settings
        policy = RetryPolicy(
            max_attempts=s.AUTH_STARTUP_ATTEMPTS,
            backoff=linear_backoff(s.AUTH_BACKOFF_SEC),
            retryable=_is_auth_error,
            sleep=self.sleep,
        )
        self.creds = await retry_async(self._derive, policy, what="CLOB auth", logger=log)
        log.info("CLOB API key %s...", self.creds.api_key[:8])

    async def refresh_credentials(self) -> bool:
        """Mid-run: capped backoff, bounded attempts. False leaves trading paused until next cycle."""
        if not self.live:
            return True
        assert self.creds_manager is not None
        s = self.settings
        policy = RetryPolicy(
            max_attempts=s.AUTH_REFRESH_ATTEMPTS,
            backoff=linear_backoff(s.AUTH_BACKOFF_SEC, cap=s.AUTH_BACKOFF_CAP_SEC),
            retryable=_is_auth_error,
            sleep=self.sleep,
        )
        try:
            self.creds = await retry_async(self._derive, policy, what="CLOB re-auth", logger=log)
        except AuthError as e:
            log.error("Credential refresh failed; trading paused until next cycle: %s", e)
            return False
        log.info("New API key derived %s...", self.creds.api_key[:8])
        return True


@dataclass
class CycleReport:
    cycle: int
    entered: List[Position] = field(default_factory=list)
    exited: List[ClosedTrade] = field(default_factory=list)
    failed: int = 0
    unknown: int = 0
    guard_rejections: int = 0
    auth_refresh: bool = False
    abandoned: bool = False


class TradingEngine:
    def __init__(self, session: BotSession, *, mode: Optional[str] = None) -> None:
        self.session = session
        self.s = session.settings
        self.mode = (mode or self.s.BOT_MODE).lower()
        self.limits: GuardLimits = self.s.guard_limits()
        self.slog = get_logger("engine")

    @property
    def ledger(self) -> PositionLedger:
        return self.session.ledger

    async def prepare(self) -> None:
        if self.mode != "copy" or self.session.target_address:
            return
        addr = self.s.TARGET_ADDRESS
        if not addr and self.s.TARGET_USERNAME:
            log.info("Resolving @%s...", self.s.TARGET_USERNAME)
            addr = await self.session.data.resolve_address(self.s.TARGET_USERNAME) or ""
        if not addr:
            raise ConfigurationError("could not resolve copy target; set TARGET_ADDRESS", details={"username": self.s.TARGET_USERNAME})
        self.session.target_address = addr
        log.info("Target address: %s", addr)

    async def run(self, stop: asyncio.Event, *, once: bool = False) -> None:
        await self.prepare()
        log.info(
            "Limits: $%s/trade | $%s portfolio | %d positions | $%s/day | %dc max spread | mode=%s live=%s",
            self.limits.max_trade_usdc, self.limits.portfolio_cap, self.limits.max_positions,
            self.limits.daily_cap, self.limits.max_spread_cents, self.mode, self.session.live,
        )
        cycle = 0
        while not stop.is_set():
            cycle += 1
            try:
                await self.run_cycle(cycle)
            except LedgerError:
                # durable state can't be trusted any more
                raise
            except Exception as e:
                log.exception("cycle %d failed: %s", cycle, e)
                if once:
                    raise
                await self._wait(stop, self.s.ERROR_BACKOFF_SEC)
            if once:
                break
            await self._wait(stop, self.s.SCAN_INTERVAL_SEC)
        log.info("Engine stopped after %d cycle(s)", cycle)

    @staticmethod
    async def _wait(stop: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, float(seconds)))
        except asyncio.TimeoutError:
            pass

    # ----- cycle -----

    async def run_cycle(self, cycle: int = 0) -> CycleReport:
        rep = CycleReport(cycle=cycle)
        led = self.ledger

        for u in led.prune_unknown(utc_ts(), self.s.UNKNOWN_OUTCOME_HOLD_SEC):
            log.warning("Unknown outcome for %s (salt=%s) expired from hold; key unblocked", u.key, u.salt)
        if self.session.router.needs_reconcile and not led.state.unknown:
            log.info("All unknown outcomes cleared from hold")
            self.session.router.needs_reconcile = False
        if led.roll_day(trading_day(self.s.TRADING_TZ)):
            log.info("New trading day %s: daily spend reset", led.state.daily_reset_date)

        exits: List[Tuple[Position, Decimal]] = []
        if self.mode == "copy":
            candidates, exits = await self._copy_plan()
        else:
            candidates = await self._auto_candidates()

        accepted, decisions = select_batch(candidates, led.snapshot(), self.limits)
        for d in decisions:
            if not d.allowed:
                rep.guard_rejections += 1
                log.info("skip %s \"%s\": %s", d.candidate.outcome, d.candidate.title[:40], d.reason)

        for i, c in enumerate(accepted):
            if i:
                await self.session.sleep(self.s.ORDER_PAUSE_SEC)
            if not await self._enter(c, rep):
                rep.abandoned = True
                break

        if not rep.abandoned:
            for pos, price in exits:
                if not await self._exit(pos, price, rep):
                    rep.abandoned = True
                    break

        await self._mark_positions()
        self._status(rep)
        return rep

    async def _enter(self, c: TradeCandidate, rep: CycleReport) -> bool:
        """False means auth failed and the rest of the cycle is abandoned."""
        log.info("BUY %s @ %s for $%s \"%s\"", c.outcome, c.price, c.size_usdc, c.title[:60])
        try:
            pos = await self.session.router.enter(c, self.session.creds)
        except AuthError as e:
            log.warning("Auth failure on order: %s. Re-deriving credentials.", e)
            rep.auth_refresh = True
            await self.session.refresh_credentials()
            return False
        except (InvalidOrderError, BusinessRejection, SubmissionError) as e:
            rep.failed += 1
            log.error("Order failed: %s | usdc=%s price=%s market=%s", e, c.size_usdc, c.price, c.condition_id)
            return True
        if pos is None:
            rep.unknown += 1
        else:
            rep.entered.append(pos)
        return True

    async def _exit(self, pos: Position, price: Decimal, rep: CycleReport) -> bool:
        log.info("SELL %s @ %s \"%s\"", pos.outcome, price, pos.title[:60])
        try:
            trade = await self.session.router.exit(pos, price, self.session.creds)
        except AuthError as e:
            log.warning("Auth failure on exit: %s. Re-deriving credentials.", e)
            rep.auth_refresh = True
            await self.session.refresh_credentials()
            return False
        except (InvalidOrderError, BusinessRejection, SubmissionError) as e:
            rep.failed += 1
            log.error("Sell failed for %s: %s | shares=%s price=%s; keeping position", pos.key, e, pos.shares, price)
            return True
        if trade is None:
            rep.unknown += 1
        else:
            rep.exited.append(trade)
            sign = "+" if trade.realized_pnl >= 0 else "-"
            log.info("P&L %s: %s$%s", trade.title, sign, abs(trade.realized_pnl).quantize(Decimal("0.01")))
            if trade.realized_pnl > 0:
                await self._notify_profit(trade)
        return True

    async def _notify_profit(self, trade: ClosedTrade) -> None:
        try:
            await self.session.notifier.profit_taken(
                title=trade.title,
                outcome=trade.outcome,
                profit=trade.realized_pnl,
                total_realized=self.ledger.realized_total(),
            )
        except Exception:
            # close is already persisted
            log.exception("profit notification failed for %s", trade.key)

    # ----- planning -----

    def _size_for_next(self) -> Decimal:
        room = self.limits.portfolio_cap - self.ledger.snapshot().exposure_usdc
        return min(self.limits.max_trade_usdc, room)

    async def _auto_candidates(self) -> List[TradeCandidate]:
        markets = await self.session.gamma.scan_markets()
        opps = rank_opportunities(markets, min_edge=self.s.MIN_EDGE, min_liquidity=self.s.MIN_LIQUIDITY)
        log.info("scan: %d markets, %d opportunities", len(markets), len(opps))
        for i, o in enumerate(opps[:5], start=1):
            log.info(
                "  %d. %s @ %.0fc edge:%.1f%% score:%s R/R:%sx [%s] \"%s\"",
                i, o.outcome, o.price * 100, o.edge * 100, o.score, o.rr_ratio, ", ".join(o.reasons), o.question[:50],
            )

        size = self._size_for_next()
        if size < Decimal(str(self.s.MIN_TRADE_USDC)):
            log.info("Portfolio budget exhausted ($%s/$%s); holding", self.ledger.exposure(), self.limits.portfolio_cap)
            return []

        snap = self.ledger.snapshot()
        out: List[TradeCandidate] = []
        for o in opps:
            if len(out) >= MAX_BOOK_LOOKUPS:
                break
            if o.key in snap.open_keys or o.key in snap.blocked_keys:
                continue
            book = await self.session.clob.get_orderbook(o.token_id)
            bid = book.best_bid if book else None
            ask = book.best_ask if book else None
            out.append(TradeCandidate(
                key=o.key,
                token_id=o.token_id,
                condition_id=o.condition_id,
                price=ask if ask is not None else to_decimal(o.price),
                size_usdc=size,
                best_bid=bid,
                best_ask=ask,
                title=o.question,
                outcome=o.outcome,
                neg_risk=o.neg_risk,
                score=o.score,
                reasons=tuple(o.reasons),
            ))
        return out

    async def _copy_plan(self) -> Tuple[List[TradeCandidate], List[Tuple[Position, Decimal]]]:
        sess = self.session
        target = await sess.data.fetch_positions(sess.target_address)
        to_enter, to_exit = diff_positions(target, frozenset(self.ledger.positions))
        log.info("poll: target holds %d position(s); %d to enter, %d to exit", len(target), len(to_enter), len(to_exit))

        snap = self.ledger.snapshot()
        size = self._size_for_next()
        cands: List[TradeCandidate] = []
        if size >= Decimal(str(self.s.MIN_TRADE_USDC)):
            for p in to_enter:
                if len(cands) >= MAX_BOOK_LOOKUPS:
                    break
                if p.key in snap.blocked_keys:
                    continue
                info = await sess.gamma.get_market_info(p.condition_id)
                book = await sess.clob.get_orderbook(p.asset)
                ask = book.best_ask if book else None
                if ask is None:
                    log.info("skip %s (%s): no ask", p.title, p.outcome)
                    continue
                cands.append(TradeCandidate(
                    key=p.key,
                    token_id=p.asset,
                    condition_id=p.condition_id,
                    price=ask,
                    size_usdc=size,
                    best_bid=book.best_bid if book else None,
                    best_ask=ask,
                    title=p.title,
                    outcome=p.outcome,
                    neg_risk=info.neg_risk if info else False,
                ))

        exits: List[Tuple[Position, Decimal]] = []
        for key in to_exit:
            pos = self.ledger.get(key)
            if pos is None or key in snap.blocked_keys:
                continue
            book = await sess.clob.get_orderbook(pos.token_id)
            bid = book.best_bid if book else None
            if bid is None or bid <= 0:
                log.info("Can't sell %s: no bid", pos.title)
                continue
            exits.append((pos, bid))
        return cands, exits

    # ----- marks / status -----

    async def _mark_positions(self) -> None:
        led = self.ledger
        for key, pos in list(led.positions.items()):
            try:
                book = await self.session.clob.get_orderbook(pos.token_id)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.debug("mark %s skipped: %s", key, e)
                continue
            bid = book.best_bid if book else None
            if bid is not None:
                led.mark(key, bid)
        try:
            led.save()
        except LedgerError as e:
            log.warning("Could not persist marks: %s", e)

    def _status(self, rep: CycleReport) -> None:
        led = self.ledger
        log.info(
            "Positions: %d/%d | Exposure: $%s/$%s | Today: $%s/$%s | Realized: $%s | Unrealized: $%s",
            len(led.positions), self.limits.max_positions,
            led.exposure(), self.limits.portfolio_cap,
            led.state.daily_spent, self.limits.daily_cap,
            led.realized_total(), led.unrealized_total(),
        )
        self.slog.info(
            "cycle",
            cycle=rep.cycle,
            mode=self.mode,
            entered=len(rep.entered),
            exited=len(rep.exited),
            failed=rep.failed,
            unknown=rep.unknown,
            guard_rejections=rep.guard_rejections,
            auth_refresh=rep.auth_refresh,
            needs_reconcile=self.session.router.needs_reconcile,
            exposure=led.exposure(),
            daily_spent=led.state.daily_spent,
        )
