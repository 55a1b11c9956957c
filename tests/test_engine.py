from __future__ import annotations

import asyncio
import unittest
from decimal import Decimal
from typing import Dict, List, Optional

import aiohttp

from clob_auth import Credentials
from config import Settings
from core.runtime_engine import BotSession, TradingEngine
from core.snapshot import MemoryRepository
from errors import AuthError, LedgerError
from exchange import GammaMarket, OrderBook, OrderBookLevel, Rejected, TargetPosition
from utils import utc_ts

D = Decimal


def book(token: str, bid: str, ask: str) -> OrderBook:
    return OrderBook(token_id=token, bids=[OrderBookLevel(D(bid), D("100"))], asks=[OrderBookLevel(D(ask), D("100"))])


class FakeClob:
    def __init__(self, books: Dict[str, OrderBook]):
        self.books = books

    async def get_orderbook(self, token_id: str) -> Optional[OrderBook]:
        return self.books.get(token_id)


class FakeData:
    def __init__(self, positions: List[TargetPosition]):
        self.positions = positions

    async def fetch_positions(self, address: str) -> List[TargetPosition]:
        return list(self.positions)

    async def resolve_address(self, username: str) -> Optional[str]:
        return "0xresolved" if username == "trader" else None


class FakeGamma:
    def __init__(self, markets: Optional[List[GammaMarket]] = None):
        self.markets = markets or []

    async def scan_markets(self, max_markets: Optional[int] = None) -> List[GammaMarket]:
        return list(self.markets)

    async def get_market_info(self, condition_id: str) -> Optional[GammaMarket]:
        return None


class FakeCredentialManager:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.create_flags: List[bool] = []

    async def derive(self, *, create: bool = False) -> Credentials:
        self.calls += 1
        self.create_flags.append(create)
        if self.calls <= self.failures:
            raise AuthError("derive failed", details={"status": 500})
        return Credentials(f"key-{self.calls:06d}", "c2VjcmV0LXNlY3JldA==", "pass-phrase")


class ScriptedSubmitter:
    def __init__(self, *results):
        self.results = list(results)
        self.sent = []

    async def submit(self, signed, creds=None, order_type=None):
        self.sent.append((signed, creds))
        return self.results.pop(0)


class RecordingNotifier:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.alerts: List[dict] = []

    async def profit_taken(self, **kw) -> None:
        self.alerts.append(kw)
        if self.error is not None:
            raise self.error


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    mode = "copy"

    async def asyncSetUp(self) -> None:
        self.sleeps: List[float] = []

        async def fake_sleep(sec: float) -> None:
            self.sleeps.append(sec)

        self.s = Settings(BOT_MODE=self.mode, TARGET_ADDRESS="0xtarget", ORDER_PAUSE_SEC=1.5, MIN_LIQUIDITY=1000.0)
        self.http = aiohttp.ClientSession()
        self.repo = MemoryRepository()
        self.session = BotSession.build(self.s, self.http, live=False, repo=self.repo, sleep=fake_sleep)
        self.session.clob = FakeClob({
            "a": book("a", "0.19", "0.20"),
            "b": book("b", "0.45", "0.47"),
            "c": book("c", "0.29", "0.30"),
        })
        self.session.data = FakeData([])
        self.session.gamma = FakeGamma()
        self.engine = TradingEngine(self.session)

    async def asyncTearDown(self) -> None:
        await self.http.close()

    def hold(self, token: str, cost: str = "3", shares: str = "10") -> None:
        self.session.ledger.open_position(
            token_id=token, condition_id="c" + token, outcome="Yes", title=f"Market {token}",
            entry_price=D("0.30"), cost_usdc=D(cost), shares=D(shares),
        )


class TestCopyCycle(EngineTestCase):
    async def test_enters_new_and_exits_dropped(self) -> None:
        self.hold("b")
        self.session.data = FakeData([TargetPosition(condition_id="ca", asset="a", title="Market a", outcome="Yes")])
        rep = await self.engine.run_cycle(1)

        self.assertEqual([p.key for p in rep.entered], ["ca_a"])
        self.assertEqual(rep.entered[0].entry_price, D("0.20"))
        self.assertEqual(rep.entered[0].shares, D("25"))
        self.assertEqual([t.key for t in rep.exited], ["cb_b"])
        self.assertEqual(rep.exited[0].realized_pnl, D("1.50"))
        self.assertEqual(set(self.session.ledger.positions), {"ca_a"})
        # marked at the bid after the cycle
        self.assertEqual(self.session.ledger.get("ca_a").current_price, D("0.19"))

    async def test_pause_between_consecutive_orders(self) -> None:
        self.session.data = FakeData([
            TargetPosition(condition_id="ca", asset="a"),
            TargetPosition(condition_id="cc", asset="c"),
        ])
        rep = await self.engine.run_cycle(1)
        self.assertEqual(len(rep.entered), 2)
        self.assertEqual(self.sleeps, [1.5])

    async def test_unknown_outcome_blocks_until_hold_expires(self) -> None:
        self.session.data = FakeData([TargetPosition(condition_id="ca", asset="a")])
        led = self.session.ledger
        led.record_unknown(key="ca_a", side="BUY", salt=1, token_id="a", amount=D("5"), price=D("0.2"), ts=utc_ts())

        rep = await self.engine.run_cycle(1)
        self.assertEqual(rep.entered, [])
        self.assertEqual(led.positions, {})

        led.record_unknown(key="ca_a", side="BUY", salt=1, token_id="a", amount=D("5"), price=D("0.2"),
                           ts=utc_ts() - self.s.UNKNOWN_OUTCOME_HOLD_SEC - 1)
        rep = await self.engine.run_cycle(2)
        self.assertEqual([p.key for p in rep.entered], ["ca_a"])
        self.assertEqual(led.state.unknown, {})

    async def test_reconcile_flag_clears_once_holds_expire(self) -> None:
        led = self.session.ledger
        router = self.session.router
        router.needs_reconcile = True
        led.record_unknown(key="cx_x", side="BUY", salt=1, token_id="x", amount=D("5"), price=D("0.2"), ts=utc_ts())
        await self.engine.run_cycle(1)
        self.assertTrue(router.needs_reconcile)

        led.record_unknown(key="cx_x", side="BUY", salt=1, token_id="x", amount=D("5"), price=D("0.2"),
                           ts=utc_ts() - self.s.UNKNOWN_OUTCOME_HOLD_SEC - 1)
        await self.engine.run_cycle(2)
        self.assertEqual(led.state.unknown, {})
        self.assertFalse(router.needs_reconcile)

    async def test_pending_buy_shrinks_next_size(self) -> None:
        self.hold("b", cost="5", shares="10")
        self.session.ledger.record_unknown(key="cx_x", side="BUY", salt=1, token_id="x", amount=D("5"),
                                           price=D("0.2"), ts=utc_ts())
        self.session.data = FakeData([TargetPosition(condition_id="cb", asset="b"), TargetPosition(condition_id="ca", asset="a")])
        rep = await self.engine.run_cycle(1)
        # daily cap 10 is already consumed by one fill plus one possible fill
        self.assertEqual(rep.entered, [])
        self.assertEqual(rep.guard_rejections, 1)

    async def test_size_shrinks_to_remaining_budget(self) -> None:
        self.hold("b", cost="12", shares="30")
        self.session.data = FakeData([TargetPosition(condition_id="cb", asset="b"), TargetPosition(condition_id="ca", asset="a")])
        rep = await self.engine.run_cycle(1)
        self.assertEqual(rep.entered[0].cost_usdc, D("3"))

    async def test_daily_cap_resets_on_new_day(self) -> None:
        led = self.session.ledger
        led.state.daily_reset_date = "2000-01-01"
        led.state.daily_spent = D("10")
        self.session.data = FakeData([TargetPosition(condition_id="ca", asset="a")])
        rep = await self.engine.run_cycle(1)
        self.assertEqual(len(rep.entered), 1)
        self.assertEqual(led.state.daily_spent, D("5"))


class TestProfitAlerts(EngineTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.notifier = RecordingNotifier()
        self.session.notifier = self.notifier

    async def test_profitable_exit_alerts(self) -> None:
        self.hold("b", cost="3", shares="10")
        rep = await self.engine.run_cycle(1)
        self.assertEqual(len(rep.exited), 1)
        self.assertEqual(self.notifier.alerts, [{
            "title": "Market b",
            "outcome": "Yes",
            "profit": D("1.50"),
            "total_realized": D("1.50"),
        }])

    async def test_losing_exit_is_silent(self) -> None:
        self.hold("b", cost="5", shares="10")
        rep = await self.engine.run_cycle(1)
        self.assertEqual(rep.exited[0].realized_pnl, D("-0.50"))
        self.assertEqual(self.notifier.alerts, [])

    async def test_alert_failure_does_not_break_cycle(self) -> None:
        self.notifier.error = RuntimeError("sms gateway down")
        self.hold("b", cost="3", shares="10")
        self.hold("c", cost="2", shares="10")
        with self.assertLogs("engine", level="ERROR"):
            rep = await self.engine.run_cycle(1)
        self.assertEqual(len(rep.exited), 2)
        self.assertEqual(len(self.notifier.alerts), 2)
        self.assertEqual(self.session.ledger.positions, {})


class TestAuthRecovery(EngineTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.cm = FakeCredentialManager()
        self.session.creds_manager = self.cm
        self.session.creds = Credentials("key-old000", "c2VjcmV0LXNlY3JldA==", "pass-old")
        self.sub = ScriptedSubmitter(Rejected("Unauthorized/Invalid api key", http_status=401))
        self.session.router.submitter = self.sub

    async def test_auth_failure_rederives_once_and_abandons_cycle(self) -> None:
        self.session.data = FakeData([TargetPosition(condition_id="ca", asset="a"), TargetPosition(condition_id="cc", asset="c")])
        rep = await self.engine.run_cycle(1)
        self.assertTrue(rep.auth_refresh)
        self.assertTrue(rep.abandoned)
        self.assertEqual(self.cm.calls, 1)
        self.assertEqual(len(self.sub.sent), 1)
        self.assertEqual(self.session.creds.api_key, "key-000001")
        self.assertEqual(self.session.ledger.positions, {})

    async def test_refresh_gives_up_after_bounded_attempts(self) -> None:
        self.cm.failures = 99
        self.session.data = FakeData([TargetPosition(condition_id="ca", asset="a")])
        rep = await self.engine.run_cycle(1)
        self.assertTrue(rep.abandoned)
        self.assertEqual(self.cm.calls, self.s.AUTH_REFRESH_ATTEMPTS)
        self.assertEqual(self.session.creds.api_key, "key-old000")
        self.assertEqual(self.sleeps, [3.0, 6.0])


class TestStartupAuth(EngineTestCase):
    async def test_linear_backoff_then_success(self) -> None:
        cm = FakeCredentialManager(failures=2)
        self.session.creds_manager = cm
        await self.session.authenticate()
        self.assertEqual(self.session.creds.api_key, "key-000003")
        self.assertEqual(self.sleeps, [3.0, 6.0])

    async def test_create_key_setting_is_passed_through(self) -> None:
        cm = FakeCredentialManager(failures=1)
        self.session.creds_manager = cm
        self.s.CLOB_CREATE_KEY = True
        await self.session.authenticate()
        self.assertEqual(cm.create_flags, [True, True])

    async def test_derive_only_by_default(self) -> None:
        cm = FakeCredentialManager()
        self.session.creds_manager = cm
        await self.session.authenticate()
        self.assertEqual(cm.create_flags, [False])

    async def test_exhaustion_raises(self) -> None:
        cm = FakeCredentialManager(failures=99)
        self.session.creds_manager = cm
        with self.assertRaises(AuthError):
            await self.session.authenticate()
        self.assertEqual(cm.calls, 5)
        self.assertEqual(self.sleeps, [3.0, 6.0, 9.0, 12.0])

    async def test_preprovisioned_credentials_skip_derivation(self) -> None:
        cm = FakeCredentialManager()
        self.session.creds_manager = cm
        self.s.POLY_API_KEY = "key-preset"
        self.s.POLY_API_SECRET = "c2VjcmV0LXNlY3JldA=="
        self.s.POLY_API_PASSPHRASE = "pass-preset"
        await self.session.authenticate()
        self.assertEqual(cm.calls, 0)
        self.assertEqual(self.session.creds.api_key, "key-preset")


class TestAutoCycle(EngineTestCase):
    mode = "auto"

    async def test_buys_best_ranked_at_the_ask(self) -> None:
        self.session.gamma = FakeGamma([
            GammaMarket(id="1", question="Cheap?", condition_id="ca", end_ts=0, outcomes=["Yes", "No"],
                        outcome_prices=[0.10, 0.90], clob_token_ids=["a", "x"], liquidity=5000, volume_24h=1200),
            GammaMarket(id="2", question="Thin?", condition_id="cz", end_ts=0, outcomes=["Yes", "No"],
                        outcome_prices=[0.10, 0.90], clob_token_ids=["z", "y"], liquidity=10, volume_24h=1200),
        ])
        rep = await self.engine.run_cycle(1)
        self.assertEqual([p.key for p in rep.entered], ["ca_a"])
        self.assertEqual(rep.entered[0].entry_price, D("0.20"))

    async def test_one_sided_book_is_a_guard_rejection(self) -> None:
        self.session.clob.books["a"] = OrderBook(token_id="a", bids=[], asks=[OrderBookLevel(D("0.2"), D("1"))])
        self.session.gamma = FakeGamma([
            GammaMarket(id="1", question="Cheap?", condition_id="ca", end_ts=0, outcomes=["Yes"],
                        outcome_prices=[0.10], clob_token_ids=["a"], liquidity=5000, volume_24h=1200),
        ])
        rep = await self.engine.run_cycle(1)
        self.assertEqual(rep.entered, [])
        self.assertEqual(rep.guard_rejections, 1)


class TestRunLoop(EngineTestCase):
    async def test_once_runs_a_single_cycle(self) -> None:
        calls = []

        async def cycle(n: int = 0):
            calls.append(n)

        self.engine.run_cycle = cycle
        await self.engine.run(asyncio.Event(), once=True)
        self.assertEqual(calls, [1])

    async def test_stop_event_ends_loop(self) -> None:
        stop = asyncio.Event()
        self.s.SCAN_INTERVAL_SEC = 3600

        async def cycle(n: int = 0):
            stop.set()

        self.engine.run_cycle = cycle
        await asyncio.wait_for(self.engine.run(stop), timeout=5)

    async def test_ledger_errors_are_fatal(self) -> None:
        async def cycle(n: int = 0):
            raise LedgerError("disk full")

        self.engine.run_cycle = cycle
        with self.assertRaises(LedgerError):
            await self.engine.run(asyncio.Event())

    async def test_copy_target_resolution(self) -> None:
        self.s.TARGET_ADDRESS = ""
        self.s.TARGET_USERNAME = "trader"
        await self.engine.prepare()
        self.assertEqual(self.session.target_address, "0xresolved")


if __name__ == "__main__":
    unittest.main(verbosity=2)
