from __future__ import annotations

import logging
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from errors import AuthError, BotError, ConfigurationError
from utils import (
    RetryPolicy,
    SecretRedactionFilter,
    from_micro,
    linear_backoff,
    retry_async,
    safe_json_dumps,
    to_decimal,
    to_micro,
    trading_day,
)


class TestAmounts(unittest.TestCase):
    def test_to_micro_rounds_down(self) -> None:
        self.assertEqual(to_micro(Decimal("5")), 5_000_000)
        self.assertEqual(to_micro(Decimal("0.0000019")), 1)
        self.assertEqual(to_micro(Decimal("3.0303039")), 3_030_303)
        self.assertEqual(from_micro(7_500_000), Decimal("7.5"))

    def test_to_decimal(self) -> None:
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))
        self.assertEqual(to_decimal(" 0.25 "), Decimal("0.25"))
        with self.assertRaises(ValueError):
            to_decimal("abc")

    def test_compact_json(self) -> None:
        self.assertEqual(safe_json_dumps({"a": 1, "b": [1, 2]}), '{"a":1,"b":[1,2]}')


class TestTradingDay(unittest.TestCase):
    def test_new_york_midnight(self) -> None:
        # 03:30 UTC is still the previous evening in New York
        self.assertEqual(trading_day("America/New_York", datetime(2024, 5, 2, 3, 30, tzinfo=timezone.utc)), "2024-05-01")
        self.assertEqual(trading_day("America/New_York", datetime(2024, 5, 2, 4, 30, tzinfo=timezone.utc)), "2024-05-02")
        self.assertEqual(trading_day("UTC", datetime(2024, 5, 2, 3, 30, tzinfo=timezone.utc)), "2024-05-02")


class TestBackoff(unittest.TestCase):
    def test_linear(self) -> None:
        f = linear_backoff(3.0)
        self.assertEqual([f(i) for i in range(1, 5)], [3.0, 6.0, 9.0, 12.0])

    def test_linear_capped(self) -> None:
        f = linear_backoff(10.0, cap=30.0)
        self.assertEqual([f(i) for i in range(1, 6)], [10.0, 20.0, 30.0, 30.0, 30.0])


class TestRetryAsync(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.slept = []

        async def sleep(sec: float) -> None:
            self.slept.append(sec)

        self.sleep = sleep

    async def test_succeeds_after_failures(self) -> None:
        calls = []

        async def fn():
            calls.append(1)
            if len(calls) < 3:
                raise AuthError("nope")
            return "ok"

        policy = RetryPolicy(max_attempts=5, backoff=linear_backoff(3.0), sleep=self.sleep)
        self.assertEqual(await retry_async(fn, policy), "ok")
        self.assertEqual(self.slept, [3.0, 6.0])

    async def test_reraises_last_error(self) -> None:
        async def fn():
            raise AuthError("still failing")

        policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(1.0), sleep=self.sleep)
        with self.assertRaises(AuthError):
            await retry_async(fn, policy, what="derive")
        self.assertEqual(self.slept, [1.0, 2.0])

    async def test_non_retryable_propagates_immediately(self) -> None:
        async def fn():
            raise ConfigurationError("bad key")

        policy = RetryPolicy(max_attempts=5, retryable=lambda e: isinstance(e, AuthError), sleep=self.sleep)
        with self.assertRaises(ConfigurationError):
            await retry_async(fn, policy)
        self.assertEqual(self.slept, [])


class TestSecretRedaction(unittest.TestCase):
    def _record(self, msg: str, *args) -> logging.LogRecord:
        return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)

    def test_registered_values_are_masked(self) -> None:
        SecretRedactionFilter.register("sekrit-value-123")
        rec = self._record("derived creds %s ok", "sekrit-value-123")
        SecretRedactionFilter().filter(rec)
        self.assertEqual(rec.getMessage(), "derived creds ***REDACTED*** ok")

    def test_key_value_pattern(self) -> None:
        rec = self._record("config private_key=0xdeadbeef passphrase: hunter22")
        SecretRedactionFilter().filter(rec)
        self.assertNotIn("0xdeadbeef", rec.getMessage())
        self.assertNotIn("hunter22", rec.getMessage())

    def test_short_values_ignored(self) -> None:
        SecretRedactionFilter.register("abc")
        rec = self._record("abc def")
        SecretRedactionFilter().filter(rec)
        self.assertEqual(rec.getMessage(), "abc def")


class TestErrors(unittest.TestCase):
    def test_details_rendered(self) -> None:
        e = AuthError("derive failed", details={"status": 401})
        self.assertEqual(str(e), "derive failed [status=401]")
        self.assertIsInstance(e, BotError)
        self.assertEqual(str(BotError("plain")), "plain")


if __name__ == "__main__":
    unittest.main(verbosity=2)
