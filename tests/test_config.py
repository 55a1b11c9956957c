from __future__ import annotations

import os
import unittest
from decimal import Decimal
from unittest import mock

from config import Settings, load_settings
from errors import ConfigurationError


class TestLoadSettings(unittest.TestCase):
    def test_defaults_are_paper(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            s = load_settings(None)
        self.assertFalse(s.LIVE_MODE)
        self.assertEqual(s.BOT_MODE, "auto")
        self.assertEqual(s.ORDER_TYPE, "FOK")
        self.assertEqual(s.TRADING_TZ, "America/New_York")

    def test_env_overrides(self) -> None:
        env = {
            "LIVE_MODE": "true",
            "BOT_MODE": "COPY",
            "MAX_TRADE_USDC": "2.5",
            "MAX_POSITIONS": "7",
            "MAX_SPREAD_CENTS": "8",
            "ORDER_TYPE": "gtc",
            "TARGET_USERNAME": " someone ",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            s = load_settings(None)
        self.assertTrue(s.LIVE_MODE)
        self.assertEqual(s.BOT_MODE, "copy")
        self.assertEqual(s.MAX_TRADE_USDC, 2.5)
        self.assertEqual(s.MAX_POSITIONS, 7)
        self.assertEqual(s.ORDER_TYPE, "GTC")
        self.assertEqual(s.TARGET_USERNAME, "someone")

    def test_bad_numbers_fall_back_to_defaults(self) -> None:
        with mock.patch.dict(os.environ, {"MAX_POSITIONS": "lots", "MAX_DAILY_USDC": "?"}, clear=True):
            s = load_settings(None)
        self.assertEqual(s.MAX_POSITIONS, 3)
        self.assertEqual(s.MAX_DAILY_USDC, 10.0)

    def test_wallet_and_key_settings(self) -> None:
        with mock.patch.dict(os.environ, {"CLOB_CREATE_KEY": "yes", "MIN_GAS_BALANCE": "0.05"}, clear=True):
            s = load_settings(None)
        self.assertTrue(s.CLOB_CREATE_KEY)
        self.assertEqual(s.MIN_GAS_BALANCE, 0.05)
        with mock.patch.dict(os.environ, {}, clear=True):
            s = load_settings(None)
        self.assertFalse(s.CLOB_CREATE_KEY)
        self.assertEqual(s.MIN_GAS_BALANCE, 0.01)


class TestValidate(unittest.TestCase):
    def test_live_requires_key(self) -> None:
        with self.assertRaises(ConfigurationError):
            Settings(LIVE_MODE=True).validate()
        Settings(LIVE_MODE=True, POLY_PRIVATE_KEY="0x" + "11" * 32).validate()

    def test_copy_requires_target(self) -> None:
        with self.assertRaises(ConfigurationError):
            Settings(BOT_MODE="copy").validate()
        Settings(BOT_MODE="copy", TARGET_USERNAME="someone").validate()

    def test_unknown_mode(self) -> None:
        with self.assertRaises(ConfigurationError) as cm:
            Settings(BOT_MODE="yolo").validate()
        self.assertIn("BOT_MODE=yolo", str(cm.exception))


class TestGuardLimits(unittest.TestCase):
    def test_decimal_limits(self) -> None:
        g = Settings(MAX_TRADE_USDC=2.5, MAX_PORTFOLIO_USDC=7.1, MAX_NEW_PER_CYCLE=1).guard_limits()
        self.assertEqual(g.max_trade_usdc, Decimal("2.5"))
        self.assertEqual(g.portfolio_cap, Decimal("7.1"))
        self.assertEqual(g.daily_cap, Decimal("10.0"))
        self.assertEqual(g.max_positions, 3)
        self.assertEqual(g.max_new_per_cycle, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
