from __future__ import annotations

import unittest

from exchange import GammaMarket, TargetPosition
from strategy import diff_positions, rank_opportunities, score_outcome

NOW = 1_700_000_000


def market(**kw) -> GammaMarket:
    base = dict(
        id="1",
        question="Will it happen?",
        condition_id="c1",
        end_ts=0,
        outcomes=["Yes", "No"],
        outcome_prices=[0.10, 0.90],
        clob_token_ids=["t1", "t2"],
        liquidity=5000.0,
        volume_24h=1200.0,
    )
    base.update(kw)
    return GammaMarket(**base)


class TestScoreOutcome(unittest.TestCase):
    def score(self, m: GammaMarket, price, **kw):
        return score_outcome(m, "Yes", price, "t1", min_edge=0.05, min_liquidity=3000, now_ts=NOW, **kw)

    def test_cheap_active_outcome(self) -> None:
        o = self.score(market(), 0.10)
        self.assertIn("cheap@10c", o.reasons)
        self.assertEqual(o.fair_value, 0.18)
        self.assertEqual(o.edge, 0.08)
        self.assertEqual(o.side, "BUY")
        # 3 rule points + 0.8 edge + capped R/R of 5
        self.assertEqual(o.score, 8.8)

    def test_filters(self) -> None:
        self.assertIsNone(self.score(market(), None))
        self.assertIsNone(self.score(market(), 0.0))
        self.assertIsNone(self.score(market(), 1.0))
        self.assertIsNone(self.score(market(liquidity=100.0), 0.10))
        self.assertIsNone(self.score(market(end_ts=NOW + 1800), 0.10))            # < 1h left
        self.assertIsNone(self.score(market(end_ts=NOW + 100 * 86400), 0.10))     # > 90 days out

    def test_near_expiry_bonus(self) -> None:
        o = self.score(market(end_ts=NOW + 48 * 3600), 0.25)
        self.assertIn("expires_48h", o.reasons)
        self.assertEqual(o.hours_left, 48)

    def test_no_edge_and_low_score_is_dropped(self) -> None:
        self.assertIsNone(self.score(market(volume_24h=0.0), 0.50))

    def test_expensive_side_with_weak_signals_is_dropped(self) -> None:
        # high_vol + deep_liquidity = 2 points, fair value below price
        m = market(volume_24h=20000.0, liquidity=50000.0, end_ts=NOW + 24 * 3600)
        self.assertIsNone(self.score(m, 0.90))


class TestRankOpportunities(unittest.TestCase):
    def test_sorted_by_score(self) -> None:
        ms = [
            market(condition_id="a", clob_token_ids=["a1", "a2"], outcome_prices=[0.28, 0.72], volume_24h=1200.0),
            market(condition_id="b", clob_token_ids=["b1", "b2"], outcome_prices=[0.05, 0.95], volume_24h=6000.0),
        ]
        opps = rank_opportunities(ms, min_edge=0.03, min_liquidity=3000, now_ts=NOW)
        self.assertEqual([o.key for o in opps], ["b_b1", "a_a1"])

    def test_skips_outcomes_without_token(self) -> None:
        ms = [market(clob_token_ids=[""])]
        self.assertEqual(rank_opportunities(ms, min_edge=0.05, min_liquidity=0, now_ts=NOW), [])


class TestDiffPositions(unittest.TestCase):
    def test_enter_and_exit(self) -> None:
        target = [TargetPosition("c1", "a"), TargetPosition("c2", "b"), TargetPosition("c1", "a")]
        to_enter, to_exit = diff_positions(target, {"c2_b", "c9_z", "c3_y"})
        self.assertEqual([p.key for p in to_enter], ["c1_a"])
        self.assertEqual(to_exit, ["c3_y", "c9_z"])

    def test_nothing_to_do(self) -> None:
        self.assertEqual(diff_positions([], set()), ([], []))


if __name__ == "__main__":
    unittest.main(verbosity=2)
