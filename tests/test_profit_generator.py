"""
Unit tests for emission/profit_generator.py

Tests cover:
- Amount splitting (exact sum, positive amounts)
- Due time drawing (strictly inside the remaining day)
- Batch generation scenario and end-of-day edge cases
- Tariff plans
- Persisted generation: regeneration guard, generate_for_all, visible_total
"""

import random
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch
import sys
import os

import pytz

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_mongo import FakeCollection

KYIV = pytz.timezone("Europe/Kyiv")


def kyiv(year, month, day, hour, minute=0):
    """Kyiv wall-clock time as an aware UTC datetime."""
    return KYIV.localize(datetime(year, month, day, hour, minute)).astimezone(pytz.utc)


class TestSplitAmount(unittest.TestCase):

    def test_sum_invariant_for_every_count(self):
        from emission.profit_generator import split_amount

        for total in (0.01, 100.0, 1234.5678, 700000.0):
            for count in range(4, 12):
                for seed in range(10):
                    amounts = split_amount(total, count, random.Random(seed))
                    self.assertEqual(len(amounts), count)
                    self.assertAlmostEqual(sum(amounts), total, delta=1e-6)
                    self.assertTrue(all(a > 0 for a in amounts), amounts)

    def test_zero_total_is_empty(self):
        from emission.profit_generator import split_amount

        self.assertEqual(split_amount(0.0, 5), [])
        self.assertEqual(split_amount(10.0, 0), [])


class TestDrawDueTimes(unittest.TestCase):

    def test_strictly_inside_interval_and_sorted(self):
        from emission.profit_generator import draw_due_times

        now = kyiv(2026, 3, 10, 23, 58)
        end = kyiv(2026, 3, 11, 0)
        for seed in range(50):
            times = draw_due_times(now, end, 11, random.Random(seed))
            self.assertEqual(len(times), 11)
            self.assertEqual(times, sorted(times))
            for t in times:
                self.assertGreater(t, now)
                self.assertLess(t, end)

    def test_no_room_left(self):
        from emission.profit_generator import draw_due_times

        now = kyiv(2026, 3, 10, 12)
        self.assertEqual(draw_due_times(now, now, 5), [])
        self.assertEqual(draw_due_times(now, now + timedelta(microseconds=1), 5), [])


class TestGenerateProfitEvents(unittest.TestCase):

    def test_hundred_split_into_five(self):
        """Daily total 100.00, count 5 → five ascending events summing to 100.00"""
        from emission.profit_generator import generate_profit_events

        now = kyiv(2026, 3, 10, 10)
        end_of_day = kyiv(2026, 3, 11, 0)
        events = generate_profit_events(
            "42", 100.00, now, tz=KYIV, count_range=(5, 5), rng=random.Random(7)
        )

        self.assertEqual(len(events), 5)
        self.assertAlmostEqual(sum(e["amount"] for e in events), 100.00, delta=1e-6)
        due = [e["due_at"] for e in events]
        self.assertEqual(due, sorted(due))
        for event in events:
            self.assertGreater(event["due_at"], now)
            self.assertLess(event["due_at"], end_of_day)
            self.assertEqual(event["day"], "2026-03-10")
            self.assertEqual(event["daily_total"], 100.00)
            self.assertEqual(event["recipient_id"], "42")

    def test_count_within_configured_range(self):
        from emission.profit_generator import generate_profit_events

        now = kyiv(2026, 3, 10, 1)
        for seed in range(30):
            events = generate_profit_events("1", 50.0, now, tz=KYIV, count_range=(4, 11), rng=random.Random(seed))
            self.assertGreaterEqual(len(events), 4)
            self.assertLessEqual(len(events), 11)
            self.assertAlmostEqual(sum(e["amount"] for e in events), 50.0, delta=1e-6)

    def test_now_past_end_of_day_yields_nothing(self):
        from emission.profit_generator import generate_profit_events

        now = kyiv(2026, 3, 10, 23, 59)
        self.assertEqual(generate_profit_events("1", 100.0, now, tz=KYIV, end_of_day=now), [])
        self.assertEqual(
            generate_profit_events("1", 100.0, now, tz=KYIV, end_of_day=now - timedelta(minutes=1)),
            [],
        )

    def test_zero_total_yields_nothing(self):
        from emission.profit_generator import generate_profit_events

        self.assertEqual(generate_profit_events("1", 0.0, kyiv(2026, 3, 10, 9), tz=KYIV), [])

    def test_day_follows_local_calendar(self):
        """23:30 UTC on March 10 is already March 11 in Kyiv"""
        from emission.profit_generator import local_day_bounds

        now = pytz.utc.localize(datetime(2026, 3, 10, 23, 30))
        day, end_of_day = local_day_bounds(now, KYIV)
        self.assertEqual(day, "2026-03-11")
        self.assertEqual(end_of_day, kyiv(2026, 3, 12, 0))


class TestTariffPlans(unittest.TestCase):

    def test_plan_lookup(self):
        from emission.profit_generator import get_tariff_plan

        self.assertEqual(get_tariff_plan(50)["name"], "Bronze")
        self.assertEqual(get_tariff_plan(100)["name"], "Silver")
        self.assertEqual(get_tariff_plan(999)["name"], "Gold")
        self.assertEqual(get_tariff_plan(25000)["name"], "Black")

    def test_gap_and_small_balances(self):
        from emission.profit_generator import get_tariff_plan

        self.assertEqual(get_tariff_plan(99.5)["name"], "Bronze")
        self.assertEqual(get_tariff_plan(5)["name"], "Bronze")

    def test_daily_total(self):
        from emission.profit_generator import daily_total_for_balance

        self.assertAlmostEqual(daily_total_for_balance(1000), 30.0)
        self.assertAlmostEqual(daily_total_for_balance(200), 2.0)
        self.assertEqual(daily_total_for_balance(0), 0.0)


class TestProfitEventGenerator(unittest.TestCase):
    """Persisted generation against in-memory collections."""

    def setUp(self):
        self.events = FakeCollection()
        self.users = FakeCollection([
            {"telegram_id": "1", "status": "ACTIVE", "balance": 1000},
            {"telegram_id": "2", "status": "BLOCKED", "balance": 500},
            {"telegram_id": "3", "status": "ACTIVE", "balance": 0},
        ])
        for target, fake in (
            ("database.profit_events_collection", self.events),
            ("database.users_collection", self.users),
        ):
            patcher = patch(target, fake)
            patcher.start()
            self.addCleanup(patcher.stop)

    def _generator(self, seed=1):
        from emission.profit_generator import ProfitEventGenerator
        return ProfitEventGenerator("Europe/Kyiv", count_range=(4, 11), rng=random.Random(seed))

    def _day_sum(self, recipient_id, day):
        return sum(d["amount"] for d in self.events.docs if d["recipient_id"] == recipient_id and d["day"] == day)

    def test_batch_is_persisted(self):
        now = kyiv(2026, 3, 10, 9)
        events = self._generator().generate_for_recipient("1", 100.0, now)

        self.assertEqual(len(self.events.docs), len(events))
        self.assertTrue(all("_id" in e for e in events))
        self.assertAlmostEqual(self._day_sum("1", "2026-03-10"), 100.0, delta=1e-6)
        self.assertTrue(all(d["delivered"] is False for d in self.events.docs))

    def test_regeneration_does_not_double_the_total(self):
        generator = self._generator()
        now = kyiv(2026, 3, 10, 9)

        generator.generate_for_recipient("1", 100.0, now)
        generator.generate_for_recipient("1", 100.0, now + timedelta(minutes=5))

        self.assertAlmostEqual(self._day_sum("1", "2026-03-10"), 100.0, delta=1e-6)

    def test_regeneration_keeps_delivered_and_claimed_events(self):
        generator = self._generator(seed=3)
        now = kyiv(2026, 3, 10, 9)
        generator.generate_for_recipient("1", 100.0, now)

        docs = sorted(self.events.docs, key=lambda d: d["due_at"])
        docs[0]["delivered"] = True
        docs[1]["claimed_at"] = now
        docs[1]["claim_token"] = "held"
        kept_ids = {docs[0]["_id"], docs[1]["_id"]}

        later = kyiv(2026, 3, 10, 15)
        new_events = generator.generate_for_recipient("1", 100.0, later)

        remaining_ids = {d["_id"] for d in self.events.docs}
        self.assertTrue(kept_ids <= remaining_ids)
        self.assertAlmostEqual(self._day_sum("1", "2026-03-10"), 100.0, delta=1e-6)
        for event in new_events:
            self.assertGreater(event["due_at"], later)

    def test_zero_total_generates_nothing(self):
        self.assertEqual(self._generator().generate_for_recipient("1", 0.0, kyiv(2026, 3, 10, 9)), [])
        self.assertEqual(self.events.docs, [])

    def test_generate_for_all_funded_active_only(self):
        generator = self._generator()
        now = kyiv(2026, 3, 10, 9)

        stats = generator.generate_for_all(now)

        self.assertEqual(stats["recipients"], 1)
        self.assertEqual(stats["generated"], 1)
        self.assertEqual(stats["errors"], 0)
        self.assertEqual({d["recipient_id"] for d in self.events.docs}, {"1"})
        # 1000 is Platinum → 3%
        self.assertAlmostEqual(self._day_sum("1", "2026-03-10"), 30.0, delta=1e-6)

    def test_generate_for_all_skips_existing_batch(self):
        generator = self._generator()
        now = kyiv(2026, 3, 10, 9)
        generator.generate_for_all(now)
        count = len(self.events.docs)

        stats = generator.generate_for_all(now + timedelta(hours=1))

        self.assertEqual(stats["generated"], 0)
        self.assertEqual(stats["skipped"], 1)
        self.assertEqual(len(self.events.docs), count)

    def test_generate_for_all_force_keeps_sum(self):
        generator = self._generator()
        now = kyiv(2026, 3, 10, 9)
        generator.generate_for_all(now)
        generator.generate_for_all(now + timedelta(hours=1), force=True)

        self.assertAlmostEqual(self._day_sum("1", "2026-03-10"), 30.0, delta=1e-6)

    def test_visible_total_grows_with_time(self):
        from database import ProfitEvent

        now = kyiv(2026, 3, 10, 9)
        self._generator().generate_for_recipient("1", 100.0, now)

        self.assertEqual(ProfitEvent.visible_total("1", "2026-03-10", now=now), 0)
        self.assertAlmostEqual(
            ProfitEvent.visible_total("1", "2026-03-10", now=kyiv(2026, 3, 11, 0)), 100.0, delta=1e-6
        )

    def test_invalid_count_range(self):
        from emission.profit_generator import ProfitEventGenerator

        with self.assertRaises(ValueError):
            ProfitEventGenerator("Europe/Kyiv", count_range=(5, 2))


if __name__ == "__main__":
    unittest.main()
