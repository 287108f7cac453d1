#!/usr/bin/env python3
"""
SQLAlchemy Integration Tests

Runs the repositories and the wired services against in-memory SQLite.
"""

import unittest
from unittest.mock import MagicMock
from datetime import datetime, timedelta
from decimal import Decimal

from carpso.domain.models import PricingRule, UserPass, RecordStatus, CostEstimate
from carpso.domain.aggregates import ParkingRecord, SpotQueue
from carpso.infrastructure.factories import ServiceFactory, seed_defaults
from carpso.infrastructure.repositories import RepositoryFactory, CachingPricingRuleRepository

MONDAY_10AM = datetime(2024, 1, 1, 10, 0)


class SQLiteTestCase(unittest.TestCase):

    def setUp(self):
        self.uow = RepositoryFactory.create_sqlalchemy_uow("sqlite://")
        seed_defaults(self.uow)


class TestSQLAlchemyRepositories(SQLiteTestCase):
    """Repository behaviour on a real database"""

    def test_rules_ordered_by_priority_then_insertion(self):
        with self.uow as uow:
            rule_ids = [rule.rule_id for rule in uow.pricing_rules.get_all()]

        self.assertEqual(rule_ids[:3], ["lot_C_event", "lot_B_airport_flat", "lot_A_weekday_peak"])
        self.assertEqual(rule_ids[-3:], ["pass_daily", "pass_monthly_lot_A", "pass_yearly"])

    def test_rule_round_trip(self):
        with self.uow as uow:
            peak = uow.pricing_rules.get("lot_A_weekday_peak")
            premium = uow.pricing_rules.get("global_premium_discount")

        self.assertEqual(peak.base_rate_per_hour, Decimal('3.00'))
        self.assertEqual(peak.time_condition.days_of_week, ("Mon", "Tue", "Wed", "Thu", "Fri"))
        self.assertEqual(peak.time_condition.start_time, "08:00")
        self.assertEqual(premium.discount_percentage, Decimal('5'))
        self.assertTrue(premium.applies_to_tier("Premium"))

    def test_save_replaces_in_place(self):
        with self.uow as uow:
            daily = uow.pricing_rules.get("pass_daily")
            daily.description = "Day Pass v2"
            uow.pricing_rules.save(daily)
            uow.pricing_rules.save(PricingRule(rule_id="pass_zz", description="Late", priority=200,
                                               is_pass=True, flat_rate=1, flat_rate_duration_minutes=60))

        with self.uow as uow:
            passes = [rule for rule in uow.pricing_rules.get_all() if rule.is_pass]
            self.assertEqual(uow.pricing_rules.count(), 10)

        self.assertEqual([rule.rule_id for rule in passes],
                         ["pass_daily", "pass_monthly_lot_A", "pass_yearly", "pass_zz"])
        self.assertEqual(passes[0].description, "Day Pass v2")

    def test_delete_rule(self):
        with self.uow as uow:
            self.assertTrue(uow.pricing_rules.delete("lot_C_event"))
            self.assertFalse(uow.pricing_rules.delete("lot_C_event"))

        with self.uow as uow:
            self.assertIsNone(uow.pricing_rules.get("lot_C_event"))

    def test_user_passes(self):
        user_pass = UserPass(user_id="u1", pass_rule_id="pass_daily", purchase_date=MONDAY_10AM,
                             expiry_date=MONDAY_10AM + timedelta(days=1))
        with self.uow as uow:
            uow.user_passes.add(user_pass)

        with self.uow as uow:
            found = uow.user_passes.find_by_user("u1")
            self.assertEqual(uow.user_passes.find_by_user("u2"), [])

        self.assertEqual(found, [user_pass])

    def test_parking_records(self):
        record = ParkingRecord(user_id="u1", lot_id="lot_A", spot_id="A-1", start_time=MONDAY_10AM)
        with self.uow as uow:
            uow.parking_records.add(record)

        with self.uow as uow:
            active = uow.parking_records.find_active("u1", "A-1")
            active.complete(MONDAY_10AM + timedelta(minutes=95), CostEstimate(Decimal('3.96'), "Standard Rate"))
            uow.parking_records.update(active)

        with self.uow as uow:
            stored = uow.parking_records.get(record.record_id)
            self.assertIsNone(uow.parking_records.find_active("u1", "A-1"))
            in_range = uow.parking_records.find(lot_id="lot_A", start_from=MONDAY_10AM,
                                                start_until=MONDAY_10AM + timedelta(hours=1))

        self.assertEqual(stored.status, RecordStatus.COMPLETED)
        self.assertEqual(stored.cost, Decimal('3.96'))
        self.assertEqual(stored.duration_minutes, 95)
        self.assertEqual([r.record_id for r in in_range], [record.record_id])

    def test_spot_queue_keeps_order_and_flags(self):
        with self.uow as uow:
            queue = uow.spot_queues.get("A-1")
            for user in ("u1", "u2", "u3"):
                queue.join(user, joined_at=MONDAY_10AM)
            queue.mark_head_notified()
            uow.spot_queues.save(queue)

        with self.uow as uow:
            queue = uow.spot_queues.get("A-1")
            queue.leave("u2")
            uow.spot_queues.save(queue)
            uow.spot_queues.save(SpotQueue("B-1", []))

        with self.uow as uow:
            queue = uow.spot_queues.get("A-1")
            spot_ids = uow.spot_queues.spot_ids()

        self.assertEqual([entry.user_id for entry in queue.entries], ["u1", "u3"])
        self.assertTrue(queue.head().notified)
        self.assertEqual(queue.position_of("u3"), 2)
        self.assertEqual(spot_ids, ["A-1"])

    def test_parking_lots(self):
        with self.uow as uow:
            lot = uow.parking_lots.get("lot_C")
            self.assertEqual(uow.parking_lots.count(), 4)

        self.assertEqual(lot.name, "Mall Parking Deck")
        self.assertEqual(lot.capacity, 200)

    def test_seed_is_idempotent(self):
        seed_defaults(self.uow)
        with self.uow as uow:
            self.assertEqual(uow.pricing_rules.count(), 9)
            self.assertEqual(uow.parking_lots.count(), 4)


class TestCachingPricingRuleRepository(unittest.TestCase):

    def setUp(self):
        self.cache = MagicMock()
        self.cache.get.return_value = None
        self.uow = RepositoryFactory.create_in_memory_uow(cache_client=self.cache)
        seed_defaults(self.uow)
        self.cache.reset_mock()

    def test_miss_populates_cache(self):
        with self.uow as uow:
            self.assertIsInstance(uow.pricing_rules, CachingPricingRuleRepository)
            rules = uow.pricing_rules.get_all()

        self.assertEqual(len(rules), 9)
        key, payload = self.cache.set.call_args[0]
        self.assertEqual(key, CachingPricingRuleRepository.CACHE_KEY)
        self.assertIn("global_base", payload)

    def test_hit_reads_from_cache(self):
        with self.uow as uow:
            uow.pricing_rules.get_all()
            payload = self.cache.set.call_args[0][1]
            self.cache.get.return_value = payload.encode("utf-8")

            rules = uow.pricing_rules.get_all()

        self.assertEqual(self.cache.set.call_count, 1)
        self.assertEqual(rules[0].rule_id, "lot_C_event")

    def test_writes_invalidate(self):
        with self.uow as uow:
            uow.pricing_rules.delete("lot_C_event")
        self.cache.delete.assert_called_with(CachingPricingRuleRepository.CACHE_KEY)


class TestServicesOnSQLAlchemy(SQLiteTestCase):
    """The full service graph on a database-backed unit of work"""

    def setUp(self):
        super().setUp()
        self.services = ServiceFactory().create_services(self.uow)

    def test_estimate_and_pass_coverage(self):
        pricing = self.services.pricing

        self.assertEqual(pricing.calculate_estimated_cost("lot_B", 90, now=MONDAY_10AM).cost, Decimal('15.00'))

        pricing.pass_manager.purchase_pass("u1", "pass_monthly_lot_A", now=MONDAY_10AM)
        covered = pricing.calculate_estimated_cost("lot_A", 120, user_id="u1", now=MONDAY_10AM)

        self.assertTrue(covered.is_covered_by_pass)
        self.assertEqual(covered.cost, Decimal('0.00'))

    def test_fractional_rates_survive_the_database(self):
        with self.uow as uow:
            uow.pricing_rules.save(PricingRule(rule_id="lot_D_fine", lot_id="lot_D", description="Fine Rate",
                                               base_rate_per_hour=Decimal('2.125'),
                                               discount_percentage=Decimal('12.125'), priority=0))

        with self.uow as uow:
            stored = uow.pricing_rules.get("lot_D_fine")

        self.assertEqual(stored.base_rate_per_hour, Decimal('2.125'))
        self.assertEqual(stored.discount_percentage, Decimal('12.125'))

        # 600 min at 2.125/h = 21.25, less 12.125% = 18.673...
        estimate = self.services.pricing.calculate_estimated_cost("lot_D", 600, now=MONDAY_10AM)
        self.assertEqual(estimate.applied_rule, "Fine Rate")
        self.assertEqual(estimate.cost, Decimal('18.67'))

    def test_record_lifecycle(self):
        ledger = self.services.ledger
        record = ledger.create_parking_record("u1", "lot_D", "D-1", now=MONDAY_10AM)
        self.assertIsNone(ledger.create_parking_record("u1", "lot_D", "D-1"))

        completed = self.services.reservations.complete_parking(
            record.record_id, end_time=MONDAY_10AM + timedelta(minutes=95)
        )

        self.assertEqual(completed.cost, Decimal('3.96'))
        self.assertEqual(completed.applied_pricing_rule, "Standard Rate")
        self.assertEqual(ledger.get_parking_records(user_id="u1")[0].status, RecordStatus.COMPLETED)

    def test_queue_operations(self):
        queues = self.services.queues
        queues.join_queue("u1", "A-1")
        queues.join_queue("u2", "A-1")
        queues.join_queue("u2", "B-1")

        self.assertEqual(queues.notify_next_in_queue("A-1").user_id, "u1")
        self.assertTrue(queues.get_queue("A-1")[0].notified)
        self.assertEqual(queues.remove_first_from_queue("A-1").user_id, "u1")
        self.assertEqual([(p.spot_id, p.position) for p in queues.get_user_queue_status("u2")],
                         [("A-1", 1), ("B-1", 1)])


if __name__ == '__main__':
    unittest.main()
