#!/usr/bin/env python3
"""
DTO Unit Tests

Validation and domain conversion of the pydantic transfer objects.
"""

import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from pydantic import ValidationError

from carpso.domain.models import CostEstimate, UserPass, ActivePass, UserTier, QueueEntry, QueuePosition
from carpso.domain.aggregates import ParkingRecord
from carpso.application.dtos import (
    PricingRuleDTO, TimeConditionDTO, CostEstimateRequestDTO, CostEstimateDTO, ActivePassDTO,
    RecordQueryDTO, ParkingRecordDTO, QueueEntryDTO, QueuePositionDTO, QueueRequestDTO
)
from carpso.infrastructure.factories import PricingRuleFactory

MONDAY_10AM = datetime(2024, 1, 1, 10, 0)


class TestPricingRuleDTO(unittest.TestCase):

    def test_domain_round_trip(self):
        for rule in PricingRuleFactory.create_default_rules() + PricingRuleFactory.create_default_passes():
            with self.subTest(rule_id=rule.rule_id):
                self.assertEqual(PricingRuleDTO.from_domain(rule).to_domain(), rule)

    def test_tiers_become_domain_enums(self):
        dto = PricingRuleDTO(rule_id="p", description="Premium", priority=1,
                             discount_percentage="5", user_tier_condition=["Premium"])
        rule = dto.to_domain()

        self.assertEqual(rule.user_tier_condition, (UserTier.PREMIUM,))
        self.assertEqual(rule.discount_percentage, Decimal('5'))

    def test_validation_errors(self):
        test_cases = [
            dict(rule_id="", description="x", priority=1),
            dict(rule_id="r", description="x", priority=1, base_rate_per_hour="2", flat_rate="5"),
            dict(rule_id="r", description="x", priority=1, discount_percentage="101"),
            dict(rule_id="r", description="x", priority=1, user_tier_condition=["Gold"]),
            dict(rule_id="r", description="x", priority=1, time_condition={"start_time": "25:00"}),
            dict(rule_id="r", description="x", priority=1, time_condition={"days_of_week": ["Funday"]}),
        ]
        for data in test_cases:
            with self.subTest(data=data):
                with self.assertRaises(ValidationError):
                    PricingRuleDTO(**data)

    def test_to_dict_is_json_friendly(self):
        data = PricingRuleDTO(rule_id="r", description="Hourly", priority=3, base_rate_per_hour="2.50").to_dict(
            exclude_none=True
        )
        self.assertEqual(data, {
            "rule_id": "r", "description": "Hourly", "priority": 3, "base_rate_per_hour": "2.50", "is_pass": False
        })

    def test_time_condition_dto(self):
        condition = TimeConditionDTO(days_of_week=["Sat", "Sun"]).to_domain()
        self.assertEqual(condition.days_of_week, ("Sat", "Sun"))
        self.assertIsNone(condition.start_time)


class TestRequestDTOs(unittest.TestCase):

    def test_cost_estimate_request(self):
        request = CostEstimateRequestDTO(lot_id="lot_A", duration_minutes=30, at="2024-01-01T10:00:00")

        self.assertEqual(request.user_tier, "Basic")
        self.assertEqual(request.at, MONDAY_10AM)

        for bad in (dict(lot_id="lot_A", duration_minutes=0),
                    dict(lot_id="", duration_minutes=10),
                    dict(lot_id="lot_A", duration_minutes=10, user_tier="Gold")):
            with self.subTest(data=bad):
                with self.assertRaises(ValidationError):
                    CostEstimateRequestDTO(**bad)

    def test_record_query_range(self):
        with self.assertRaises(ValidationError):
            RecordQueryDTO(start_date="2024-01-05", end_date="2024-01-01")
        self.assertEqual(RecordQueryDTO(lot_id="all").lot_id, "all")

    def test_queue_request_requires_ids(self):
        with self.assertRaises(ValidationError):
            QueueRequestDTO(user_id="u1", spot_id="")


class TestOutputDTOs(unittest.TestCase):

    def test_cost_estimate(self):
        data = CostEstimateDTO.from_domain(CostEstimate(Decimal('1.88'), "Standard Rate")).to_dict()
        self.assertEqual(data, {"cost": "1.88", "applied_rule": "Standard Rate", "is_covered_by_pass": False})

    def test_parking_record(self):
        record = ParkingRecord(user_id="u1", lot_id="lot_A", spot_id="A-1", start_time=MONDAY_10AM)
        data = ParkingRecordDTO.from_domain(record).to_dict()

        self.assertEqual(data["status"], "Active")
        self.assertEqual(data["cost"], "0.00")
        self.assertEqual(data["start_time"], "2024-01-01T10:00:00")
        self.assertIsNone(data["end_time"])

    def test_active_pass(self):
        rule = PricingRuleFactory.create_default_passes()[0]
        user_pass = UserPass(user_id="u1", pass_rule_id=rule.rule_id, purchase_date=MONDAY_10AM,
                             expiry_date=MONDAY_10AM + timedelta(days=1))

        data = ActivePassDTO.from_active_pass(ActivePass(user_pass=user_pass, rule=rule)).to_dict()

        self.assertEqual(data["description"], "Day Pass (all lots)")
        self.assertEqual(data["pass_type"], "Daily")
        self.assertEqual(data["expiry_date"], "2024-01-02T10:00:00")

    def test_queue_views(self):
        entry = QueueEntry(user_id="u1", spot_id="A-1", queue_timestamp=MONDAY_10AM)

        self.assertFalse(QueueEntryDTO.from_domain(entry).notified)
        self.assertEqual(QueuePositionDTO.from_domain(QueuePosition("A-1", 2)).to_dict(),
                         {"spot_id": "A-1", "position": 2})


if __name__ == '__main__':
    unittest.main()
