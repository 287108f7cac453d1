#!/usr/bin/env python3
"""
Parking Record Ledger Unit Tests
"""

import unittest
from unittest.mock import Mock
from datetime import date, datetime, timedelta
from decimal import Decimal

from carpso.domain.models import CostEstimate, InvalidInputError, RecordStatus
from carpso.application.connectivity import ConnectivityMonitor
from carpso.application.record_service import ParkingRecordLedger
from carpso.infrastructure.messaging import EventType
from carpso.infrastructure.repositories import InMemoryUnitOfWork

MONDAY_10AM = datetime(2024, 1, 1, 10, 0)


class TestParkingRecordLedger(unittest.TestCase):
    """Unit tests for the record lifecycle"""

    def setUp(self):
        self.uow = InMemoryUnitOfWork()
        self.connectivity = ConnectivityMonitor()
        self.message_bus = Mock()
        self.ledger = ParkingRecordLedger(self.uow, self.connectivity, self.message_bus)
        self.estimate = CostEstimate(cost=Decimal('3.96'), applied_rule="Standard Rate")

    def test_create_record(self):
        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)

        self.assertEqual(record.status, RecordStatus.ACTIVE)
        self.assertEqual(record.start_time, MONDAY_10AM)
        self.assertEqual(self.ledger.get_parking_record(record.record_id), record)

        event = self.message_bus.publish_event.call_args[0][0]
        self.assertEqual(event.event_type, EventType.RECORD_OPENED)
        self.assertEqual(event.aggregate_id, record.record_id)

    def test_create_requires_ids(self):
        with self.assertRaises(InvalidInputError):
            self.ledger.create_parking_record("u1", "", "A-1")

    def test_duplicate_active_record_refused(self):
        self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)

        self.assertIsNone(self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM))
        self.assertIsNotNone(self.ledger.create_parking_record("u2", "lot_A", "A-1", now=MONDAY_10AM))
        self.assertIsNotNone(self.ledger.create_parking_record("u1", "lot_A", "A-2", now=MONDAY_10AM))

    def test_complete_record(self):
        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)

        completed = self.ledger.complete_parking_record(
            record.record_id, MONDAY_10AM + timedelta(minutes=95), self.estimate
        )

        self.assertEqual(completed.status, RecordStatus.COMPLETED)
        self.assertEqual(completed.duration_minutes, 95)
        self.assertEqual(completed.cost, Decimal('3.96'))
        self.assertEqual(completed.payment_method, "Wallet")
        self.assertEqual(self.message_bus.publish_event.call_args[0][0].event_type, EventType.RECORD_COMPLETED)

    def test_complete_with_pass(self):
        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)
        covered = CostEstimate(cost=Decimal('0'), applied_rule="Covered by active pass: Day Pass (all lots)",
                               is_covered_by_pass=True)

        completed = self.ledger.complete_parking_record(
            record.record_id, MONDAY_10AM + timedelta(hours=3), covered, payment_method="Card"
        )

        self.assertEqual(completed.payment_method, "Pass")
        self.assertEqual(completed.cost, Decimal('0.00'))

    def test_complete_unknown_or_twice(self):
        self.assertIsNone(self.ledger.complete_parking_record("rec_missing", MONDAY_10AM, self.estimate))

        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)
        end = MONDAY_10AM + timedelta(minutes=30)
        self.assertIsNotNone(self.ledger.complete_parking_record(record.record_id, end, self.estimate))
        self.assertIsNone(self.ledger.complete_parking_record(record.record_id, end, self.estimate))

    def test_complete_before_start_raises(self):
        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)

        with self.assertRaises(InvalidInputError):
            self.ledger.complete_parking_record(record.record_id, MONDAY_10AM - timedelta(minutes=1), self.estimate)
        self.assertTrue(self.ledger.get_parking_record(record.record_id).is_active)

    def test_cancel_record(self):
        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)

        cancelled = self.ledger.cancel_parking_record(record.record_id, now=MONDAY_10AM + timedelta(minutes=2))

        self.assertEqual(cancelled.status, RecordStatus.CANCELLED)
        self.assertIsNone(self.ledger.cancel_parking_record(record.record_id))
        self.assertIsNotNone(self.ledger.create_parking_record("u1", "lot_A", "A-1"))

    def test_completed_records_cannot_be_edited_by_callers(self):
        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)
        self.ledger.complete_parking_record(record.record_id, MONDAY_10AM + timedelta(minutes=95), self.estimate)

        listed = self.ledger.get_parking_records(user_id="u1")[0]
        listed.cost = Decimal('0')
        listed.status = RecordStatus.ACTIVE
        fetched = self.ledger.get_parking_record(record.record_id)
        fetched.payment_method = "Cash"

        stored = self.ledger.get_parking_record(record.record_id)
        self.assertEqual(stored.cost, Decimal('3.96'))
        self.assertEqual(stored.status, RecordStatus.COMPLETED)
        self.assertEqual(stored.payment_method, "Wallet")

    def test_offline_operations(self):
        record = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)
        self.message_bus.reset_mock()
        self.connectivity.set_online(False)

        self.assertIsNone(self.ledger.create_parking_record("u2", "lot_A", "A-2"))
        self.assertIsNone(self.ledger.complete_parking_record(record.record_id, MONDAY_10AM, self.estimate))
        self.assertIsNone(self.ledger.cancel_parking_record(record.record_id))
        self.assertTrue(record.is_active)
        self.assertEqual(self.uow.parking_records.count(), 1)
        self.message_bus.publish_event.assert_not_called()


class TestParkingRecordQueries(unittest.TestCase):
    """Unit tests for filtered history"""

    def setUp(self):
        self.ledger = ParkingRecordLedger(InMemoryUnitOfWork())
        self.r1 = self.ledger.create_parking_record("u1", "lot_A", "A-1", now=datetime(2024, 1, 1, 9, 0))
        self.r2 = self.ledger.create_parking_record("u1", "lot_B", "B-1", now=datetime(2024, 1, 2, 23, 0))
        self.r3 = self.ledger.create_parking_record("u1", "lot_A", "A-2", now=datetime(2024, 1, 3, 8, 0))
        self.r4 = self.ledger.create_parking_record("u2", "lot_A", "A-1", now=datetime(2024, 1, 2, 12, 0))

    def ids(self, records):
        return [record.record_id for record in records]

    def test_newest_first(self):
        records = self.ledger.get_parking_records(user_id="u1")
        self.assertEqual(self.ids(records), [self.r3.record_id, self.r2.record_id, self.r1.record_id])

    def test_lot_filter_and_all(self):
        self.assertEqual(self.ids(self.ledger.get_parking_records(user_id="u1", lot_id="lot_A")),
                         [self.r3.record_id, self.r1.record_id])
        self.assertEqual(len(self.ledger.get_parking_records(user_id="u1", lot_id="all")), 3)

    def test_end_date_includes_whole_day(self):
        records = self.ledger.get_parking_records(start_date=date(2024, 1, 2), end_date=date(2024, 1, 2))
        self.assertEqual(self.ids(records), [self.r2.record_id, self.r4.record_id])

    def test_no_filters_returns_everything(self):
        self.assertEqual(len(self.ledger.get_parking_records()), 4)


class TestCsvExport(unittest.TestCase):

    def test_empty_input(self):
        self.assertEqual(ParkingRecordLedger.convert_to_csv([]), "")

    def test_quoting_and_nested_values(self):
        csv_text = ParkingRecordLedger.convert_to_csv([
            {"a": 1, "b": 'say "hi"', "c": None, "d": {"x": 1}},
        ])
        self.assertEqual(csv_text, 'a,b,c,d\n1,"say ""hi""",,"{""x"": 1}"')

    def test_records_use_record_keys(self):
        ledger = ParkingRecordLedger(InMemoryUnitOfWork())
        record = ledger.create_parking_record("u1", "lot_A", "A-1", now=MONDAY_10AM)

        lines = ParkingRecordLedger.convert_to_csv([record]).split("\n")

        self.assertEqual(lines[0].split(",")[:4], ["record_id", "user_id", "lot_id", "spot_id"])
        self.assertEqual(len(lines), 2)
        self.assertIn("2024-01-01T10:00:00", lines[1])


if __name__ == '__main__':
    unittest.main()
