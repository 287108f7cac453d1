# File: carpso/application/record_service.py
"""
Parking Record Ledger

Append-only history of parking sessions:
1. create_parking_record - open an Active record when a spot is confirmed
2. complete_parking_record - finalize duration and cost exactly once
3. cancel_parking_record - close an Active record without charge
4. get_parking_records - filtered history, newest first
5. convert_to_csv - export for the profile download
"""

from typing import List, Optional, Dict, Any, Iterable, Union
from datetime import datetime, date, time
import csv
import io
import json

from ..domain.models import CostEstimate, InvalidInputError, DEFAULT_PAYMENT_METHOD
from ..domain.aggregates import ParkingRecord
from ..infrastructure.messaging import EventType
from .connectivity import ApplicationService

ALL_LOTS = "all"


class ParkingRecordLedger(ApplicationService):
    """Application service owning the parking record ledger"""

    def create_parking_record(
        self,
        user_id: str,
        lot_id: str,
        spot_id: str,
        now: Optional[datetime] = None
    ) -> Optional[ParkingRecord]:
        """
        Open an Active record for a confirmed reservation
        Returns None while offline or when the user already holds the spot.
        """
        if not user_id or not lot_id or not spot_id:
            raise InvalidInputError("User, lot and spot ids are required to open a parking record")
        if not self._ensure_online("parking record creation"):
            return None

        with self._lock:
            with self.uow as uow:
                if uow.parking_records.find_active(user_id, spot_id) is not None:
                    self.logger.warning(f"User {user_id} already has an active record on spot {spot_id}")
                    return None

                record = ParkingRecord(
                    user_id=user_id,
                    lot_id=lot_id,
                    spot_id=spot_id,
                    start_time=now or datetime.now(),
                )
                uow.parking_records.add(record)

        self.logger.info(f"Opened parking record {record.record_id} for {user_id} on {lot_id}/{spot_id}")
        self._publish(EventType.RECORD_OPENED, record.record_id, "ParkingRecord", record.to_dict())
        return record

    def complete_parking_record(
        self,
        record_id: str,
        end_time: datetime,
        cost_details: CostEstimate,
        payment_method: str = DEFAULT_PAYMENT_METHOD
    ) -> Optional[ParkingRecord]:
        """
        Finalize an Active record
        Returns None while offline, for an unknown record, or a record that is no longer Active.
        Raises InvalidInputError when end_time precedes the start time.
        """
        if not self._ensure_online("parking record completion"):
            return None

        with self._lock:
            with self.uow as uow:
                record = uow.parking_records.get(record_id)
                if record is None:
                    self.logger.warning(f"Parking record {record_id} not found")
                    return None
                if not record.is_active:
                    self.logger.warning(f"Parking record {record_id} is already {record.status.value}")
                    return None

                record.complete(end_time, cost_details, payment_method)
                uow.parking_records.update(record)

        self._publish(EventType.RECORD_COMPLETED, record.record_id, "ParkingRecord", record.to_dict())
        return record

    def cancel_parking_record(self, record_id: str, now: Optional[datetime] = None) -> Optional[ParkingRecord]:
        """Cancel an Active record; None when offline, unknown or not Active"""
        if not self._ensure_online("parking record cancellation"):
            return None

        with self._lock:
            with self.uow as uow:
                record = uow.parking_records.get(record_id)
                if record is None or not record.is_active:
                    return None
                record.cancel(now)
                uow.parking_records.update(record)

        self.logger.info(f"Cancelled parking record {record_id}")
        self._publish(EventType.RECORD_CANCELLED, record.record_id, "ParkingRecord", record.to_dict())
        return record

    def get_parking_record(self, record_id: str) -> Optional[ParkingRecord]:
        with self.uow as uow:
            return uow.parking_records.get(record_id)

    def get_parking_records(
        self,
        user_id: Optional[str] = None,
        lot_id: Optional[str] = None,
        start_date: Optional[Union[date, datetime]] = None,
        end_date: Optional[Union[date, datetime]] = None
    ) -> List[ParkingRecord]:
        """
        Records matching every given filter, newest start time first
        lot_id "all" disables the lot filter; end_date includes that whole day.
        """
        start_from = _start_of_day(start_date) if start_date else None
        start_until = _end_of_day(end_date) if end_date else None
        if lot_id == ALL_LOTS:
            lot_id = None

        with self.uow as uow:
            records = uow.parking_records.find(
                user_id=user_id,
                lot_id=lot_id,
                start_from=start_from,
                start_until=start_until,
            )
        return sorted(records, key=lambda record: record.start_time, reverse=True)

    @staticmethod
    def convert_to_csv(records: Iterable[Union[ParkingRecord, Dict[str, Any]]]) -> str:
        """
        Render records as CSV
        The header is the first record's keys; None becomes an empty field and
        nested values are JSON-encoded.
        """
        rows = [record.to_dict() if isinstance(record, ParkingRecord) else dict(record) for record in records]
        if not rows:
            return ""

        headers = list(rows[0].keys())
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
        writer.writerow(headers)
        for row in rows:
            writer.writerow([_csv_value(row.get(header)) for header in headers])
        return buffer.getvalue().rstrip("\n")


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _start_of_day(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _end_of_day(value: Union[date, datetime]) -> datetime:
    day = value.date() if isinstance(value, datetime) else value
    return datetime.combine(day, time.max)
