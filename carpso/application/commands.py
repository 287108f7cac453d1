# File: carpso/application/commands.py
"""
Command Handler for the Carpso Engine

Encapsulates each externally visible operation as a command
({"type": ..., "data": {...}}) so transports (HTTP, CLI, message queue)
share one dispatch path.

Every result has the shape:
    {"success": bool, "status": int, "data": ...}   on success
    {"success": bool, "status": int, "error": str}  on failure

Status codes follow the HTTP surface:
- 200 OK, 404 unknown resource, 409 conflict (already queued / duplicate)
- 422 invalid payload, 503 offline, 500 unexpected failure
"""

from typing import Dict, Any, Callable, Optional
import logging

from pydantic import ValidationError

from ..domain.models import InvalidInputError, NotFoundError
from .dtos import (
    CostEstimateRequestDTO, CostEstimateDTO, PassPurchaseRequestDTO, UserPassDTO, ActivePassDTO,
    RecordCreateRequestDTO, RecordCompleteRequestDTO, RecordQueryDTO, ParkingRecordDTO,
    QueueRequestDTO, SpotRequestDTO, UserRequestDTO, QueueEntryDTO, QueuePositionDTO,
    PricingRuleDTO
)
from .pricing_service import PricingService
from .queue_service import SpotQueueManager
from .record_service import ParkingRecordLedger
from .reservation_service import ReservationService

HTTP_OK = 200
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_UNPROCESSABLE = 422
HTTP_INTERNAL_ERROR = 500
HTTP_UNAVAILABLE = 503


class CarpsoCommandHandler:
    """
    Handler for Carpso commands

    Implements the command pattern over the application services.
    """

    def __init__(
        self,
        pricing_service: PricingService,
        ledger: ParkingRecordLedger,
        queue_manager: SpotQueueManager,
        reservations: ReservationService
    ):
        self.pricing_service = pricing_service
        self.ledger = ledger
        self.queue_manager = queue_manager
        self.reservations = reservations
        self.connectivity = ledger.connectivity
        self.logger = logging.getLogger(self.__class__.__name__)

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "estimate_cost": self._estimate_cost,
            "purchase_pass": self._purchase_pass,
            "active_passes": self._active_passes,
            "create_record": self._create_record,
            "complete_record": self._complete_record,
            "list_records": self._list_records,
            "join_queue": self._join_queue,
            "leave_queue": self._leave_queue,
            "notify_next": self._notify_next,
            "pop_queue": self._pop_queue,
            "queue_length": self._queue_length,
            "queue_status": self._queue_status,
            "save_rule": self._save_rule,
            "delete_rule": self._delete_rule,
            "list_rules": self._list_rules,
        }

    def handle(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a Carpso command"""
        command_type = command.get("type")
        handler = self._handlers.get(command_type)
        if handler is None:
            return self._error(HTTP_UNPROCESSABLE, f"Unknown command type: {command_type}")

        try:
            return handler(command.get("data") or {})
        except ValidationError as e:
            self.logger.warning(f"Invalid payload for {command_type}: {e}")
            return self._error(HTTP_UNPROCESSABLE, str(e))
        except NotFoundError as e:
            return self._error(HTTP_NOT_FOUND, str(e))
        except InvalidInputError as e:
            return self._error(HTTP_UNPROCESSABLE, str(e))
        except Exception as e:
            self.logger.error(f"Error handling command {command_type}: {e}", exc_info=True)
            return self._error(HTTP_INTERNAL_ERROR, str(e))

    # ========================================================================
    # PRICING & PASSES
    # ========================================================================

    def _estimate_cost(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = CostEstimateRequestDTO(**data)
        estimate = self.pricing_service.calculate_estimated_cost(
            request.lot_id,
            request.duration_minutes,
            user_id=request.user_id,
            user_tier=request.user_tier,
            now=request.at,
        )
        return self._ok(CostEstimateDTO.from_domain(estimate).to_dict())

    def _purchase_pass(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = PassPurchaseRequestDTO(**data)
        user_pass = self.pricing_service.pass_manager.purchase_pass(request.user_id, request.pass_rule_id)
        if user_pass is None:
            return self._unavailable()
        return self._ok(UserPassDTO.from_domain(user_pass).to_dict())

    def _active_passes(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = UserRequestDTO(**data)
        passes = self.pricing_service.pass_manager.get_active_user_passes(request.user_id)
        return self._ok([ActivePassDTO.from_active_pass(active).to_dict() for active in passes])

    # ========================================================================
    # LEDGER
    # ========================================================================

    def _create_record(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = RecordCreateRequestDTO(**data)
        record = self.ledger.create_parking_record(request.user_id, request.lot_id, request.spot_id)
        if record is None:
            if not self.connectivity.is_online:
                return self._unavailable()
            return self._error(HTTP_CONFLICT, f"User {request.user_id} already has an active record on {request.spot_id}")
        return self._ok(ParkingRecordDTO.from_domain(record).to_dict())

    def _complete_record(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = RecordCompleteRequestDTO(**data)
        if not self.connectivity.is_online:
            return self._unavailable()

        existing = self.ledger.get_parking_record(request.record_id)
        if existing is None:
            return self._error(HTTP_NOT_FOUND, f"Parking record {request.record_id} not found")
        if not existing.is_active:
            return self._error(HTTP_CONFLICT, f"Parking record {request.record_id} is {existing.status.value}")

        record = self.reservations.complete_parking(
            request.record_id,
            end_time=request.end_time,
            user_tier=request.user_tier,
            payment_method=request.payment_method,
        )
        if record is None:
            return self._error(HTTP_CONFLICT, f"Parking record {request.record_id} could not be completed")
        return self._ok(ParkingRecordDTO.from_domain(record).to_dict())

    def _list_records(self, data: Dict[str, Any]) -> Dict[str, Any]:
        query = RecordQueryDTO(**data)
        records = self.ledger.get_parking_records(
            user_id=query.user_id,
            lot_id=query.lot_id,
            start_date=query.start_date,
            end_date=query.end_date,
        )
        return self._ok([ParkingRecordDTO.from_domain(record).to_dict() for record in records])

    # ========================================================================
    # QUEUES
    # ========================================================================

    def _join_queue(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = QueueRequestDTO(**data)
        position = self.queue_manager.join_queue(request.user_id, request.spot_id)
        if position is None:
            if not self.connectivity.is_online:
                return self._unavailable()
            return self._error(HTTP_CONFLICT, f"User {request.user_id} is already queued for {request.spot_id}")
        return self._ok({"position": position})

    def _leave_queue(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = QueueRequestDTO(**data)
        if not self.queue_manager.leave_queue(request.user_id, request.spot_id):
            if not self.connectivity.is_online:
                return self._unavailable()
            return self._error(HTTP_NOT_FOUND, f"User {request.user_id} is not queued for {request.spot_id}")
        return self._ok({"left": True})

    def _notify_next(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = SpotRequestDTO(**data)
        if not self.connectivity.is_online:
            return self._unavailable()
        entry = self.queue_manager.notify_next_in_queue(request.spot_id)
        return self._ok(QueueEntryDTO.from_domain(entry).to_dict() if entry else None)

    def _pop_queue(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = SpotRequestDTO(**data)
        if not self.connectivity.is_online:
            return self._unavailable()
        entry = self.queue_manager.remove_first_from_queue(request.spot_id)
        return self._ok(QueueEntryDTO.from_domain(entry).to_dict() if entry else None)

    def _queue_length(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = SpotRequestDTO(**data)
        return self._ok({"spot_id": request.spot_id, "length": self.queue_manager.get_queue_length(request.spot_id)})

    def _queue_status(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = UserRequestDTO(**data)
        positions = self.queue_manager.get_user_queue_status(request.user_id)
        return self._ok([QueuePositionDTO.from_domain(position).to_dict() for position in positions])

    # ========================================================================
    # RULE ADMINISTRATION
    # ========================================================================

    def _save_rule(self, data: Dict[str, Any]) -> Dict[str, Any]:
        rule = PricingRuleDTO(**data).to_domain()
        saved = self.pricing_service.save_pricing_rule(rule)
        if saved is None:
            return self._unavailable()
        return self._ok(PricingRuleDTO.from_domain(saved).to_dict(exclude_none=True))

    def _delete_rule(self, data: Dict[str, Any]) -> Dict[str, Any]:
        rule_id = data.get("rule_id")
        if not rule_id:
            raise InvalidInputError("rule_id is required")
        if not self.pricing_service.delete_pricing_rule(rule_id):
            if not self.connectivity.is_online:
                return self._unavailable()
            return self._error(HTTP_NOT_FOUND, f"Pricing rule {rule_id} not found")
        return self._ok({"deleted": rule_id})

    def _list_rules(self, data: Dict[str, Any]) -> Dict[str, Any]:
        rules = self.pricing_service.get_all_pricing_rules()
        return self._ok([PricingRuleDTO.from_domain(rule).to_dict(exclude_none=True) for rule in rules])

    # ========================================================================
    # RESULT HELPERS
    # ========================================================================

    @staticmethod
    def _ok(data: Any) -> Dict[str, Any]:
        return {"success": True, "status": HTTP_OK, "data": data}

    @staticmethod
    def _error(status: int, message: str) -> Dict[str, Any]:
        return {"success": False, "status": status, "error": message}

    def _unavailable(self, message: Optional[str] = None) -> Dict[str, Any]:
        return self._error(HTTP_UNAVAILABLE, message or "Service is offline; please retry when connected")
