# File: carpso/application/queue_service.py
"""
Spot Queue Manager

FIFO wait-lists for contended spots. Each spot's queue is loaded, mutated
and saved inside one unit of work while holding the service lock, so a join,
leave or pop and the renumbering it implies are observed atomically.
"""

from typing import List, Optional

from ..domain.models import QueueEntry, QueuePosition, InvalidInputError
from ..infrastructure.messaging import EventType
from .connectivity import ApplicationService


class SpotQueueManager(ApplicationService):
    """Application service for per-spot wait-lists"""

    def join_queue(self, user_id: str, spot_id: str) -> Optional[int]:
        """
        Append a user to a spot's queue
        Returns: 1-based position, or None when already queued or offline
        """
        if not user_id or not spot_id:
            raise InvalidInputError("User and spot ids are required to join a queue")
        if not self._ensure_online("queue join"):
            return None

        with self._lock:
            with self.uow as uow:
                queue = uow.spot_queues.get(spot_id)
                position = queue.join(user_id)
                if position is None:
                    self.logger.info(f"User {user_id} is already queued for spot {spot_id}")
                    return None
                uow.spot_queues.save(queue)

        self.logger.info(f"User {user_id} joined queue for spot {spot_id} at position {position}")
        self._publish(EventType.QUEUE_JOINED, spot_id, "SpotQueue", {
            "user_id": user_id, "spot_id": spot_id, "position": position
        })
        return position

    def leave_queue(self, user_id: str, spot_id: str) -> bool:
        """Remove a user from a spot's queue; False when absent or offline"""
        if not user_id or not spot_id:
            raise InvalidInputError("User and spot ids are required to leave a queue")
        if not self._ensure_online("queue leave"):
            return False

        with self._lock:
            with self.uow as uow:
                queue = uow.spot_queues.get(spot_id)
                if queue.leave(user_id) is None:
                    return False
                uow.spot_queues.save(queue)

        self.logger.info(f"User {user_id} left queue for spot {spot_id}")
        self._publish(EventType.QUEUE_LEFT, spot_id, "SpotQueue", {"user_id": user_id, "spot_id": spot_id})
        return True

    def notify_next_in_queue(self, spot_id: str) -> Optional[QueueEntry]:
        """
        Peek at the head of a spot's queue and notify that user once
        The head stays queued; repeated calls return it without re-notifying.
        """
        if not self._ensure_online("queue notification"):
            return None

        with self._lock:
            with self.uow as uow:
                queue = uow.spot_queues.get(spot_id)
                head = queue.head()
                if head is None:
                    return None
                newly_notified = queue.mark_head_notified()
                if newly_notified:
                    uow.spot_queues.save(queue)

        if newly_notified:
            self.logger.info(f"Notifying {head.user_id} that spot {spot_id} is available")
            self._publish(EventType.QUEUE_HEAD_NOTIFIED, spot_id, "SpotQueue", head.to_dict())
        return head

    def remove_first_from_queue(self, spot_id: str) -> Optional[QueueEntry]:
        """Pop the head of a spot's queue; the remaining users move up"""
        if not self._ensure_online("queue pop"):
            return None

        with self._lock:
            with self.uow as uow:
                queue = uow.spot_queues.get(spot_id)
                entry = queue.pop_front()
                if entry is None:
                    return None
                uow.spot_queues.save(queue)

        self.logger.info(f"Removed {entry.user_id} from the head of spot {spot_id} queue")
        self._publish(EventType.QUEUE_HEAD_REMOVED, spot_id, "SpotQueue", entry.to_dict())
        return entry

    def get_queue_length(self, spot_id: str) -> int:
        with self.uow as uow:
            return len(uow.spot_queues.get(spot_id))

    def get_queue(self, spot_id: str) -> List[QueueEntry]:
        with self.uow as uow:
            return uow.spot_queues.get(spot_id).entries

    def get_user_queue_status(self, user_id: str) -> List[QueuePosition]:
        """Every spot the user is waiting for, with the current position"""
        with self._lock:
            with self.uow as uow:
                positions = []
                for spot_id in uow.spot_queues.spot_ids():
                    position = uow.spot_queues.get(spot_id).position_for(user_id)
                    if position is not None:
                        positions.append(position)
        return sorted(positions, key=lambda item: item.spot_id)
