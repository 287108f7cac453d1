# File: carpso/infrastructure/messaging.py
"""
Messaging Infrastructure for the Carpso Engine

This module carries the domain events raised by the pricing, ledger, queue
and reservation services:
1. In-process publish/subscribe (EventBus)
2. Broker adapters (in-memory, Redis Pub/Sub, RabbitMQ)
3. Event store for audit and replay (MongoDB)
4. MessageBus orchestrating all three
5. Handlers that turn queue events into user notifications

Key Benefits:
- Services raise events without knowing who listens
- Brokers are swappable behind the MessageQueue interface
- Broker and store failures are logged, never propagated into a booking
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Callable
from datetime import datetime
from dataclasses import dataclass, asdict, field
from enum import Enum
from uuid import UUID, uuid4
import json
import logging
import threading
import time

import redis
import pika
from pika.exceptions import AMQPError
import pymongo
from pymongo.errors import PyMongoError


# ============================================================================
# MESSAGE TYPES AND ENUMS
# ============================================================================

class MessageType(str, Enum):
    """Types of messages in the system"""
    DOMAIN_EVENT = "domain_event"
    NOTIFICATION = "notification"


class EventType(str, Enum):
    """Domain event types"""
    # Pricing events
    PRICING_RULE_SAVED = "pricing_rule_saved"
    PRICING_RULE_DELETED = "pricing_rule_deleted"
    PASS_PURCHASED = "pass_purchased"

    # Ledger events
    RECORD_OPENED = "record_opened"
    RECORD_COMPLETED = "record_completed"
    RECORD_CANCELLED = "record_cancelled"

    # Queue events
    QUEUE_JOINED = "queue_joined"
    QUEUE_LEFT = "queue_left"
    QUEUE_HEAD_NOTIFIED = "queue_head_notified"
    QUEUE_HEAD_REMOVED = "queue_head_removed"

    # Reservation events
    RESERVATION_CONFIRMED = "reservation_confirmed"
    RESERVATION_TIMED_OUT = "reservation_timed_out"
    RESERVATION_CANCELLED = "reservation_cancelled"


# ============================================================================
# MESSAGE BASE CLASSES
# ============================================================================

@dataclass
class Message:
    """Base message class"""
    message_id: UUID = field(default_factory=uuid4)
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: Optional[UUID] = None
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary"""
        data = asdict(self)
        data['message_id'] = str(self.message_id)
        data['message_type'] = self.message_type.value
        data['timestamp'] = self.timestamp.isoformat()
        data['correlation_id'] = str(self.correlation_id) if self.correlation_id else None
        return data

    def to_json(self) -> str:
        """Convert message to JSON string"""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class DomainEvent(Message):
    """Domain event message"""
    event_type: EventType = EventType.RECORD_OPENED
    aggregate_id: Optional[str] = None
    aggregate_type: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    version: int = 1

    def __post_init__(self):
        self.message_type = MessageType.DOMAIN_EVENT

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['event_type'] = self.event_type.value
        return data


@dataclass
class Notification(Message):
    """Notification message addressed to one user"""
    notification_type: str = ""
    recipient: Optional[str] = None
    title: str = ""
    body: str = ""
    priority: str = "normal"  # low, normal, high, urgent

    def __post_init__(self):
        self.message_type = MessageType.NOTIFICATION


def message_from_dict(data: Dict[str, Any]) -> Message:
    """Rebuild a message of the right class from its dictionary form"""
    payload = dict(data)
    payload['message_id'] = UUID(payload['message_id'])
    payload['timestamp'] = datetime.fromisoformat(payload['timestamp'])
    if payload.get('correlation_id'):
        payload['correlation_id'] = UUID(payload['correlation_id'])
    message_type = MessageType(payload.pop('message_type', MessageType.DOMAIN_EVENT))

    if message_type == MessageType.NOTIFICATION:
        return Notification(**payload)

    payload['event_type'] = EventType(payload['event_type'])
    return DomainEvent(**payload)


def message_from_json(json_str) -> Message:
    return message_from_dict(json.loads(json_str))


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handlers run synchronously in publish order; a failing handler is
    logged and does not stop the others.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        handlers = self._subscribers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
            self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type.value}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type.value}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.info(f"Publishing event: {event.event_type.value} (ID: {event.message_id})")

        for handler in list(self._subscribers.get(event.event_type, [])):
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
                self._logger.debug(f"Event handled by {handler.__class__.__name__}")
            except Exception as e:
                self._logger.error(
                    f"Error handling event {event.event_type.value} with {handler.__class__.__name__}: {e}"
                )

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        self._subscribers.clear()


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Abstract message broker"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a topic"""
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to a topic; returns a subscription id"""
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    def close(self) -> None:
        pass


# ============================================================================
# IN-MEMORY MESSAGE QUEUE (For Testing)
# ============================================================================

class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue for testing"""

    def __init__(self):
        self._callbacks: Dict[str, Dict[str, Callable[[Message], None]]] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        """Publish message to in-memory topic"""
        self._messages.setdefault(topic, []).append(message)

        for subscription_id, callback in list(self._callbacks.get(topic, {}).items()):
            try:
                callback(message)
            except Exception as e:
                self._logger.error(f"Error in callback {subscription_id} for topic {topic}: {e}")

        self._logger.debug(f"Published to {topic}: {message.message_id}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        self._callbacks.setdefault(topic, {})[subscription_id] = callback
        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        for callbacks in self._callbacks.values():
            if subscription_id in callbacks:
                del callbacks[subscription_id]
                return True
        return False

    def get_messages(self, topic: str) -> List[Message]:
        """Get all messages for a topic (for testing)"""
        return list(self._messages.get(topic, []))

    def clear(self):
        """Clear all messages and subscriptions (for testing)"""
        self._callbacks.clear()
        self._messages.clear()


# ============================================================================
# REDIS MESSAGE QUEUE
# ============================================================================

class RedisMessageQueue(MessageQueue):
    """Redis-based message queue using Pub/Sub"""

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None, **kwargs):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)

        # Redis connection
        self.redis_client = client or redis.Redis.from_url(redis_url, **kwargs)
        self.pubsub = self.redis_client.pubsub()

        # Subscription tracking
        self._subscriptions: Dict[str, str] = {}  # subscription_id -> topic
        self._callbacks: Dict[str, Callable[[Message], None]] = {}
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a Redis channel"""
        try:
            self.redis_client.publish(topic, message.to_json())
            self._logger.debug(f"Published message to {topic}: {message.message_id}")
            return True
        except redis.RedisError as e:
            self._logger.error(f"Error publishing to Redis: {e}")
            return False

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to a Redis channel"""
        subscription_id = str(uuid4())
        self._subscriptions[subscription_id] = topic
        self._callbacks[subscription_id] = callback

        self.pubsub.subscribe(topic)
        if not self._running:
            self._start_listener()

        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Unsubscribe from a Redis channel"""
        topic = self._subscriptions.pop(subscription_id, None)
        if topic is None:
            return False
        del self._callbacks[subscription_id]

        # Unsubscribe from Redis if no more subscribers for this topic
        if topic not in self._subscriptions.values():
            self.pubsub.unsubscribe(topic)
            self._logger.debug(f"Unsubscribed from {topic}")
        return True

    def _start_listener(self):
        """Start the Redis message listener in a separate thread"""
        self._running = True
        self._thread = threading.Thread(target=self._listen, daemon=True)
        self._thread.start()
        self._logger.info("Started Redis message listener")

    def _listen(self):
        while self._running:
            try:
                message = self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message['type'] == 'message':
                    self._handle_message(message)
            except redis.RedisError as e:
                self._logger.error(f"Error in Redis listener: {e}")
                time.sleep(1)

    def _handle_message(self, redis_message: Dict[str, Any]):
        """Dispatch an incoming Redis message to the callbacks of its channel"""
        channel = redis_message['channel']
        topic = channel.decode('utf-8') if isinstance(channel, bytes) else channel
        try:
            message = message_from_json(redis_message['data'])
        except (ValueError, KeyError, TypeError) as e:
            self._logger.error(f"Discarding malformed message on {topic}: {e}")
            return

        for subscription_id, callback_topic in list(self._subscriptions.items()):
            if callback_topic != topic:
                continue
            try:
                self._callbacks[subscription_id](message)
            except Exception as e:
                self._logger.error(f"Error in callback for subscription {subscription_id}: {e}")

    def close(self):
        """Close Redis connections"""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)

        self.pubsub.close()
        self.redis_client.close()
        self._logger.info("Redis message queue closed")


# ============================================================================
# RABBITMQ MESSAGE QUEUE
# ============================================================================

class RabbitMQMessageQueue(MessageQueue):
    """RabbitMQ-based message queue; one topic exchange per topic"""

    def __init__(self, amqp_url: str = "amqp://localhost:5672", **kwargs):
        self.amqp_url = amqp_url
        self._logger = logging.getLogger(self.__class__.__name__)
        self.connection_params = pika.URLParameters(amqp_url)

        # Connection and channel (lazy initialization)
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None
        self._consumer_tags: Dict[str, str] = {}  # subscription_id -> consumer_tag

    def _ensure_connection(self) -> None:
        """Ensure RabbitMQ connection is established"""
        if not self._connection or self._connection.is_closed:
            self._connection = pika.BlockingConnection(self.connection_params)
            self._channel = self._connection.channel()
            self._logger.debug("RabbitMQ connection established")

    @staticmethod
    def _routing_key(message: Message) -> str:
        if isinstance(message, DomainEvent):
            return message.event_type.value
        return message.message_type.value

    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a RabbitMQ exchange"""
        try:
            self._ensure_connection()
            self._channel.exchange_declare(exchange=topic, exchange_type='topic', durable=True)
            self._channel.basic_publish(
                exchange=topic,
                routing_key=self._routing_key(message),
                body=message.to_json().encode('utf-8'),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Persistent
                    content_type='application/json',
                    message_id=str(message.message_id),
                    timestamp=int(message.timestamp.timestamp()),
                )
            )
            self._logger.debug(f"Published message to {topic}: {message.message_id}")
            return True
        except AMQPError as e:
            self._logger.error(f"Error publishing to RabbitMQ: {e}")
            return False

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Bind a private queue to the topic exchange; consume with start_consuming()"""
        try:
            self._ensure_connection()
            self._channel.exchange_declare(exchange=topic, exchange_type='topic', durable=True)

            subscription_id = str(uuid4())
            queue_name = f"{topic}.{subscription_id}"
            self._channel.queue_declare(queue=queue_name, durable=True, auto_delete=True)
            self._channel.queue_bind(exchange=topic, queue=queue_name, routing_key='#')

            def message_handler(ch, method, properties, body):
                try:
                    callback(message_from_json(body.decode('utf-8')))
                except Exception as e:
                    self._logger.error(f"Error processing RabbitMQ message: {e}")
                finally:
                    ch.basic_ack(delivery_tag=method.delivery_tag)

            self._consumer_tags[subscription_id] = self._channel.basic_consume(
                queue=queue_name,
                on_message_callback=message_handler,
                auto_ack=False
            )
            self._logger.debug(f"Subscribed to {topic} with queue {queue_name}")
            return subscription_id
        except AMQPError as e:
            self._logger.error(f"Error subscribing to RabbitMQ: {e}")
            raise

    def unsubscribe(self, subscription_id: str) -> bool:
        consumer_tag = self._consumer_tags.pop(subscription_id, None)
        if consumer_tag is None:
            return False
        try:
            self._ensure_connection()
            self._channel.basic_cancel(consumer_tag)
            return True
        except AMQPError as e:
            self._logger.error(f"Error unsubscribing from RabbitMQ: {e}")
            return False

    def start_consuming(self) -> None:
        """Start consuming messages (blocks)"""
        self._ensure_connection()
        self._logger.info("Starting RabbitMQ consumer...")
        try:
            self._channel.start_consuming()
        except KeyboardInterrupt:
            self._logger.info("RabbitMQ consumer stopped by user")

    def close(self):
        """Close RabbitMQ connections"""
        try:
            if self._connection and self._connection.is_open:
                self._connection.close()
                self._logger.info("RabbitMQ connection closed")
        except AMQPError as e:
            self._logger.error(f"Error closing RabbitMQ connection: {e}")


# ============================================================================
# EVENT STORE (MongoDB)
# ============================================================================

class EventStore:
    """
    Append-only store of domain events

    Enables:
    - Audit of every pass purchase and parking session
    - Replay of events for one aggregate
    """

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        database: str = "carpso_events",
        client: Optional[pymongo.MongoClient] = None,
        **kwargs
    ):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.client = client or pymongo.MongoClient(mongo_url, **kwargs)
        self.db = self.client[database]
        self.events_collection = self.db['events']

        self.events_collection.create_index([('aggregate_id', 1), ('timestamp', 1)])
        self.events_collection.create_index([('event_type', 1)])

    def save(self, event: DomainEvent) -> bool:
        """Save a domain event to the store"""
        try:
            result = self.events_collection.insert_one(self._event_to_document(event))
            self._logger.debug(f"Saved event {event.event_type.value} for aggregate {event.aggregate_id}")
            return result.acknowledged
        except PyMongoError as e:
            self._logger.error(f"Error saving event to store: {e}")
            return False

    def get_events_for_aggregate(self, aggregate_id: str) -> List[DomainEvent]:
        """Get all events for one aggregate, oldest first"""
        try:
            cursor = self.events_collection.find({'aggregate_id': aggregate_id}).sort('timestamp', 1)
            return [self._document_to_event(doc) for doc in cursor]
        except PyMongoError as e:
            self._logger.error(f"Error getting events for aggregate: {e}")
            return []

    def get_events_by_type(self, event_type: EventType, limit: int = 100) -> List[DomainEvent]:
        """Get the most recent events of a type"""
        try:
            cursor = self.events_collection.find(
                {'event_type': event_type.value}
            ).sort('timestamp', -1).limit(limit)
            return [self._document_to_event(doc) for doc in cursor]
        except PyMongoError as e:
            self._logger.error(f"Error getting events by type: {e}")
            return []

    def _event_to_document(self, event: DomainEvent) -> Dict[str, Any]:
        return {
            '_id': str(event.message_id),
            'event_type': event.event_type.value,
            'timestamp': event.timestamp,
            'aggregate_id': event.aggregate_id,
            'aggregate_type': event.aggregate_type,
            'version': event.version,
            'data': event.data,
            'metadata': event.metadata,
            'source': event.source,
        }

    def _document_to_event(self, doc: Dict[str, Any]) -> DomainEvent:
        return DomainEvent(
            message_id=UUID(doc['_id']),
            event_type=EventType(doc['event_type']),
            timestamp=doc['timestamp'],
            aggregate_id=doc.get('aggregate_id'),
            aggregate_type=doc.get('aggregate_type'),
            version=doc.get('version', 1),
            data=doc.get('data', {}),
            metadata=doc.get('metadata', {}),
            source=doc.get('source'),
        )

    def close(self):
        """Close MongoDB connection"""
        self.client.close()
        self._logger.info("Event store closed")


# ============================================================================
# MESSAGE BUS (Orchestrator)
# ============================================================================

class MessageBus:
    """
    Orchestrates message flow between the event bus, broker and event store

    Broker publishing is synchronous with exponential-backoff retry; a
    message that still fails is logged and dropped.
    """

    EVENTS_TOPIC = "carpso.events"
    NOTIFICATIONS_TOPIC = "carpso.notifications"

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        event_store: Optional[EventStore] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.event_store = event_store
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish_event(self, event: DomainEvent, store: bool = True) -> None:
        """Publish a domain event through all channels"""
        if store and self.event_store:
            self.event_store.save(event)

        self.event_bus.publish(event)

        if self.message_queue:
            self._publish_with_retry(self.EVENTS_TOPIC, event)

    def publish_notification(self, notification: Notification) -> bool:
        """Publish a notification to the broker"""
        self._logger.info(
            f"Publishing notification {notification.notification_type} to {notification.recipient}"
        )
        if self.message_queue:
            return self._publish_with_retry(self.NOTIFICATIONS_TOPIC, notification)
        return False

    def _publish_with_retry(self, topic: str, message: Message) -> bool:
        for attempt in range(self.max_retries):
            if self.message_queue.publish(topic, message):
                return True
            self._logger.warning(f"Attempt {attempt + 1} failed for message {message.message_id}")
            if attempt < self.max_retries - 1 and self.retry_delay:
                time.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff

        self._logger.error(f"Failed to publish message {message.message_id} to {topic} after retries")
        return False

    def subscribe_to_events(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events on the event bus"""
        self.event_bus.subscribe(event_type, handler)

    def subscribe_to_queue(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to messages from the broker"""
        if self.message_queue:
            return self.message_queue.subscribe(topic, callback)
        raise RuntimeError("Message queue not configured")

    def replay_events(self, aggregate_id: str, handler: EventHandler) -> int:
        """Replay stored events for an aggregate; returns the number replayed"""
        if not self.event_store:
            raise RuntimeError("Event store not configured")

        replayed = 0
        for event in self.event_store.get_events_for_aggregate(aggregate_id):
            if handler.can_handle(event):
                handler.handle(event)
                replayed += 1
        return replayed

    def close(self):
        """Close all messaging components"""
        if self.message_queue:
            self.message_queue.close()
        if self.event_store:
            self.event_store.close()
        self._logger.info("Message bus closed")


# ============================================================================
# EVENT HANDLER IMPLEMENTATIONS
# ============================================================================

class QueueNotificationHandler(EventHandler):
    """Turns 'queue head notified' events into 'spot available' notifications"""

    def __init__(self, message_bus: Optional[MessageBus] = None):
        self.message_bus = message_bus
        self.sent: List[Notification] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    def can_handle(self, event: DomainEvent) -> bool:
        return event.event_type == EventType.QUEUE_HEAD_NOTIFIED

    def handle(self, event: DomainEvent) -> None:
        user_id = event.data.get('user_id')
        spot_id = event.data.get('spot_id')

        notification = Notification(
            notification_type="spot_available",
            recipient=user_id,
            title="Spot available",
            body=f"Spot {spot_id} is now available. Reserve it before someone else does.",
            priority="high",
            correlation_id=event.message_id,
            source=self.__class__.__name__,
        )
        self.sent.append(notification)
        self._logger.info(f"Notifying {user_id} that spot {spot_id} is available")

        if self.message_bus:
            self.message_bus.publish_notification(notification)


# ============================================================================
# MESSAGE BROKER FACTORY
# ============================================================================

class MessageBrokerFactory:
    """Factory for creating message brokers"""

    @staticmethod
    def create_broker(broker_type: str, redis_url: str = "redis://localhost:6379",
                      amqp_url: str = "amqp://localhost:5672") -> MessageQueue:
        if broker_type == "redis":
            return RedisMessageQueue(redis_url)
        if broker_type == "rabbitmq":
            return RabbitMQMessageQueue(amqp_url)
        if broker_type == "memory":
            return InMemoryMessageQueue()
        raise ValueError(f"Unknown broker type: {broker_type}")

    @staticmethod
    def create_message_bus(
        broker_type: Optional[str] = "memory",
        mongo_url: Optional[str] = None,
        redis_url: str = "redis://localhost:6379",
        amqp_url: str = "amqp://localhost:5672"
    ) -> MessageBus:
        """Create a message bus with the configured broker and optional event store"""
        broker = None
        if broker_type:
            broker = MessageBrokerFactory.create_broker(broker_type, redis_url, amqp_url)

        event_store = EventStore(mongo_url) if mongo_url else None
        return MessageBus(event_bus=EventBus(), message_queue=broker, event_store=event_store)
