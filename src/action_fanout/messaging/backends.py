"""
Broadcast Channel Backend Implementations

Provides the broker boundary used by publishers and subscriber runtimes, with
an in-memory broker for tests and single-process runs and a RabbitMQ backend
for production.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aio_pika
from aio_pika.exceptions import (
    AMQPError,
    ChannelInvalidStateError,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    DeliveryError,
)

from .core import Delivery, ExchangeConfig, ExchangeType, QueueConfig, Subscription
from .exceptions import (
    ChannelConflictError,
    ChannelNotFoundError,
    MessagingError,
    QueueConflictError,
    QueueNotFoundError,
    TransportError,
)
from .serialization import JSON_CONTENT_TYPE

logger = logging.getLogger(__name__)


class BackendType(Enum):
    """Broadcast channel backend types."""

    MEMORY = "memory"
    RABBITMQ = "rabbitmq"


@dataclass
class BackendConfig:
    """Connection settings for a broadcast channel backend."""

    backend_type: BackendType = BackendType.MEMORY
    name: str = "default"

    # Connection settings
    url: str | None = None
    host: str = "localhost"
    port: int = 5672
    username: str | None = None
    password: str | None = None
    virtual_host: str = "/"
    connection_timeout: float = 30.0
    heartbeat: int = 60

    # Delivery settings
    prefetch_count: int = 1
    publisher_confirms: bool = True

    options: dict[str, Any] = field(default_factory=dict)


class MessageBackend(ABC):
    """Abstract broadcast channel backend (one client connection to a broker)."""

    def __init__(self, config: BackendConfig):
        self.config = config
        self._connected = False

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the broker."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the broker, releasing all subscriptions."""

    @abstractmethod
    async def declare_channel(
        self,
        name: str,
        kind: ExchangeType = ExchangeType.FANOUT,
        durable: bool = True,
    ) -> ExchangeConfig:
        """Declare a channel idempotently; conflicting re-declaration fails."""

    @abstractmethod
    async def declare_queue(self, name: str, durable: bool = True) -> QueueConfig:
        """Declare a subscription queue idempotently."""

    @abstractmethod
    async def bind(self, queue: str, channel: str, routing_key: str = "") -> None:
        """Bind a queue to a channel idempotently."""

    @abstractmethod
    async def publish(
        self,
        channel: str,
        body: bytes,
        durable: bool = True,
        content_type: str = JSON_CONTENT_TYPE,
    ) -> None:
        """Hand a message to a channel for distribution to every bound queue."""

    @abstractmethod
    async def subscribe(self, queue: str) -> Subscription:
        """Open a manual-acknowledgment subscription to a queue."""

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Acknowledge a delivery, removing it from its queue permanently."""

    @abstractmethod
    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        """Negative acknowledge a delivery."""

    @abstractmethod
    async def queue_depth(self, queue: str) -> int:
        """Number of ready (undelivered) messages in a queue."""

    @property
    def is_connected(self) -> bool:
        """Check if backend is connected."""
        return self._connected

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise TransportError(f"Backend '{self.config.name}' is not connected")


# In-memory broker


@dataclass
class _StoredMessage:
    body: bytes
    content_type: str
    persistent: bool
    sequence: int
    redelivered: bool = False


@dataclass
class _QueueState:
    config: QueueConfig
    ready: deque = field(default_factory=deque)
    unacked: dict[int, tuple[_StoredMessage, "InMemorySubscription"]] = field(default_factory=dict)
    available: asyncio.Event = field(default_factory=asyncio.Event)

    def requeue(self, messages: list[_StoredMessage]) -> None:
        """Return messages to the head of the queue in their original order."""
        for message in sorted(messages, key=lambda m: m.sequence, reverse=True):
            message.redelivered = True
            self.ready.appendleft(message)
        if messages:
            self.available.set()


class InMemoryBroker:
    """Process-local broker state shared by all in-memory backend connections.

    Channels, queues and bindings outlive individual connections, the way a
    real broker's do. ``restart`` and ``drop_connections`` simulate broker
    restarts and transport failures.
    """

    _default: "InMemoryBroker | None" = None

    def __init__(self):
        self.exchanges: dict[str, ExchangeConfig] = {}
        self.queues: dict[str, _QueueState] = {}
        self.bindings: dict[str, list[str]] = {}  # exchange -> ordered queue names
        self._connections: set["InMemoryBackend"] = set()
        self._sequence = itertools.count(1)
        self._delivery_tags = itertools.count(1)

    @classmethod
    def default(cls) -> "InMemoryBroker":
        """Process-wide broker used when no broker is passed explicitly."""
        if cls._default is None:
            cls._default = cls()
        return cls._default

    def attach(self, backend: "InMemoryBackend") -> None:
        self._connections.add(backend)

    def detach(self, backend: "InMemoryBackend") -> None:
        self._connections.discard(backend)

    def drop_connections(self) -> int:
        """Sever every client connection; unacked deliveries return to their queues."""
        dropped = list(self._connections)
        for backend in dropped:
            backend._on_connection_lost()
        for state in self.queues.values():
            state.available.set()
        logger.warning("In-memory broker dropped %d connection(s)", len(dropped))
        return len(dropped)

    def restart(self) -> None:
        """Simulate a broker restart: only durable entities and persistent messages survive."""
        self.drop_connections()

        for name in [n for n, cfg in self.exchanges.items() if not cfg.durable]:
            del self.exchanges[name]
            self.bindings.pop(name, None)

        for name in [n for n, st in self.queues.items() if not st.config.durable]:
            del self.queues[name]
            for queue_names in self.bindings.values():
                if name in queue_names:
                    queue_names.remove(name)

        for state in self.queues.values():
            state.ready = deque(m for m in state.ready if m.persistent)
            state.available = asyncio.Event()
            if state.ready:
                state.available.set()

        logger.info(
            "In-memory broker restarted with %d exchange(s) and %d queue(s)",
            len(self.exchanges),
            len(self.queues),
        )

    def next_sequence(self) -> int:
        return next(self._sequence)

    def next_delivery_tag(self) -> int:
        return next(self._delivery_tags)


class InMemorySubscription(Subscription):
    """Subscription to an in-memory queue."""

    def __init__(self, queue: str, backend: "InMemoryBackend"):
        super().__init__(queue)
        self.backend = backend
        self._outstanding: set[int] = set()

    def _state(self) -> _QueueState:
        state = self.backend.broker.queues.get(self.queue)
        if state is None:
            raise QueueNotFoundError(f"Queue '{self.queue}' does not exist")
        return state

    async def next(self, timeout: float | None = None) -> Delivery | None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            if self._closed:
                return None
            self.backend._ensure_connected()
            state = self._state()

            if state.ready:
                message = state.ready.popleft()
                tag = self.backend.broker.next_delivery_tag()
                state.unacked[tag] = (message, self)
                self._outstanding.add(tag)
                return Delivery(
                    body=message.body,
                    queue=self.queue,
                    delivery_tag=tag,
                    content_type=message.content_type,
                    redelivered=message.redelivered,
                    persistent=message.persistent,
                )

            state.available.clear()
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            try:
                await asyncio.wait_for(state.available.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None

    def _release(self) -> None:
        state = self.backend.broker.queues.get(self.queue)
        if state is None:
            self._outstanding.clear()
            return
        returned = [state.unacked.pop(tag)[0] for tag in self._outstanding if tag in state.unacked]
        self._outstanding.clear()
        state.requeue(returned)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()
        self.backend._subscriptions.discard(self)
        logger.debug("Closed in-memory subscription to %s", self.queue)


class InMemoryBackend(MessageBackend):
    """In-memory backend for tests and single-process deployments."""

    def __init__(self, config: BackendConfig | None = None, broker: InMemoryBroker | None = None):
        super().__init__(config or BackendConfig(backend_type=BackendType.MEMORY))
        self.broker = broker or InMemoryBroker.default()
        self._subscriptions: set[InMemorySubscription] = set()

    async def connect(self) -> None:
        self.broker.attach(self)
        self._connected = True
        logger.info("Connected to in-memory broker (%s)", self.config.name)

    async def disconnect(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
        self.broker.detach(self)
        self._connected = False
        logger.info("Disconnected from in-memory broker (%s)", self.config.name)

    def _on_connection_lost(self) -> None:
        for subscription in list(self._subscriptions):
            subscription._release()
        self._subscriptions.clear()
        self.broker.detach(self)
        self._connected = False

    async def declare_channel(
        self,
        name: str,
        kind: ExchangeType = ExchangeType.FANOUT,
        durable: bool = True,
    ) -> ExchangeConfig:
        self._ensure_connected()
        requested = ExchangeConfig(name=name, exchange_type=kind, durable=durable)
        existing = self.broker.exchanges.get(name)

        if existing is None:
            self.broker.exchanges[name] = requested
            self.broker.bindings.setdefault(name, [])
            logger.info("Declared %s exchange: %s (durable=%s)", kind.value, name, durable)
            return requested

        if existing != requested:
            raise ChannelConflictError(
                f"Exchange '{name}' already declared as {existing.exchange_type.value} "
                f"(durable={existing.durable}); requested {kind.value} (durable={durable})"
            )
        return existing

    async def declare_queue(self, name: str, durable: bool = True) -> QueueConfig:
        self._ensure_connected()
        requested = QueueConfig(name=name, durable=durable)
        state = self.broker.queues.get(name)

        if state is None:
            self.broker.queues[name] = _QueueState(config=requested)
            logger.info("Declared queue: %s (durable=%s)", name, durable)
            return requested

        if state.config != requested:
            raise QueueConflictError(
                f"Queue '{name}' already declared with durable={state.config.durable}"
            )
        return state.config

    async def bind(self, queue: str, channel: str, routing_key: str = "") -> None:
        self._ensure_connected()
        if channel not in self.broker.exchanges:
            raise ChannelNotFoundError(f"Exchange '{channel}' does not exist")
        if queue not in self.broker.queues:
            raise QueueNotFoundError(f"Queue '{queue}' does not exist")

        bound = self.broker.bindings.setdefault(channel, [])
        if queue not in bound:
            bound.append(queue)
            logger.info("Bound queue %s to exchange %s", queue, channel)

    async def publish(
        self,
        channel: str,
        body: bytes,
        durable: bool = True,
        content_type: str = JSON_CONTENT_TYPE,
    ) -> None:
        self._ensure_connected()
        exchange = self.broker.exchanges.get(channel)
        if exchange is None:
            raise ChannelNotFoundError(f"Exchange '{channel}' does not exist")

        # Routing keys are ignored: every bound queue gets its own copy
        sequence = self.broker.next_sequence()
        targets = self.broker.bindings.get(channel, [])
        for queue_name in targets:
            state = self.broker.queues[queue_name]
            state.ready.append(
                _StoredMessage(
                    body=bytes(body),
                    content_type=content_type,
                    persistent=durable,
                    sequence=sequence,
                )
            )
            state.available.set()

        if not targets:
            logger.debug("Message published to %s had no bound queues", channel)

    async def subscribe(self, queue: str) -> Subscription:
        self._ensure_connected()
        if queue not in self.broker.queues:
            raise QueueNotFoundError(f"Queue '{queue}' does not exist")
        subscription = InMemorySubscription(queue, self)
        self._subscriptions.add(subscription)
        return subscription

    def _settle(self, delivery: Delivery) -> tuple[_QueueState, _StoredMessage]:
        self._ensure_connected()
        state = self.broker.queues.get(delivery.queue)
        if state is None or delivery.delivery_tag not in state.unacked:
            raise MessagingError(
                f"Unknown delivery tag {delivery.delivery_tag} on queue '{delivery.queue}'"
            )
        message, subscription = state.unacked.pop(delivery.delivery_tag)
        subscription._outstanding.discard(delivery.delivery_tag)
        return state, message

    async def ack(self, delivery: Delivery) -> None:
        self._settle(delivery)

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        state, message = self._settle(delivery)
        if requeue:
            state.requeue([message])
        else:
            logger.warning(
                "Discarded message %d from queue %s", delivery.delivery_tag, delivery.queue
            )

    async def queue_depth(self, queue: str) -> int:
        self._ensure_connected()
        state = self.broker.queues.get(queue)
        if state is None:
            raise QueueNotFoundError(f"Queue '{queue}' does not exist")
        return len(state.ready)


# RabbitMQ Backend (requires aio-pika)


class RabbitMQSubscription(Subscription):
    """Push-based consumer on a RabbitMQ queue, buffered for sequential pulls."""

    def __init__(self, queue: str, backend: "RabbitMQBackend", amqp_queue):
        super().__init__(queue)
        self.backend = backend
        self.amqp_queue = amqp_queue
        self._buffer: asyncio.Queue = asyncio.Queue()
        self._consumer_tag: str | None = None

    async def start(self) -> None:
        self._consumer_tag = await self.amqp_queue.consume(self._on_message, no_ack=False)

    async def _on_message(self, message) -> None:
        await self._buffer.put(message)

    async def next(self, timeout: float | None = None) -> Delivery | None:
        if self._closed:
            return None
        self.backend._ensure_connected()

        try:
            message = await asyncio.wait_for(self._buffer.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

        return Delivery(
            body=message.body,
            queue=self.queue,
            delivery_tag=message.delivery_tag,
            content_type=message.content_type or JSON_CONTENT_TYPE,
            redelivered=bool(message.redelivered),
            persistent=message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT,
            raw=message,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._consumer_tag:
                await self.amqp_queue.cancel(self._consumer_tag)
            while not self._buffer.empty():
                await self._buffer.get_nowait().nack(requeue=True)
        except AMQPError as e:
            # Unacked messages are returned by the broker when the channel closes
            logger.warning("Failed to cancel consumer on %s cleanly: %s", self.queue, e)


class RabbitMQBackend(MessageBackend):
    """RabbitMQ backend using durable fanout exchanges and persistent messages."""

    def __init__(self, config: BackendConfig):
        super().__init__(config)
        self._connection = None
        self._channel = None
        self._exchanges: dict[str, Any] = {}
        self._queues: dict[str, Any] = {}
        self._subscriptions: list[RabbitMQSubscription] = []

    def _build_connection_url(self) -> str:
        """Build RabbitMQ connection URL."""
        if self.config.url:
            return self.config.url

        auth = ""
        if self.config.username and self.config.password:
            auth = f"{self.config.username}:{self.config.password}@"

        vhost = self.config.virtual_host.lstrip("/")
        return f"amqp://{auth}{self.config.host}:{self.config.port}/{vhost}"

    async def connect(self) -> None:
        try:
            self._connection = await aio_pika.connect_robust(
                self._build_connection_url(),
                timeout=self.config.connection_timeout,
                heartbeat=self.config.heartbeat,
            )
            await self._open_channel()
        except (AMQPError, OSError, asyncio.TimeoutError) as e:
            logger.error("Failed to connect to RabbitMQ at %s: %s", self.config.host, e)
            raise TransportError(f"Failed to connect to RabbitMQ: {e}", cause=e) from e

        self._connected = True
        logger.info("Connected to RabbitMQ (%s)", self.config.name)

    async def _open_channel(self) -> None:
        self._channel = await self._connection.channel(
            publisher_confirms=self.config.publisher_confirms
        )
        await self._channel.set_qos(prefetch_count=self.config.prefetch_count)
        self._exchanges.clear()
        self._queues.clear()

    async def disconnect(self) -> None:
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions.clear()

        if self._connection:
            await self._connection.close()
            self._connection = None
            self._channel = None
        self._connected = False
        logger.info("Disconnected from RabbitMQ (%s)", self.config.name)

    async def declare_channel(
        self,
        name: str,
        kind: ExchangeType = ExchangeType.FANOUT,
        durable: bool = True,
    ) -> ExchangeConfig:
        self._ensure_connected()
        try:
            exchange = await self._channel.declare_exchange(
                name, aio_pika.ExchangeType(kind.value), durable=durable
            )
        except ChannelPreconditionFailed as e:
            await self._open_channel()
            raise ChannelConflictError(
                f"Exchange '{name}' exists with different settings: {e}", cause=e
            ) from e
        except AMQPError as e:
            raise TransportError(f"Failed to declare exchange '{name}': {e}", cause=e) from e

        self._exchanges[name] = exchange
        logger.info("Declared %s exchange: %s (durable=%s)", kind.value, name, durable)
        return ExchangeConfig(name=name, exchange_type=kind, durable=durable)

    async def declare_queue(self, name: str, durable: bool = True) -> QueueConfig:
        self._ensure_connected()
        try:
            queue = await self._channel.declare_queue(name, durable=durable)
        except ChannelPreconditionFailed as e:
            await self._open_channel()
            raise QueueConflictError(
                f"Queue '{name}' exists with different settings: {e}", cause=e
            ) from e
        except AMQPError as e:
            raise TransportError(f"Failed to declare queue '{name}': {e}", cause=e) from e

        self._queues[name] = queue
        logger.info("Declared queue: %s (durable=%s)", name, durable)
        return QueueConfig(name=name, durable=durable)

    async def _get_exchange(self, name: str):
        if name in self._exchanges:
            return self._exchanges[name]
        try:
            exchange = await self._channel.get_exchange(name, ensure=True)
        except ChannelNotFoundEntity as e:
            await self._open_channel()
            raise ChannelNotFoundError(f"Exchange '{name}' does not exist", cause=e) from e
        self._exchanges[name] = exchange
        return exchange

    async def _get_queue(self, name: str):
        if name in self._queues:
            return self._queues[name]
        try:
            queue = await self._channel.get_queue(name, ensure=True)
        except ChannelNotFoundEntity as e:
            await self._open_channel()
            raise QueueNotFoundError(f"Queue '{name}' does not exist", cause=e) from e
        self._queues[name] = queue
        return queue

    async def bind(self, queue: str, channel: str, routing_key: str = "") -> None:
        self._ensure_connected()
        exchange = await self._get_exchange(channel)
        amqp_queue = await self._get_queue(queue)
        try:
            await amqp_queue.bind(exchange, routing_key=routing_key)
        except AMQPError as e:
            raise TransportError(f"Failed to bind {queue} to {channel}: {e}", cause=e) from e
        logger.info("Bound queue %s to exchange %s", queue, channel)

    async def publish(
        self,
        channel: str,
        body: bytes,
        durable: bool = True,
        content_type: str = JSON_CONTENT_TYPE,
    ) -> None:
        self._ensure_connected()
        exchange = await self._get_exchange(channel)

        message = aio_pika.Message(
            body=body,
            content_type=content_type,
            delivery_mode=(
                aio_pika.DeliveryMode.PERSISTENT if durable else aio_pika.DeliveryMode.NOT_PERSISTENT
            ),
        )

        try:
            await exchange.publish(message, routing_key="")
        except DeliveryError as e:
            raise MessagingError(f"Broker rejected message on '{channel}': {e}", cause=e) from e
        except (AMQPError, ChannelInvalidStateError) as e:
            raise TransportError(f"Failed to publish to '{channel}': {e}", cause=e) from e

    async def subscribe(self, queue: str) -> Subscription:
        self._ensure_connected()
        amqp_queue = await self._get_queue(queue)
        subscription = RabbitMQSubscription(queue, self, amqp_queue)
        try:
            await subscription.start()
        except AMQPError as e:
            raise TransportError(f"Failed to consume from '{queue}': {e}", cause=e) from e
        self._subscriptions.append(subscription)
        return subscription

    async def ack(self, delivery: Delivery) -> None:
        try:
            await delivery.raw.ack()
        except (AMQPError, ChannelInvalidStateError) as e:
            raise TransportError(f"Failed to ack delivery {delivery.delivery_tag}: {e}", cause=e) from e

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        try:
            await delivery.raw.nack(requeue=requeue)
        except (AMQPError, ChannelInvalidStateError) as e:
            raise TransportError(f"Failed to nack delivery {delivery.delivery_tag}: {e}", cause=e) from e

    async def queue_depth(self, queue: str) -> int:
        self._ensure_connected()
        try:
            declared = await self._channel.declare_queue(queue, passive=True)
        except ChannelNotFoundEntity as e:
            await self._open_channel()
            raise QueueNotFoundError(f"Queue '{queue}' does not exist", cause=e) from e
        return declared.declaration_result.message_count


# Backend Factory
class BackendFactory:
    """Factory for creating broadcast channel backends."""

    @staticmethod
    def create_backend(config: BackendConfig, broker: InMemoryBroker | None = None) -> MessageBackend:
        """Create a backend connection for the configured broker type."""
        if config.backend_type == BackendType.MEMORY:
            return InMemoryBackend(config, broker=broker)
        if config.backend_type == BackendType.RABBITMQ:
            return RabbitMQBackend(config)
        raise ValueError(f"Unsupported backend type: {config.backend_type}")
