"""
Exchange and queue topology setup.

Declares the fanout exchange and the durable queue of each consumer role and
binds them. Every call is idempotent and safe to repeat on each connect.
"""

import logging

from .config import ConsumerRole, TopologySettings
from .messaging.backends import MessageBackend
from .messaging.core import ExchangeType

logger = logging.getLogger(__name__)


async def declare_exchange(backend: MessageBackend, topology: TopologySettings) -> None:
    await backend.declare_channel(topology.exchange, ExchangeType.FANOUT, durable=topology.durable)


async def ensure_queue(backend: MessageBackend, topology: TopologySettings, queue: str) -> None:
    """Declare the exchange and one queue, and bind the queue to the exchange."""
    await declare_exchange(backend, topology)
    await backend.declare_queue(queue, durable=topology.durable)
    await backend.bind(queue, topology.exchange)


async def ensure_role_queue(
    backend: MessageBackend, topology: TopologySettings, role: ConsumerRole
) -> str:
    queue = topology.queue_for(role)
    await ensure_queue(backend, topology, queue)
    return queue


async def setup_topology(backend: MessageBackend, topology: TopologySettings) -> dict[str, str]:
    """Declare the exchange and every role queue; return the role to queue mapping."""
    await declare_exchange(backend, topology)
    bound = {}
    for role in ConsumerRole:
        bound[role.value] = await ensure_role_queue(backend, topology, role)
    logger.info(
        "Fanout exchange %s bound to %d queue(s): %s",
        topology.exchange,
        len(bound),
        ", ".join(bound.values()),
    )
    return bound
