import logging
from typing import Iterable, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

log = logging.getLogger(__name__)

CATCH_ALL_PATTERN = "#"


def dead_letter_exchange_name(exchange_name: str) -> str:
    return f"{exchange_name}.dlx"


def dead_letter_queue_name(queue_name: str) -> str:
    return f"{queue_name}.dlq"


async def declare_event_exchange(channel: AbstractChannel, exchange_name: str) -> AbstractExchange:
    """Durable topic exchange shared by every publisher of the deployment."""
    return await channel.declare_exchange(
        exchange_name, aio_pika.ExchangeType.TOPIC, durable=True, auto_delete=False
    )


async def declare_consumer_topology(
    channel: AbstractChannel,
    exchange_name: str,
    queue_name: str,
    routing_keys: Iterable[str],
    queue_type: Optional[str] = None,
) -> AbstractQueue:
    """
    Declares exchange, dead-letter exchange, catch-all DLQ and the service queue.
    Every declaration is idempotent, so this runs on every consumer start.
    """
    exchange = await declare_event_exchange(channel, exchange_name)

    dlx_name = dead_letter_exchange_name(exchange_name)
    dlx = await channel.declare_exchange(dlx_name, aio_pika.ExchangeType.TOPIC, durable=True)

    dlq = await channel.declare_queue(dead_letter_queue_name(queue_name), durable=True)
    await dlq.bind(dlx, routing_key=CATCH_ALL_PATTERN)

    arguments = {"x-dead-letter-exchange": dlx_name}
    if queue_type and queue_type != "classic":
        # Quorum queues track x-delivery-count on every requeue
        arguments["x-queue-type"] = queue_type
    queue = await channel.declare_queue(queue_name, durable=True, arguments=arguments)

    routing_keys = list(routing_keys)
    for routing_key in routing_keys:
        await queue.bind(exchange, routing_key=routing_key)

    log.info(
        "Topology ready: exchange=%s dlx=%s queue=%s bindings=%s",
        exchange_name, dlx_name, queue_name, routing_keys
    )
    return queue
