"""RabbitMQ connection helpers built on aio-pika.

The relay opens a short-lived connection per tick and closes it when the batch
is done; the consumer keeps one robust (auto-reconnecting) connection for its
whole lifetime.
"""

import logging
from typing import Awaitable, Callable

import aio_pika
from aio_pika.abc import AbstractConnection, AbstractRobustConnection

from app.core.config import RABBITMQ_URL

log = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Awaitable[AbstractConnection]]

CONNECT_TIMEOUT_SECONDS = 10


async def connect(url: str = RABBITMQ_URL) -> AbstractConnection:
    """Plain connection for one relay tick; a failure surfaces immediately."""
    return await aio_pika.connect(url, timeout=CONNECT_TIMEOUT_SECONDS)


async def connect_robust(url: str = RABBITMQ_URL) -> AbstractRobustConnection:
    """Long-lived connection that re-establishes channels and consumers after a network blip."""
    connection = await aio_pika.connect_robust(url, timeout=CONNECT_TIMEOUT_SECONDS)
    log.info("Connected to RabbitMQ at %s", connection.url.host)
    return connection
