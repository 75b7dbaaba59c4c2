"""
Broker client: a redis list used as a FIFO work queue.

Manifesto:
    The deployer needs exactly three things from a broker: take the next
    message, put a message, and say when the connection is gone. A redis
    list gives all three with RPUSH / BLPOP, and redis persistence keeps
    queued requests across a broker restart.

Requests are pushed with ``RPUSH`` and consumed with ``BLPOP`` (oldest
first). Each consumed message gets a delivery id from a per-connection
counter so log records of one message can be correlated.

Requires: ``pip install redis``

Tags:
    deployer, messaging, redis, queue, broker
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from deployer.core.errors import BrokerError
from deployer.core.logging import get_logger

__all__ = ["Broker", "Delivery", "RedisBroker"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class Delivery:
    """One message taken off the queue."""

    body: bytes
    delivery_id: int
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class Broker(Protocol):
    """What the dispatcher and the publisher need from a broker."""

    @property
    def is_closed(self) -> bool: ...

    async def connect(self) -> None: ...

    async def receive(self) -> Delivery | None: ...

    async def publish(self, body: bytes) -> None: ...

    async def close(self) -> None: ...


class RedisBroker:
    """Redis list queue.

    Example::

        broker = RedisBroker("redis://localhost:6379/0", "deploys")
        await broker.connect()
        await broker.publish(b'{"tag": "web", "data": {}}')
        delivery = await broker.receive()
        await broker.close()

    Args:
        url: Redis URL.
        queue: List key holding pending requests.
        receive_timeout: Seconds one ``BLPOP`` blocks before ``receive``
            returns ``None``.
        client: Pre-built ``redis.asyncio`` client (used instead of *url*).
    """

    def __init__(
        self,
        url: str,
        queue: str,
        *,
        receive_timeout: int = 5,
        client: Any | None = None,
    ) -> None:
        self._url = url
        self._queue = queue
        self._receive_timeout = receive_timeout
        self._redis: Any = client
        self._owns_client = client is None
        self._counter = itertools.count(1)
        self._last_error: BaseException | None = None
        self._closed = False

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def last_error(self) -> BaseException | None:
        """Error that broke the connection, if any."""
        return self._last_error

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        """Open the connection and verify it with ``PING``.

        Raises:
            BrokerError: the broker is unreachable.
        """
        if self._redis is None:
            self._redis = aioredis.from_url(self._url)
        try:
            await self._redis.ping()
        except (RedisError, OSError) as exc:
            self._last_error = exc
            raise BrokerError(f"failed to connect to broker: {exc}", cause=exc) from exc
        logger.info("broker_connected", queue=self._queue)

    async def receive(self) -> Delivery | None:
        """Wait for the next message; ``None`` after ``receive_timeout``.

        Raises:
            BrokerError: the connection failed.
        """
        client = self._require_client()
        try:
            item = await client.blpop([self._queue], timeout=self._receive_timeout)
        except (RedisError, OSError) as exc:
            self._last_error = exc
            raise BrokerError(f"failed to receive from {self._queue!r}: {exc}", cause=exc) from exc
        if not item:
            return None
        _key, body = item
        if isinstance(body, str):
            body = body.encode("utf-8")
        return Delivery(body=body, delivery_id=next(self._counter))

    async def publish(self, body: bytes) -> None:
        """Append *body* to the queue.

        Raises:
            BrokerError: the push failed.
        """
        client = self._require_client()
        try:
            await client.rpush(self._queue, body)
        except (RedisError, OSError) as exc:
            self._last_error = exc
            raise BrokerError(f"failed to publish to {self._queue!r}: {exc}", cause=exc) from exc

    async def close(self) -> None:
        """Close the session; a no-op after a connection failure."""
        if self._closed:
            return
        self._closed = True
        if self._redis is None or not self._owns_client:
            return
        if self._last_error is not None:
            logger.debug("broker_close_skipped", reason=str(self._last_error))
            return
        try:
            await self._redis.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("broker_close_failed", error=str(exc))

    def _require_client(self) -> Any:
        if self._redis is None or self._closed:
            raise BrokerError("broker is not connected")
        return self._redis
