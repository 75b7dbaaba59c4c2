"""
Message dispatcher: turns queue deliveries into admitted pipeline runs.

Manifesto:
    The dispatch loop must never wait on a deploy. It decodes, looks up
    and validates each message, hands accepted work to the worker pool and
    goes straight back to the broker. Anything wrong with one message is
    logged and that message is dropped; only the broker going away ends
    the loop.

Architecture:
    ::

        run()
          loop:  wait(FIRST_COMPLETED) on { broker.receive(), stop event }
            stop            ─► break (StopReason.SHUTDOWN)
            fatal error     ─► break (StopReason.BROKER_ERROR)
            non-fatal error ─► log, receive again
            delivery        ─► handle(delivery)
                           decode   ─ MessageDecodeError      ─► log, drop
                           lookup   ─ UnknownDeployableError  ─► log, drop
                           validate ─ MissingDataError        ─► log, drop
                           admit    ─ pool.try_submit()
                                       PoolSaturatedError ─► log pool_saturated,
                                                             wait for room or stop
          finally: broker.close()

Tags:
    deployer, messaging, dispatcher, asyncio
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from deployer.config.store import ConfigurationStore
from deployer.core.errors import (
    DeployerError,
    MessageDecodeError,
    MissingDataError,
    PoolClosedError,
    PoolSaturatedError,
    UnknownDeployableError,
)
from deployer.core.logging import get_logger
from deployer.execution.pool import DeployJob
from deployer.messaging.broker import Broker, Delivery
from deployer.messaging.message import DeployRequest

logger = get_logger(__name__)


class StopReason(str, Enum):
    SHUTDOWN = "shutdown"
    BROKER_ERROR = "broker_error"


class JobSink(Protocol):
    def try_submit(self, job: DeployJob) -> None: ...

    async def submit(self, job: DeployJob) -> None: ...


@dataclass
class DispatchStats:
    received: int = 0
    accepted: int = 0
    invalid: int = 0
    unknown: int = 0
    incomplete: int = 0
    dropped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "accepted": self.accepted,
            "invalid": self.invalid,
            "unknown": self.unknown,
            "incomplete": self.incomplete,
            "dropped": self.dropped,
        }


class Dispatcher:
    """Consumes deploy requests and feeds the worker pool.

    Args:
        store: Source of the current configuration snapshot.
        broker: Connected broker client.
        pool: Worker pool (anything with ``try_submit`` / ``submit``).
    """

    def __init__(self, store: ConfigurationStore, broker: Broker, pool: JobSink) -> None:
        self._store = store
        self._broker = broker
        self._pool = pool
        self._stop = asyncio.Event()
        self._stats = DispatchStats()

    @property
    def stats(self) -> DispatchStats:
        return self._stats

    def stop(self) -> None:
        """Ask the loop to finish; safe to call from a signal handler."""
        if not self._stop.is_set():
            logger.info("dispatcher_stop_requested")
        self._stop.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> StopReason:
        """Dispatch until stopped or the broker fails; closes the broker."""
        reason = StopReason.SHUTDOWN
        stop_wait = asyncio.create_task(self._stop.wait())
        logger.info("dispatcher_started")
        try:
            while not self._stop.is_set():
                receive = asyncio.create_task(self._broker.receive())
                done, _ = await asyncio.wait({receive, stop_wait}, return_when=asyncio.FIRST_COMPLETED)

                if receive not in done:
                    receive.cancel()
                    await asyncio.gather(receive, return_exceptions=True)
                    break

                try:
                    delivery = receive.result()
                except DeployerError as exc:
                    if not exc.fatal:
                        logger.warning("receive_failed", **exc.to_dict())
                        continue
                    logger.error("broker_failed", **exc.to_dict())
                    reason = StopReason.BROKER_ERROR
                    break

                if delivery is not None:
                    await self.handle(delivery, stop_wait)
        finally:
            stop_wait.cancel()
            await asyncio.gather(stop_wait, return_exceptions=True)
            logger.info("dispatcher_exiting", reason=reason.value, **self._stats.to_dict())
            await self._broker.close()
        return reason

    # ------------------------------------------------------------------
    # Per message
    # ------------------------------------------------------------------

    def prepare(self, delivery: Delivery) -> DeployJob:
        """Decode, look up and validate one delivery.

        The pipeline's tag is added to the request data as ``tag``.

        Raises:
            MessageDecodeError: malformed body.
            UnknownDeployableError: no pipeline for the tag.
            MissingDataError: required data keys are absent.
        """
        request = DeployRequest.decode(delivery.body)

        snapshot = self._store.current()
        pipeline = snapshot.get(request.tag)
        if pipeline is None:
            raise UnknownDeployableError(request.tag).with_context(delivery_id=delivery.delivery_id)

        data = dict(request.data)
        data["tag"] = pipeline.tag

        missing = pipeline.missing_data(data)
        if missing:
            raise MissingDataError(pipeline.tag, missing).with_context(delivery_id=delivery.delivery_id)

        return DeployJob(pipeline=pipeline, data=data, delivery_id=delivery.delivery_id)

    async def handle(self, delivery: Delivery, stop_wait: asyncio.Future | None = None) -> bool:
        """Process one delivery; returns True when it was admitted."""
        self._stats.received += 1
        logger.debug(
            "delivery_received",
            delivery_id=delivery.delivery_id,
            received_at=delivery.received_at.isoformat(),
        )

        try:
            job = self.prepare(delivery)
        except MessageDecodeError as exc:
            self._stats.invalid += 1
            logger.error("deploy_message_invalid", delivery_id=delivery.delivery_id, error=exc.message)
            return False
        except UnknownDeployableError as exc:
            self._stats.unknown += 1
            logger.error("unknown_deployable", tag=exc.tag, delivery_id=delivery.delivery_id)
            return False
        except MissingDataError as exc:
            self._stats.incomplete += 1
            logger.error(
                "deployable_missing_data",
                tag=exc.tag,
                delivery_id=delivery.delivery_id,
                missing=exc.missing,
            )
            return False

        return await self._admit(job, stop_wait)

    async def _admit(self, job: DeployJob, stop_wait: asyncio.Future | None) -> bool:
        try:
            self._pool.try_submit(job)
        except PoolSaturatedError as exc:
            logger.warning(
                "pool_saturated",
                tag=job.pipeline.tag,
                delivery_id=job.delivery_id,
                pending=exc.pending,
            )
        except PoolClosedError as exc:
            return self._dropped(job, exc.message)
        else:
            return self._accepted(job)

        # Backpressure: hold the dispatch loop until a slot frees up.
        submit = asyncio.create_task(self._pool.submit(job))
        waiters: set[asyncio.Future] = {submit}
        if stop_wait is not None:
            waiters.add(stop_wait)
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

        if not submit.done():
            submit.cancel()
            await asyncio.gather(submit, return_exceptions=True)
            return self._dropped(job, "shutdown requested while waiting for a worker")

        try:
            submit.result()
        except PoolClosedError as exc:
            return self._dropped(job, exc.message)
        return self._accepted(job)

    def _accepted(self, job: DeployJob) -> bool:
        self._stats.accepted += 1
        logger.info(
            "deploy_accepted",
            tag=job.pipeline.tag,
            delivery_id=job.delivery_id,
            actions=len(job.pipeline.actions),
        )
        return True

    def _dropped(self, job: DeployJob, reason: str) -> bool:
        self._stats.dropped += 1
        logger.warning("deploy_dropped", tag=job.pipeline.tag, delivery_id=job.delivery_id, reason=reason)
        return False
