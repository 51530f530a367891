"""Queue drain scheduling.

Every trigger (connectivity restored, periodic tick, explicit command) ends in
the same ``SyncScheduler.drain_queue`` call. Trigger sources are pluggable so
a host without background signals can provide its own polling.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Set

import httpx

from shared.db_operations import ShareQueue, StorageUnavailable
from shared.models import DeliveryOutcome, DrainSummary, TriggerKind
from services.share_receiver.delivery import DeliveryClient

logger = logging.getLogger(__name__)


class TriggerSource(ABC):
    """A source of drain triggers, run as a background task."""

    name = "trigger"

    @abstractmethod
    async def run(self, scheduler: "SyncScheduler") -> None:
        """Fire triggers on the scheduler until cancelled."""


class PeriodicTrigger(TriggerSource):
    """Fires a periodic drain every ``interval`` seconds."""

    name = "periodic"

    def __init__(self, interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval

    async def run(self, scheduler: "SyncScheduler") -> None:
        while True:
            await asyncio.sleep(self.interval)
            await asyncio.shield(scheduler.trigger(TriggerKind.PERIODIC))


class ConnectivityTrigger(TriggerSource):
    """
    Fires one drain each time the ingestion API becomes reachable again.

    The link is probed every ``poll_interval`` seconds. A drain fires on an
    offline to online transition only; ``arm()`` marks the link offline so
    the next successful probe fires.
    """

    name = "connectivity"

    def __init__(self, probe_client: httpx.AsyncClient, health_url: str, poll_interval: float):
        self.probe_client = probe_client
        self.health_url = health_url
        self.poll_interval = poll_interval
        self.offline = False

    def arm(self) -> None:
        self.offline = True

    async def probe(self) -> bool:
        """Check whether the ingestion API answers its health endpoint."""
        try:
            response = await self.probe_client.get(self.health_url, timeout=5.0)
        except httpx.TransportError as e:
            logger.debug(f"Connectivity probe failed: {e!r}")
            return False
        return response.status_code < 500

    async def check(self, scheduler: "SyncScheduler") -> Optional[DrainSummary]:
        """Probe once and drain if connectivity was just restored."""
        online = await self.probe()
        if not online:
            if not self.offline:
                logger.info("Ingestion API unreachable, waiting for connectivity")
            self.offline = True
            return None

        if self.offline:
            self.offline = False
            logger.info("Connectivity restored")
            return await asyncio.shield(scheduler.trigger(TriggerKind.CONNECTIVITY_RESTORED))
        return None

    async def run(self, scheduler: "SyncScheduler") -> None:
        while True:
            await self.check(scheduler)
            await asyncio.sleep(self.poll_interval)


class SyncScheduler:
    """Drains the offline share queue in response to triggers."""

    def __init__(
        self,
        queue: ShareQueue,
        delivery: DeliveryClient,
        sources: Iterable[TriggerSource] = ()
    ):
        """
        Initialize the scheduler.

        Args:
            queue: Offline share queue
            delivery: Delivery client used for each queued entry
            sources: Trigger sources started by ``start()``
        """
        self.queue = queue
        self.delivery = delivery
        self.sources: List[TriggerSource] = list(sources)
        self._tasks: List[asyncio.Task] = []
        self._drains: Set[asyncio.Task] = set()

    def trigger(self, trigger: TriggerKind) -> "asyncio.Task[DrainSummary]":
        """
        Start a drain in its own task and return it.

        Drains started this way are not cancelled by ``stop()``; a delivery
        in flight always runs to completion.
        """
        task = asyncio.create_task(self.drain_queue(trigger), name=f"share-drain-{trigger.value}")
        self._drains.add(task)
        task.add_done_callback(self._drains.discard)
        return task

    async def drain_queue(self, trigger: TriggerKind) -> DrainSummary:
        """
        Attempt delivery of every queued share.

        The entry list is read once; each entry is attempted independently so
        one failure never blocks the rest. Concurrent drains are safe but may
        both deliver the same entry.

        Args:
            trigger: What started this drain

        Returns:
            DrainSummary with attempted, delivered and still-pending counts
        """
        summary = DrainSummary(trigger=trigger)

        try:
            entries = await asyncio.to_thread(self.queue.list_all)
        except StorageUnavailable as e:
            logger.error(f"Cannot drain share queue ({trigger.value}): {e}")
            return summary

        if not entries:
            logger.debug(f"Share queue empty ({trigger.value})")
            return summary

        logger.info(f"Draining share queue ({trigger.value}): {len(entries)} entries")

        for entry in entries:
            summary.attempted += 1
            try:
                outcome = await self.delivery.deliver_queued(entry)
            except Exception as e:
                logger.error(f"Error delivering queued share {entry.id}: {e}", exc_info=True)
                outcome = DeliveryOutcome.NETWORK_FAILURE

            if outcome == DeliveryOutcome.SUCCESS:
                summary.delivered += 1
            else:
                summary.pending += 1

        logger.info(
            f"Share queue drain ({trigger.value}) finished: "
            f"{summary.delivered} delivered, {summary.pending} pending"
        )
        return summary

    def register_sync(self) -> None:
        """Ask connectivity sources to drain as soon as the link is back."""
        for source in self.sources:
            if isinstance(source, ConnectivityTrigger):
                source.arm()

    def start(self) -> None:
        """Start every trigger source as a background task."""
        for source in self.sources:
            task = asyncio.create_task(self._run_source(source), name=f"share-sync-{source.name}")
            self._tasks.append(task)
        logger.info(f"Sync scheduler started with {len(self._tasks)} trigger source(s)")

    async def stop(self) -> None:
        """Cancel the trigger source tasks and wait for drains in flight."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._drains:
            logger.info(f"Waiting for {len(self._drains)} drain(s) in flight")
            await asyncio.gather(*list(self._drains), return_exceptions=True)
        logger.info("Sync scheduler stopped")

    async def _run_source(self, source: TriggerSource) -> None:
        while True:
            try:
                await source.run(self)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Trigger source {source.name} crashed, restarting: {e}", exc_info=True)
                await asyncio.sleep(1.0)
