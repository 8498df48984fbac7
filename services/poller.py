"""Recurring poll cycle over all configured phone identifiers."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Sequence

from datastore.state_store import StateStore, build_default_store
from models.records import PollTarget
from services.errors import NetworkError
from services.extractor import Extractor
from services.fetcher import Fetcher
from services.normalizer import Normalizer
from services.publisher import ReadingPublisher
from settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class TargetOutcome:
    """Result of one identifier within a cycle."""

    phone_id: str
    fetched: bool = False
    reading_count: int = 0
    written: int = 0
    error: Optional[str] = None


@dataclass
class CycleReport:
    """Summary of one pass over all targets."""

    outcomes: List[TargetOutcome] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def connected(self) -> bool:
        return bool(self.outcomes) and all(outcome.fetched for outcome in self.outcomes)


class PollerService:
    """Fetch, extract and publish every target sequentially on a fixed interval."""

    def __init__(
        self,
        targets: Sequence[PollTarget],
        fetcher: Fetcher,
        extractor: Extractor,
        publisher: ReadingPublisher,
        interval: float = 300.0,
    ) -> None:
        self.targets = tuple(targets)
        self.fetcher = fetcher
        self.extractor = extractor
        self.publisher = publisher
        self.interval = interval
        self._task: Optional[asyncio.Task[None]] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the poll loop on the running event loop."""
        if self.running:
            return
        if not self.targets:
            logger.error("No phone identifiers configured; poller stays idle")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run_forever())

    async def stop(self) -> None:
        """Cancel the pending timer and wait for an in-flight cycle to finish."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.fetcher.close()

    async def run_cycle(self) -> CycleReport:
        start_time = time.perf_counter()
        report = CycleReport()
        for target in self.targets:
            report.outcomes.append(await self._poll_target(target))

        self.publisher.publish_connection(report.connected)
        report.duration_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Poll cycle finished",
            extra={
                "reading_count": sum(outcome.reading_count for outcome in report.outcomes),
                "duration_ms": report.duration_ms,
                "status": "connected" if report.connected else "disconnected",
            },
        )
        return report

    async def _run_forever(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_cycle()
            except Exception:  # noqa: BLE001 - the next cycle must still be scheduled
                logger.exception("Poll cycle failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def _poll_target(self, target: PollTarget) -> TargetOutcome:
        outcome = TargetOutcome(phone_id=target.phone_id)
        context = {"phone_id": target.phone_id}
        try:
            markup = await self.fetcher.fetch(target.phone_id)
        except NetworkError as exc:
            outcome.error = str(exc)
            logger.error("Fetch failed: %s", exc, extra=context)
            return outcome
        outcome.fetched = True

        try:
            readings = self.extractor.extract(markup)
        except Exception as exc:  # noqa: BLE001 - one broken page must not stop the cycle
            outcome.error = str(exc)
            logger.exception("Extraction failed", extra=context)
            return outcome

        outcome.reading_count = len(readings)
        if not readings:
            logger.warning("No sensor readings found", extra={**context, "reason": "empty page"})
            return outcome

        for reading in readings:
            for issue in reading.issues:
                logger.warning(
                    "Dropped field %s of %s",
                    issue.key.value,
                    reading.name,
                    extra={**context, "sensor": reading.name, "field": issue.key.value, "reason": issue.reason},
                )
        try:
            outcome.written = self.publisher.publish(target.phone_id, readings)
        except Exception as exc:  # noqa: BLE001 - the remaining identifiers are still polled
            outcome.error = str(exc)
            logger.exception("Publishing failed", extra=context)
            return outcome
        logger.info(
            "Published sensor readings",
            extra={**context, "reading_count": outcome.reading_count},
        )
        return outcome


def build_poller(settings: Settings, store: Optional[StateStore] = None) -> PollerService:
    """Wire a poller from immutable settings."""
    normalizer = Normalizer(settings.wind_unit)
    fetcher = Fetcher(
        hostname=settings.hostname,
        path=settings.path,
        timeout=settings.request_timeout,
        legacy_post=settings.legacy_post,
    )
    publisher = ReadingPublisher(
        store=store if store is not None else build_default_store(),
        normalizer=normalizer,
        show_battery=settings.show_battery,
        show_timestamp=settings.show_timestamp,
    )
    return PollerService(
        targets=settings.poll_targets,
        fetcher=fetcher,
        extractor=Extractor(normalizer),
        publisher=publisher,
        interval=settings.poll_interval,
    )


@lru_cache
def build_default_poller() -> PollerService:
    """Factory that wires the poller from environment settings."""
    return build_poller(get_settings())
