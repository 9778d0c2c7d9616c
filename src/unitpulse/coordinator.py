"""Sampling cycles: enumerate, fan out one sampler per service, collect.

A cycle never fails as a whole because one service did. Samplers that raise
are logged and left out; everything that succeeded goes onto the results
queue for the aggregator.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from unitpulse.enumerator import Enumerator
from unitpulse.errors import ConfigurationError, EnumerationFailure, ProcessUnavailable
from unitpulse.models import SampleResult, ServiceIdentity, utcnow
from unitpulse.sampler import CpuSampler

log = structlog.get_logger()


class CoordinatorState(Enum):
    """Where the coordinator is in its loop."""

    IDLE = "idle"
    SAMPLING = "sampling"


@dataclass
class CycleStats:
    """Running totals across cycles."""

    cycles: int = 0
    sampled: int = 0
    failed: int = 0
    last_duration: float = 0.0


class CycleCoordinator:
    """Drives sampling cycles at a fixed interval until shutdown."""

    def __init__(
        self,
        enumerator: Enumerator,
        sampler: CpuSampler,
        window: float,
        interval: float,
        results: asyncio.Queue,
        cycle_timeout: float | None = None,
        on_cycle: Callable[[int, int, float], None] | None = None,
    ) -> None:
        if window <= 0:
            raise ConfigurationError(f"window must be > 0, got {window}")
        if interval <= 0:
            raise ConfigurationError(f"interval must be > 0, got {interval}")
        self.enumerator = enumerator
        self.sampler = sampler
        self.window = window
        self.interval = interval
        self.results = results
        self.cycle_timeout = cycle_timeout or None
        self.on_cycle = on_cycle
        self.state = CoordinatorState.IDLE
        self.stats = CycleStats()

    async def _sample_one(self, identity: ServiceIdentity) -> SampleResult:
        started_at = utcnow()
        usage = await self.sampler.sample(identity.pid, self.window)
        return SampleResult(identity=identity, usage=usage, started_at=started_at)

    async def _gather(
        self, identities: list[ServiceIdentity]
    ) -> list[SampleResult | BaseException]:
        """Run one sampler per identity and collect results in identity order.

        With a cycle timeout, samplers still running at the deadline are
        cancelled and reported as TimeoutError.
        """
        if not identities:
            return []
        tasks = [asyncio.create_task(self._sample_one(i)) for i in identities]
        if self.cycle_timeout is None:
            return await asyncio.gather(*tasks, return_exceptions=True)

        _, pending = await asyncio.wait(tasks, timeout=self.cycle_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: list[SampleResult | BaseException] = []
        for task in tasks:
            if task in pending or task.cancelled():
                outcomes.append(TimeoutError(f"cycle timed out after {self.cycle_timeout:g}s"))
            elif task.exception() is not None:
                outcomes.append(task.exception())
            else:
                outcomes.append(task.result())
        return outcomes

    async def run_cycle(self, shutdown: asyncio.Event | None = None) -> list[SampleResult]:
        """Run one cycle and return the successful samples.

        Successes are also put on the results queue. Per-service failures and
        enumeration failures are logged, never raised. If ``shutdown`` is set
        by the time enumeration finishes, no samplers are launched.
        """
        start = time.monotonic()
        try:
            identities = await self.enumerator.enumerate()
        except EnumerationFailure as e:
            log.error("enumeration_failed", error=str(e))
            return []

        if shutdown is not None and shutdown.is_set():
            return []

        self.state = CoordinatorState.SAMPLING
        try:
            outcomes = await self._gather(identities)
        finally:
            self.state = CoordinatorState.IDLE

        results: list[SampleResult] = []
        for identity, outcome in zip(identities, outcomes):
            if isinstance(outcome, ProcessUnavailable):
                log.info("service_unavailable", service=identity.name, pid=identity.pid,
                         reason=outcome.reason)
                continue
            if isinstance(outcome, BaseException):
                log.warning("sample_failed", service=identity.name, pid=identity.pid,
                            error=str(outcome) or type(outcome).__name__)
                continue
            results.append(outcome)
            await self.results.put(outcome)

        duration = time.monotonic() - start
        self.stats.cycles += 1
        self.stats.sampled += len(results)
        self.stats.failed += len(identities) - len(results)
        self.stats.last_duration = duration
        log.info(
            "cycle_completed",
            services=len(identities),
            succeeded=len(results),
            failed=len(identities) - len(results),
            duration=round(duration, 3),
        )
        if self.on_cycle is not None:
            self.on_cycle(len(identities), len(results), duration)
        return results

    async def run(self, shutdown: asyncio.Event) -> None:
        """Run cycles until shutdown is set.

        Shutdown is checked before every fan-out. A cycle already in flight
        is allowed to finish.
        """
        while not shutdown.is_set():
            await self.run_cycle(shutdown)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
        log.info("coordinator_stopped", cycles=self.stats.cycles)
