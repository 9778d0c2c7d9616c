"""Per-process CPU sampling over a fixed window."""

import asyncio
from dataclasses import dataclass

import psutil
import structlog

from unitpulse.errors import ProcessUnavailable
from unitpulse.models import CPUUsage

log = structlog.get_logger()

# Fields of psutil.cpu_times() already included in user/nice on Linux
_GUEST_FIELDS = ("guest", "guest_nice")


@dataclass(frozen=True)
class _CpuTimes:
    """Process and system CPU counters at one instant, in seconds."""

    pid_user: float
    pid_system: float
    cpu_total: float


def _total_cpu_time(times) -> float:
    """Sum system-wide CPU time across all states."""
    total = sum(times)
    for name in _GUEST_FIELDS:
        total -= getattr(times, name, 0.0)
    return total


def calc_cpu_usage(before: _CpuTimes, after: _CpuTimes, core_count: int) -> CPUUsage:
    """Finite-difference CPU usage between two snapshots.

    ``pct = core_count * Δprocess_time * 100 / Δtotal_system_time``, computed
    for user and system time separately.
    """
    delta_total = after.cpu_total - before.cpu_total
    if delta_total <= 0:
        return CPUUsage.from_parts(0.0, 0.0)

    scale = core_count * 100 / delta_total
    user = (after.pid_user - before.pid_user) * scale
    system = (after.pid_system - before.pid_system) * scale
    return CPUUsage.from_parts(user, system)


class CpuSampler:
    """Measures one process's CPU usage over a window of real time.

    The only suspension point is the window itself, so many samplers can run
    concurrently on one event loop.
    """

    def __init__(self, core_count: int | None = None) -> None:
        self.core_count = core_count or psutil.cpu_count() or 1

    def _snapshot(self, proc: psutil.Process) -> _CpuTimes:
        try:
            times = proc.cpu_times()
        except psutil.ZombieProcess as e:
            raise ProcessUnavailable(proc.pid, "zombie") from e
        except psutil.NoSuchProcess as e:
            raise ProcessUnavailable(proc.pid, "process exited") from e
        except psutil.AccessDenied as e:
            raise ProcessUnavailable(proc.pid, "access denied") from e
        return _CpuTimes(
            pid_user=times.user,
            pid_system=times.system,
            cpu_total=_total_cpu_time(psutil.cpu_times()),
        )

    async def sample(self, pid: int, window: float) -> CPUUsage:
        """Sample ``pid`` for ``window`` seconds.

        Raises:
            ValueError: If window is not positive.
            ProcessUnavailable: If the process can't be queried at either end.
        """
        if window <= 0:
            raise ValueError(f"Sampling window must be positive, got {window}")

        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess as e:
            raise ProcessUnavailable(pid) from e

        before = self._snapshot(proc)
        await asyncio.sleep(window)
        after = self._snapshot(proc)

        usage = calc_cpu_usage(before, after, self.core_count)
        log.debug(
            "cpu_sampled",
            pid=pid,
            user=round(usage.user_pct, 2),
            system=round(usage.system_pct, 2),
            total=round(usage.total_pct, 2),
        )
        return usage
