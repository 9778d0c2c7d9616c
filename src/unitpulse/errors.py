"""Error kinds raised across the sampling and upload pipeline."""

from __future__ import annotations

from dataclasses import dataclass


class UnitpulseError(Exception):
    """Base class for all unitpulse errors."""


class ConfigurationError(UnitpulseError, ValueError):
    """Invalid threshold, window or path configuration. Fatal at startup."""


class ProcessUnavailable(UnitpulseError):
    """The sampled process vanished or could not be queried mid-measurement."""

    def __init__(self, pid: int, reason: str = "process not found") -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(f"pid {pid}: {reason}")


class EnumerationFailure(UnitpulseError):
    """The process enumerator could not produce the service set for a cycle."""


class ValidationFailure(UnitpulseError):
    """Malformed ingress input. Rejected before it reaches the buffer."""


@dataclass(frozen=True)
class SinkFailure:
    """One sink's rejection or timeout for one batch."""

    sink_id: str
    message: str

    def __str__(self) -> str:
        return f"sink {self.sink_id}: {self.message}"


class UploadError(UnitpulseError):
    """One or more sinks failed to accept a batch.

    Every configured sink was attempted; ``failures`` holds only the ones that
    failed, in sink order.
    """

    def __init__(self, failures: list[SinkFailure]) -> None:
        self.failures = list(failures)
        super().__init__("; ".join(str(f) for f in self.failures))


class ShuttingDown(UnitpulseError):
    """Input arrived after the aggregator stopped accepting it."""
