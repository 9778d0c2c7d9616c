"""Shared test fixtures for unitpulse."""

import asyncio
from collections.abc import Sequence
from contextlib import ExitStack
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from unitpulse.config import Config
from unitpulse.models import CPUUsage, Row, ServiceIdentity
from unitpulse.storage import init_database


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path."""
    # fmt: off
    stack.enter_context(patch.object(
        Config, "config_dir",
        new_callable=lambda: property(lambda self: base_path / "config")
    ))
    stack.enter_context(patch.object(
        Config, "data_dir",
        new_callable=lambda: property(lambda self: base_path)
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    stack.enter_context(patch.object(
        Config, "db_path",
        new_callable=lambda: property(lambda self: base_path / "test.db")
    ))
    stack.enter_context(patch.object(
        Config, "pid_path",
        new_callable=lambda: property(lambda self: base_path / "daemon.pid")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Patch all Config path properties to use tmp_path.

    Yields the base path for tests that need to reference it directly.
    """
    with ExitStack() as stack:
        _patch_config_paths(stack, tmp_path)
        yield tmp_path


def make_usage(user: float = 10.0, system: float = 5.0) -> CPUUsage:
    """Create a CPUUsage whose total is user + system."""
    return CPUUsage.from_parts(user, system)


def make_row(
    service_name: str = "nginx.service",
    instance: str = "1234",
    user: float = 10.0,
    system: float = 5.0,
    hostname: str = "host-a",
    timestamp: datetime | None = None,
    **extra,
) -> Row:
    """Create a Row for testing."""
    return Row(
        service_name=service_name,
        instance=instance,
        user_pct=user,
        system_pct=system,
        total_pct=user + system,
        hostname=hostname,
        timestamp=timestamp or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc),
        extra=extra,
    )


def make_identity(name: str = "nginx.service", pid: int = 1234) -> ServiceIdentity:
    """Create a ServiceIdentity for testing."""
    return ServiceIdentity(name=name, pid=pid)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    """Sink that keeps every batch it receives."""

    accepted_fields = None

    def __init__(self, sink_id: str = "recording"):
        self.sink_id = sink_id
        self.batches: list[list[Row]] = []
        self.closed = False

    @property
    def rows(self) -> list[Row]:
        return [row for batch in self.batches for row in batch]

    async def put(self, rows: Sequence[Row]) -> None:
        self.batches.append(list(rows))

    async def close(self) -> None:
        self.closed = True


class FailingSink(RecordingSink):
    """Sink that rejects every batch (after recording the attempt)."""

    def __init__(self, sink_id: str = "failing", message: str = "disk full"):
        super().__init__(sink_id)
        self.message = message
        self.attempts = 0

    async def put(self, rows: Sequence[Row]) -> None:
        self.attempts += 1
        raise RuntimeError(self.message)


class SlowSink(RecordingSink):
    """Sink that takes `delay` seconds per batch."""

    def __init__(self, sink_id: str = "slow", delay: float = 10.0):
        super().__init__(sink_id)
        self.delay = delay

    async def put(self, rows: Sequence[Row]) -> None:
        await asyncio.sleep(self.delay)
        await super().put(rows)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(interval)
