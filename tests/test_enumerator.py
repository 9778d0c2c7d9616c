"""Tests for service enumeration."""

from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from unitpulse.enumerator import (
    ProcessEnumerator,
    SystemdEnumerator,
    parse_main_pids,
    parse_unit_list,
)
from unitpulse.errors import EnumerationFailure
from unitpulse.models import ServiceIdentity

LIST_UNITS = """\
cron.service          loaded active running Regular background program processing daemon
nginx.service         loaded active running A high performance web server
ssh@1-10.0.0.5.service loaded active running OpenBSD Secure Shell server per-connection daemon
oneshot-ish.service   loaded active running Something with no main pid
"""

SHOW = """\
Id=cron.service
MainPID=612

Id=nginx.service
MainPID=1044

Id=oneshot-ish.service
MainPID=0
"""


def _proc(stdout: str, returncode: int = 0, stderr: str = "") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    return proc


def test_parse_unit_list():
    """Only the first column of service lines is kept."""
    units = parse_unit_list(LIST_UNITS + "\nsome.socket loaded active running\n")
    assert units == [
        "cron.service",
        "nginx.service",
        "ssh@1-10.0.0.5.service",
        "oneshot-ish.service",
    ]


def test_parse_main_pids():
    """Blocks separated by blank lines map unit to pid."""
    assert parse_main_pids(SHOW) == {
        "cron.service": 612,
        "nginx.service": 1044,
        "oneshot-ish.service": 0,
    }


def test_parse_main_pids_skips_malformed_blocks():
    """Blocks without an Id or numeric MainPID are ignored."""
    assert parse_main_pids("MainPID=5\n\nId=a.service\nMainPID=\n") == {}


@pytest.mark.asyncio
async def test_systemd_enumerator_skips_prefixes_and_zero_pids():
    """ssh@ sessions and units without a main pid are left out."""
    calls = []

    async def fake_exec(*args, **kwargs):
        calls.append(args)
        return _proc(LIST_UNITS) if args[1] == "list-units" else _proc(SHOW)

    enumerator = SystemdEnumerator(skip_prefixes=["ssh@"])
    with patch("unitpulse.enumerator.asyncio.create_subprocess_exec", side_effect=fake_exec):
        identities = await enumerator.enumerate()

    assert identities == [
        ServiceIdentity("cron.service", 612),
        ServiceIdentity("nginx.service", 1044),
    ]
    show_args = calls[1]
    assert "ssh@1-10.0.0.5.service" not in show_args


@pytest.mark.asyncio
async def test_systemd_enumerator_no_units():
    """An empty unit list doesn't call systemctl show."""
    enumerator = SystemdEnumerator()
    mock_exec = AsyncMock(return_value=_proc(""))
    with patch("unitpulse.enumerator.asyncio.create_subprocess_exec", mock_exec):
        assert await enumerator.enumerate() == []
    assert mock_exec.await_count == 1


@pytest.mark.asyncio
async def test_systemd_enumerator_missing_systemctl():
    """No systemctl binary is an enumeration failure."""
    enumerator = SystemdEnumerator()
    with patch(
        "unitpulse.enumerator.asyncio.create_subprocess_exec",
        AsyncMock(side_effect=FileNotFoundError("systemctl")),
    ):
        with pytest.raises(EnumerationFailure, match="not found"):
            await enumerator.enumerate()


@pytest.mark.asyncio
async def test_systemd_enumerator_nonzero_exit():
    """A failing systemctl is an enumeration failure carrying stderr."""
    enumerator = SystemdEnumerator()
    failing = _proc("", returncode=1, stderr="Failed to connect to bus")
    with patch(
        "unitpulse.enumerator.asyncio.create_subprocess_exec", AsyncMock(return_value=failing)
    ):
        with pytest.raises(EnumerationFailure, match="Failed to connect to bus"):
            await enumerator.enumerate()


@pytest.mark.asyncio
async def test_process_enumerator_matches_substrings():
    """Name patterns match case-insensitively as substrings."""
    procs = []
    for pid, name in [(10, "postgres"), (11, "Redis-Server"), (12, "bash"), (13, None)]:
        p = MagicMock()
        p.info = {"pid": pid, "name": name}
        procs.append(p)

    enumerator = ProcessEnumerator(["postgres", "redis"])
    with patch("unitpulse.enumerator.psutil.process_iter", return_value=procs):
        identities = await enumerator.enumerate()

    assert identities == [ServiceIdentity("postgres", 10), ServiceIdentity("Redis-Server", 11)]


@pytest.mark.asyncio
async def test_process_enumerator_failure():
    """psutil errors during the scan become EnumerationFailure."""
    enumerator = ProcessEnumerator(["x"])
    with patch(
        "unitpulse.enumerator.psutil.process_iter", side_effect=psutil.AccessDenied()
    ):
        with pytest.raises(EnumerationFailure):
            await enumerator.enumerate()
