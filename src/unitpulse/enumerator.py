"""Discovery of the services to sample each cycle.

Two variants share the ``Enumerator`` interface: systemd service units
(main PID per running unit) and arbitrary processes matched by name. The
daemon picks one from ``sampling.source``; nothing downstream inspects which.
"""

import asyncio
from typing import Protocol

import psutil
import structlog

from unitpulse.errors import EnumerationFailure
from unitpulse.models import ServiceIdentity

log = structlog.get_logger()

SYSTEMCTL = "systemctl"


class Enumerator(Protocol):
    """Produces the current set of monitored services."""

    async def enumerate(self) -> list[ServiceIdentity]:
        """Return the services to sample this cycle.

        Raises:
            EnumerationFailure: If the service set can't be determined.
        """
        ...


def parse_unit_list(output: str) -> list[str]:
    """Extract unit names from ``systemctl list-units --plain --no-legend``."""
    units = []
    for line in output.splitlines():
        parts = line.split()
        if parts and parts[0].endswith(".service"):
            units.append(parts[0])
    return units


def parse_main_pids(output: str) -> dict[str, int]:
    """Parse ``systemctl show -p Id -p MainPID`` blocks into {unit: pid}."""
    result: dict[str, int] = {}
    for block in output.strip().split("\n\n"):
        props = {}
        for line in block.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                props[key.strip()] = value.strip()
        unit = props.get("Id")
        pid_text = props.get("MainPID", "")
        if not unit or not pid_text.isdigit():
            continue
        result[unit] = int(pid_text)
    return result


class SystemdEnumerator:
    """Running systemd service units and their main PIDs."""

    def __init__(self, skip_prefixes: list[str] | None = None, timeout: float = 10.0) -> None:
        self.skip_prefixes = tuple(skip_prefixes or ())
        self.timeout = timeout

    async def _systemctl(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                SYSTEMCTL,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise EnumerationFailure("systemctl not found") from e
        except OSError as e:
            raise EnumerationFailure(f"Unable to run systemctl: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise EnumerationFailure(f"systemctl {args[0]} timed out") from e

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise EnumerationFailure(
                f"systemctl {args[0]} exited {proc.returncode}: {message}"
            )
        return stdout.decode("utf-8", errors="replace")

    async def enumerate(self) -> list[ServiceIdentity]:
        """List running services with a non-zero main PID."""
        listing = await self._systemctl(
            "list-units",
            "--type=service",
            "--state=running",
            "--no-legend",
            "--plain",
            "--no-pager",
        )
        units = [u for u in parse_unit_list(listing) if not u.startswith(self.skip_prefixes)]
        if not units:
            return []

        shown = await self._systemctl("show", "--property=Id,MainPID", "--no-pager", *units)
        identities = []
        for unit, pid in parse_main_pids(shown).items():
            if pid == 0:
                log.debug("unit_skipped", unit=unit, reason="MainPID is 0")
                continue
            identities.append(ServiceIdentity(name=unit, pid=pid))
        return identities


class ProcessEnumerator:
    """Processes whose name contains one of the configured patterns."""

    def __init__(self, patterns: list[str]) -> None:
        self.patterns = [p.lower() for p in patterns]

    def _matches(self, name: str) -> bool:
        lowered = name.lower()
        return any(p in lowered for p in self.patterns)

    def _enumerate_sync(self) -> list[ServiceIdentity]:
        identities = []
        try:
            for proc in psutil.process_iter(["pid", "name"]):
                name = proc.info.get("name") or ""
                if name and self._matches(name):
                    identities.append(ServiceIdentity(name=name, pid=proc.info["pid"]))
        except psutil.Error as e:
            raise EnumerationFailure(f"Unable to list processes: {e}") from e
        return identities

    async def enumerate(self) -> list[ServiceIdentity]:
        """Scan the process table (blocking, so off the event loop)."""
        return await asyncio.to_thread(self._enumerate_sync)
