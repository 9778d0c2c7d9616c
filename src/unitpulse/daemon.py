"""Background daemon for unitpulse."""

import asyncio
import os
import signal
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from unitpulse import logging as console
from unitpulse.aggregator import Aggregator
from unitpulse.buffer import RowBuffer
from unitpulse.config import Config
from unitpulse.coordinator import CycleCoordinator
from unitpulse.enumerator import Enumerator, ProcessEnumerator, SystemdEnumerator
from unitpulse.sampler import CpuSampler
from unitpulse.server import IngressServer, build_server
from unitpulse.sinks import HttpSink, Sink, SqliteSink

log = structlog.get_logger()

DEFAULT_NODE_TYPE = "unitpulse"
PRUNE_INTERVAL = 86400  # 24 hours


def build_enumerator(config: Config) -> Enumerator:
    """Pick the service source named by ``sampling.source``."""
    if config.sampling.source == "process":
        return ProcessEnumerator(config.sampling.process_patterns)
    return SystemdEnumerator(config.sampling.skip_prefixes)


def build_sinks(config: Config) -> list[Sink]:
    """Instantiate the configured sinks, local database first."""
    sinks: list[Sink] = []
    if config.sinks.sqlite_enabled:
        sinks.append(SqliteSink(config.db_path, config.sinks.default_table))
    if config.sinks.http_url:
        sinks.append(
            HttpSink(
                config.sinks.http_url,
                config.sinks.default_table,
                config.sinks.node_type or DEFAULT_NODE_TYPE,
                timeout=config.upload.sink_timeout,
                fields=config.sinks.http_fields,
            )
        )
    return sinks


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    cycle_count: int = 0
    last_cycle_time: datetime | None = None

    def update_cycle(self) -> None:
        """Update state after a cycle."""
        self.cycle_count += 1
        self.last_cycle_time = datetime.now()


class Daemon:
    """Main daemon class wiring sampling, aggregation, upload and ingress."""

    def __init__(self, config: Config, verbose: bool = False):
        self.config = config
        self.verbose = verbose
        self.state = DaemonState()

        self.sinks = build_sinks(config)
        self.results: asyncio.Queue = asyncio.Queue()
        self.buffer = RowBuffer(config.buffer.size_threshold, config.buffer.time_threshold)
        self.aggregator = Aggregator(
            self.buffer,
            self.sinks,
            self.results,
            hostname=config.hostname,
            cluster_id=config.system.cluster_id,
            event_stream_table=config.sinks.event_stream_table,
            sink_timeout=config.upload.sink_timeout,
            default_event_timeout=config.upload.default_event_timeout,
            idle_tick=config.buffer.idle_tick,
        )
        self.coordinator = CycleCoordinator(
            build_enumerator(config),
            CpuSampler(),
            window=config.sampling.window,
            interval=config.sampling.interval,
            results=self.results,
            cycle_timeout=config.sampling.cycle_timeout,
            on_cycle=self._on_cycle,
        )

        self._shutdown_event = asyncio.Event()
        self._server: IngressServer | None = None
        self._server_task: asyncio.Task | None = None
        self._coordinator_task: asyncio.Task | None = None
        self._aggregator_task: asyncio.Task | None = None
        self._auto_prune_task: asyncio.Task | None = None
        self._pid_written = False

    def _on_cycle(self, services: int, succeeded: int, duration: float) -> None:
        """Per-cycle console output and periodic heartbeat."""
        self.state.update_cycle()
        if self.verbose:
            console.cycle_completed(services, succeeded, duration)
        if self.state.cycle_count % self.config.system.heartbeat_cycles == 0:
            self._heartbeat()

    def _heartbeat(self) -> None:
        health = self.aggregator.health()
        log.info(
            "daemon_heartbeat",
            cycles=self.state.cycle_count,
            sampled=self.coordinator.stats.sampled,
            failed=self.coordinator.stats.failed,
            **health,
        )
        console.heartbeat(
            self.state.cycle_count,
            health["buffered"],
            health["flushes"],
            health["upload_failures"],
        )

    def _watch(self, task: asyncio.Task) -> None:
        """Shut down if a long-running task dies unexpectedly."""
        if task.cancelled() or task.exception() is None:
            return
        log.error("task_crashed", task=task.get_name(), error=str(task.exception()))
        self._shutdown_event.set()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._watch)
        return task

    async def start(self) -> None:
        """Start the daemon and run until shutdown."""
        from importlib.metadata import version

        log.info("daemon_starting", version=version("unitpulse"))
        log.info(
            "daemon_config",
            source=self.config.sampling.source,
            window=self.config.sampling.window,
            interval=self.config.sampling.interval,
            size_threshold=self.config.buffer.size_threshold,
            time_threshold=self.config.buffer.time_threshold,
            sinks=[s.sink_id for s in self.sinks],
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        # Check for existing instance
        pid = self._check_already_running()
        if pid is not None:
            console.already_running(pid)
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))

        if self.config.server.enabled:
            await self._start_server()

        self.state.running = True
        console.daemon_started(self.config.sampling.source, [s.sink_id for s in self.sinks])
        log.info("daemon_started")

        self._aggregator_task = self._spawn(
            self.aggregator.run(self._shutdown_event), "aggregator"
        )
        self._coordinator_task = self._spawn(
            self.coordinator.run(self._shutdown_event), "coordinator"
        )
        if any(isinstance(s, SqliteSink) for s in self.sinks):
            self._auto_prune_task = asyncio.create_task(self._auto_prune())

        await self._shutdown_event.wait()

    async def _start_server(self) -> None:
        """Start the HTTP ingress and wait until it is bound."""
        host, port = self.config.server.host, self.config.server.port
        self._server = build_server(self.aggregator, host, port)
        self._server_task = self._spawn(self._server.serve(), "ingress")
        while not self._server.started:
            if self._server_task.done():
                raise RuntimeError(f"Ingress failed to start on {host}:{port}")
            await asyncio.sleep(0.05)
        console.server_listening(host, port)
        log.info("ingress_listening", host=host, port=port)

    async def stop(self) -> None:
        """Stop the daemon gracefully.

        Order: ingress, coordinator, aggregator (final flush), sinks, PID file.
        """
        console.daemon_stopping()
        log.info("daemon_stopping")
        self.state.running = False
        self._shutdown_event.set()

        if self._server is not None and self._server_task is not None:
            self._server.should_exit = True
            await asyncio.gather(self._server_task, return_exceptions=True)
            self._server = None
            self._server_task = None

        for task in (self._coordinator_task, self._aggregator_task):
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
        self._coordinator_task = None
        self._aggregator_task = None

        await self.aggregator.stop()

        if self._auto_prune_task:
            self._auto_prune_task.cancel()
            try:
                await self._auto_prune_task
            except asyncio.CancelledError:
                pass
            self._auto_prune_task = None

        for sink in self.sinks:
            await sink.close()

        if self._pid_written:
            self._remove_pid_file()

        log.info("daemon_stopped")
        console.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        console.signal_received(sig.name)
        log.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._pid_written = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")
        self._pid_written = False

    def _check_already_running(self) -> int | None:
        """Return the PID of a live daemon, or None.

        Verifies not just that a process with the PID exists, but that it's
        actually a unitpulse daemon. A stale PID file is removed.
        """
        if not self.config.pid_path.exists():
            return None

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return None

        if pid == os.getpid():
            return None

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "unitpulse" in cmdline_str:
                log.info("daemon_already_running_verified", pid=pid)
                return pid
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            self._remove_pid_file()
            return None
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return None
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return pid

    async def _auto_prune(self) -> None:
        """Prune rows older than the retention window once a day."""
        days = self.config.system.retention_days
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=PRUNE_INTERVAL)
                break
            except asyncio.TimeoutError:
                for sink in self.sinks:
                    if isinstance(sink, SqliteSink):
                        deleted = await sink.prune(days)
                        log.info("auto_prune_completed", rows_deleted=deleted, days=days)


async def run_daemon(config: Config | None = None, verbose: bool = False) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        verbose: Log DEBUG events and every cycle
    """
    if config is None:
        config = Config.load()

    console.configure(config, verbose=verbose)

    daemon = Daemon(config, verbose=verbose)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
