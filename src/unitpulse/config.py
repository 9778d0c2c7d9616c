"""Configuration system for unitpulse."""

import os
import socket
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any

import tomlkit

from unitpulse.errors import ConfigurationError

ENV_PREFIX = "UNITPULSE_"
VALID_SOURCES = {"systemd", "process"}


@dataclass
class SamplingConfig:
    """Sampling cycle configuration."""

    window: float = 2.0  # Seconds each sampler measures for
    interval: float = 3.0  # Seconds between the end of one cycle and the next
    cycle_timeout: float = 0.0  # Cap on a whole cycle (0 = wait for every sampler)
    source: str = "systemd"  # "systemd" units or "process" name patterns
    process_patterns: list[str] = field(default_factory=list)
    skip_prefixes: list[str] = field(default_factory=lambda: ["ssh@"])


@dataclass
class BufferConfig:
    """Row buffer flush thresholds."""

    size_threshold: int = 1000  # Flush once this many rows are buffered
    time_threshold: float = 10.0  # Flush once this many seconds passed since last flush
    idle_tick: float = 1.0  # Seconds between time-only flush checks with no input


@dataclass
class UploadConfig:
    """Upload timeouts."""

    sink_timeout: float = 5.0  # Per-sink timeout for buffered batches
    default_event_timeout: float = 5.0  # Immediate events without a usable upload_timeout


@dataclass
class SinksConfig:
    """Where batches go."""

    sqlite_enabled: bool = True
    http_url: str = ""  # Remote ingress, e.g. http://collector:9123/events
    default_table: str = "systemd_monitor_data"  # Table for rows that don't name one
    event_stream_table: str = "event_stream"  # Table for per-event stream records
    node_type: str = ""  # Role reported to the remote ingress
    http_fields: list[str] = field(default_factory=list)  # Extra fields kept (empty = all)


@dataclass
class ServerConfig:
    """HTTP ingress configuration."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9123


@dataclass
class SystemConfig:
    """Daemon housekeeping."""

    hostname: str = ""  # Override for the hostname stamped on rows
    cluster_id: str = ""  # When set, every ingress event also writes a stream record
    heartbeat_cycles: int = 20  # Log heartbeat every N cycles
    retention_days: int = 30  # Stored rows older than this are pruned
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


SECTIONS = ("sampling", "buffer", "upload", "sinks", "server", "system")


@dataclass
class Config:
    """Main configuration container."""

    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    sinks: SinksConfig = field(default_factory=SinksConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "unitpulse"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "unitpulse"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "unitpulse"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file, cleared on reboot."""
        return Path("/tmp/unitpulse")

    @property
    def db_path(self) -> Path:
        """SQLite sink database path."""
        return self.data_dir / "rows.db"

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def hostname(self) -> str:
        """Hostname stamped on sampled rows."""
        if self.system.hostname:
            return self.system.hostname
        try:
            return socket.gethostname() or "<undefined>"
        except OSError:
            return "<undefined>"

    def validate(self) -> "Config":
        """Check value ranges. Returns self so it chains after load().

        Raises:
            ConfigurationError: On the first invalid value.
        """
        s = self.sampling
        if s.window <= 0:
            raise ConfigurationError(f"sampling.window must be > 0, got {s.window}")
        if s.interval <= 0:
            raise ConfigurationError(f"sampling.interval must be > 0, got {s.interval}")
        if s.cycle_timeout < 0:
            raise ConfigurationError(
                f"sampling.cycle_timeout must be >= 0, got {s.cycle_timeout}"
            )
        if s.source not in VALID_SOURCES:
            raise ConfigurationError(
                f"Invalid sampling.source: {s.source!r}. Must be one of {sorted(VALID_SOURCES)}"
            )
        if s.source == "process" and not s.process_patterns:
            raise ConfigurationError("sampling.process_patterns is required for source 'process'")

        b = self.buffer
        if b.size_threshold < 1:
            raise ConfigurationError(f"buffer.size_threshold must be >= 1, got {b.size_threshold}")
        if b.time_threshold <= 0:
            raise ConfigurationError(
                f"buffer.time_threshold must be > 0, got {b.time_threshold}"
            )
        if b.idle_tick <= 0:
            raise ConfigurationError(f"buffer.idle_tick must be > 0, got {b.idle_tick}")

        u = self.upload
        if u.sink_timeout <= 0:
            raise ConfigurationError(f"upload.sink_timeout must be > 0, got {u.sink_timeout}")
        if u.default_event_timeout <= 0:
            raise ConfigurationError(
                f"upload.default_event_timeout must be > 0, got {u.default_event_timeout}"
            )

        if not self.sinks.default_table:
            raise ConfigurationError("sinks.default_table must not be empty")
        if self.system.cluster_id and not self.sinks.event_stream_table:
            raise ConfigurationError(
                "sinks.event_stream_table must not be empty when system.cluster_id is set"
            )

        if not 1 <= self.server.port <= 65535:
            raise ConfigurationError(f"server.port must be 1-65535, got {self.server.port}")
        if self.system.retention_days < 1:
            raise ConfigurationError(
                f"system.retention_days must be >= 1, got {self.system.retention_days}"
            )
        return self

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in SECTIONS:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None, env: dict[str, str] | None = None) -> "Config":
        """Load config from TOML file and environment, then validate.

        All defaults come from the dataclass definitions. Environment variables
        named ``UNITPULSE_<SECTION>_<KEY>`` override file values.

        Raises:
            ConfigurationError: If the file can't be parsed or a value is invalid.
        """
        defaults = cls()
        path = path or defaults.config_path
        data: dict[str, Any] = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = tomlkit.load(f).unwrap()
            except tomlkit.exceptions.TOMLKitError as e:
                raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e

        env = os.environ if env is None else env
        sections = {}
        for name in SECTIONS:
            section_defaults = getattr(defaults, name)
            section_data = dict(data.get(name, {}))
            section_data.update(_env_overrides(name, section_defaults, env))
            sections[name] = _load_section(section_defaults, section_data, name)

        return cls(**sections).validate()


def _load_section(defaults: Any, data: dict[str, Any], name: str) -> Any:
    """Overlay TOML/env values on a section's dataclass defaults."""
    known = {f.name for f in fields(defaults)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in [{name}]: {sorted(unknown)}")
    values = {}
    for key, value in data.items():
        expected = getattr(defaults, key)
        values[key] = _coerce(value, expected, f"{name}.{key}")
    return replace(defaults, **values)


def _coerce(value: Any, expected: Any, key: str) -> Any:
    """Coerce a TOML or environment value to the type of its default."""
    try:
        if isinstance(expected, bool):
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered not in {"1", "0", "true", "false", "yes", "no"}:
                    raise ValueError(value)
                return lowered in {"1", "true", "yes"}
            return bool(value)
        if isinstance(expected, int):
            return int(value)
        if isinstance(expected, float):
            return float(value)
        if isinstance(expected, list):
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return list(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {key}: {value!r}") from e


def _env_overrides(section: str, defaults: Any, env: Any) -> dict[str, str]:
    """Collect UNITPULSE_<SECTION>_<KEY> variables for one section."""
    overrides = {}
    for f in fields(defaults):
        var = f"{ENV_PREFIX}{section.upper()}_{f.name.upper()}"
        if var in env and env[var] != "":
            overrides[f.name] = env[var]
    return overrides
