"""Configuration system for usbmux-client."""

import sys
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

VALID_TRANSPORTS = {"auto", "unix", "tcp"}
VALID_LOG_LEVELS = {"debug", "info", "warning", "error"}


@dataclass(frozen=True)
class DaemonAddress:
    """Resolved address of the multiplexer daemon.

    Exactly one of ``socket_path`` or ``host``/``port`` is used.
    """

    socket_path: str | None = None
    host: str | None = None
    port: int | None = None

    @property
    def is_unix(self) -> bool:
        return self.socket_path is not None

    def __str__(self) -> str:
        if self.socket_path is not None:
            return self.socket_path
        return f"{self.host}:{self.port}"


@dataclass
class DaemonConfig:
    """Where the multiplexer daemon listens."""

    transport: str = "auto"  # "auto" picks tcp on Windows, unix elsewhere
    socket_path: str = "/var/run/usbmuxd"
    host: str = "127.0.0.1"
    port: int = 27015


@dataclass
class ProtocolConfig:
    """Multiplexer wire protocol settings."""

    client_version_string: str = "usbmux-client"
    prog_name: str = "usbmux-client"
    header_version: int = 0  # Header "version" field, some daemons document 1
    tag: int = 1  # Echoed back by the daemon, not otherwise used
    settle_delay: float = 0.02  # Seconds to let queued Attached events land after Listen
    max_payload_size: int = 16 * 1024 * 1024  # Larger declared payloads are malformed


@dataclass
class LockdownConfig:
    """Lockdown property-query settings."""

    label: str = "usbmux-client"
    port: int = 62078
    service_type: str = "com.apple.mobile.lockdown"


@dataclass
class LoggingConfig:
    """Log output settings."""

    level: str = "warning"
    file_logging: bool = False  # Also write JSON lines to log_path
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


@dataclass
class Config:
    """Main configuration container."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    lockdown: LockdownConfig = field(default_factory=LockdownConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "usbmux-client"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "usbmux-client"

    @property
    def log_path(self) -> Path:
        """Client log path."""
        return self.state_dir / "client.log"

    def daemon_address(self, platform: str | None = None) -> DaemonAddress:
        """Resolve the daemon address for this platform.

        Args:
            platform: Override for ``sys.platform`` (used by tests)
        """
        transport = self.daemon.transport
        if transport == "auto":
            platform = platform or sys.platform
            transport = "tcp" if platform == "win32" else "unix"
        if transport == "tcp":
            return DaemonAddress(host=self.daemon.host, port=self.daemon.port)
        return DaemonAddress(socket_path=self.daemon.socket_path)

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("daemon", "protocol", "lockdown", "logging"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() of an empty file are identical.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            daemon=_load_daemon_config(data.get("daemon", {})),
            protocol=_load_protocol_config(data.get("protocol", {})),
            lockdown=_load_lockdown_config(data.get("lockdown", {})),
            logging=_load_logging_config(data.get("logging", {})),
        )


def _load_daemon_config(data: dict) -> DaemonConfig:
    """Load daemon config from TOML data, using dataclass defaults for missing fields."""
    defaults = DaemonConfig()

    transport = data.get("transport", defaults.transport)
    if transport not in VALID_TRANSPORTS:
        raise ValueError(f"Invalid transport: {transport!r}. Must be one of {VALID_TRANSPORTS}")

    port = data.get("port", defaults.port)
    if not 0 < port < 65536:
        raise ValueError(f"port must be between 1 and 65535, got {port}")

    return DaemonConfig(
        transport=transport,
        socket_path=data.get("socket_path", defaults.socket_path),
        host=data.get("host", defaults.host),
        port=port,
    )


def _load_protocol_config(data: dict) -> ProtocolConfig:
    """Load protocol config from TOML data."""
    defaults = ProtocolConfig()

    settle_delay = data.get("settle_delay", defaults.settle_delay)
    if settle_delay < 0:
        raise ValueError(f"settle_delay must be >= 0, got {settle_delay}")

    max_payload_size = data.get("max_payload_size", defaults.max_payload_size)
    if max_payload_size < 1:
        raise ValueError(f"max_payload_size must be >= 1, got {max_payload_size}")

    return ProtocolConfig(
        client_version_string=data.get(
            "client_version_string", defaults.client_version_string
        ),
        prog_name=data.get("prog_name", defaults.prog_name),
        header_version=data.get("header_version", defaults.header_version),
        tag=data.get("tag", defaults.tag),
        settle_delay=settle_delay,
        max_payload_size=max_payload_size,
    )


def _load_lockdown_config(data: dict) -> LockdownConfig:
    """Load lockdown config from TOML data."""
    d = LockdownConfig()
    return LockdownConfig(
        label=data.get("label", d.label),
        port=data.get("port", d.port),
        service_type=data.get("service_type", d.service_type),
    )


def _load_logging_config(data: dict) -> LoggingConfig:
    """Load logging config from TOML data."""
    defaults = LoggingConfig()

    level = data.get("level", defaults.level)
    if level not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level!r}. Must be one of {VALID_LOG_LEVELS}")

    return LoggingConfig(
        level=level,
        file_logging=data.get("file_logging", defaults.file_logging),
        log_max_bytes=data.get("log_max_bytes", defaults.log_max_bytes),
        log_backup_count=data.get("log_backup_count", defaults.log_backup_count),
    )
