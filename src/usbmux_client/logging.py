"""Console output and structlog configuration.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core console functions (log, info, warn, error)
3. Domain-specific helpers used by the CLI (device_line, daemon_unreachable, etc.)
4. Structlog configuration (configure)

Console output uses Rich markup for colors. Library modules log through
structlog; the optional JSON file output is machine-parseable, no colors.
"""

from __future__ import annotations

import logging
import logging.handlers
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from usbmux_client.config import Config

# Rich console for human-readable CLI output
_console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    DEVICE = "📱"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "",
    "warn": "[yellow]Warning:[/]",
    "error": "[bold red]Error:[/]",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a message, warnings and errors to stderr.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show before the message (e.g., Icon.OK)
    """
    parts = [p for p in (_LEVEL_STYLES.get(level, ""), icon, msg) if p]
    console = _console if level == "info" else _err_console
    console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    """Print an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Print a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Print an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def device_line(device_id: str, properties: dict[str, Any]) -> None:
    """Print one attached device."""
    connection_type = properties.get("ConnectionType", "?")
    serial = properties.get("SerialNumber", "")
    info(f"[cyan]{device_id}[/] {connection_type} [dim]{serial}[/]", Icon.DEVICE)


def no_devices() -> None:
    """Print the empty-registry message."""
    info("[dim]No devices attached[/]")


def value_line(key: str, value: Any) -> None:
    """Print one lockdown key/value pair."""
    info(f"[cyan]{key}[/]: {value}")


def daemon_unreachable(address: str, reason: str) -> None:
    """Report that usbmuxd could not be reached."""
    error(f"usbmuxd not reachable at [cyan]{address}[/] [dim]({reason})[/]", Icon.DISCONNECTED)


def config_created(path: str) -> None:
    """Report config file created."""
    info(f"Created config at [cyan]{path}[/]", Icon.OK)


def config_exists(path: str) -> None:
    """Report config file already present."""
    warn(f"Config already exists at [cyan]{path}[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, verbose: bool = False) -> None:
    """Configure structlog on top of stdlib logging.

    Console (stderr) output uses structlog's ConsoleRenderer. When
    ``config.logging.file_logging`` is set, events are also written as JSON
    lines to a rotating file under the state directory.

    Args:
        config: Application config with paths and levels
        verbose: Force debug level regardless of config
    """
    level_name = "debug" if verbose else config.logging.level
    level = getattr(logging, level_name.upper())

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)

    # Clear any existing handlers
    stdlib_root.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(console_handler)

    if config.logging.file_logging:
        config.state_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_path,
            maxBytes=config.logging.log_max_bytes,
            backupCount=config.logging.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _add_source("usbmux-client"),
                    structlog.processors.JSONRenderer(),
                ],
                foreign_pre_chain=[
                    structlog.contextvars.merge_contextvars,
                    structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
                    structlog.processors.add_log_level,
                    structlog.processors.format_exc_info,
                ],
            )
        )
        stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
