"""Boop session monitor.

A local daemon that receives lifecycle events from shell-wrapped AI coding
assistants (Claude Code, Codex CLI) over a Unix socket, tracks each session's
state and pushes a remote notification through an ntfy-compatible server when
a session needs attention.

Architecture:
    - asyncio Unix socket server fed by shell hooks (one event per line)
    - Single delivery queue in front of the session registry
    - Notification policy with pause, debounce, quiet hours and DND gates
    - Best-effort HTTP push via aiohttp, with periodic health probing
    - Status snapshot written to $XDG_RUNTIME_DIR for panel widgets

Modules:
    - models: Pydantic data models (Session, SessionState, lifecycle events)
    - protocol: Wire codec for structured and legacy event lines
    - config: Settings models, loader and topic generator
    - socket_server: Unix socket server with line framing and self-healing
    - session_registry: Session state machine and queries
    - dispatcher: Notification policy and push delivery
    - dnd: Do-not-disturb probe for SwayNC
    - output: Status snapshot writer
    - client: Event emitter for the shell side
    - daemon: Component wiring and signal handling
"""

import logging

__version__ = "0.3.0"

__all__ = [
    "__version__",
    "configure_logging",
    "get_logger",
]


def configure_logging(
    level: str = "INFO",
    format_string: str | None = None,
) -> logging.Logger:
    """Configure package-level logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string. Defaults to standard format
            with timestamp, level, module, and message.

    Returns:
        Configured logger instance for the boop_monitor package.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

    logger = logging.getLogger("boop_monitor")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))
    logger.addHandler(handler)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance for the boop_monitor package.

    Args:
        name: Optional submodule name. If provided, returns
            logger named 'boop_monitor.{name}'. If None,
            returns the root package logger.
    """
    if name:
        return logging.getLogger(f"boop_monitor.{name}")
    return logging.getLogger("boop_monitor")
