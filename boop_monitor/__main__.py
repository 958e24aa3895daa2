#!/usr/bin/env python3
"""CLI entry point for the boop session monitor.

Usage:
    python -m boop_monitor [OPTIONS]
    boop-monitor [OPTIONS]

Options:
    --config PATH           Settings file (default: ~/.boop/config.json)
    --socket PATH           Socket for shell hooks (default: ~/.boop/sock)
    --status-file PATH      Status snapshot (default: $XDG_RUNTIME_DIR/boop-status.json)
    --log-level LEVEL       DEBUG, INFO, WARNING or ERROR
    --paused                Start with notifications paused
    --test-notification     Send one test notification and exit
    --dry-run               Validate the settings file and exit
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from . import __version__, configure_logging, get_logger
from .config import (
    SettingsStore,
    get_default_config_path,
    get_default_socket_path,
    get_default_status_path,
    load_settings,
)
from .errors import ConfigError

logger = get_logger()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="boop-monitor",
        description="Boop - phone notifications for Claude Code and Codex CLI sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start with default settings
    boop-monitor

    # Check that the phone receives notifications
    boop-monitor --test-notification

    # Pause or resume a running monitor
    pkill -USR1 -f boop-monitor

Environment Variables:
    BOOP_DIR                Application directory (default: ~/.boop)
    BOOP_SOCKET             Socket path override
    BOOP_CONFIG             Settings file override
    BOOP_STATUS_FILE        Status snapshot override
""",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Settings file (default: ~/.boop/config.json, env: BOOP_CONFIG)",
    )

    parser.add_argument(
        "--socket",
        type=Path,
        default=None,
        help="Unix socket for shell hooks (default: ~/.boop/sock, env: BOOP_SOCKET)",
    )

    parser.add_argument(
        "--status-file",
        type=Path,
        default=None,
        help="Status snapshot for widgets (default: $XDG_RUNTIME_DIR/boop-status.json)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    parser.add_argument(
        "--paused",
        action="store_true",
        help="Start with notifications paused",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--test-notification",
        action="store_true",
        help="Send a test notification and exit (exit code 1 on failure)",
    )
    mode.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the settings file and exit",
    )

    return parser.parse_args(argv)


def dry_run(config_path: Path) -> int:
    try:
        settings = load_settings(config_path, strict=True)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    enabled = [c for c in ("approval", "completed", "error") if getattr(settings.notifications, c).enabled]
    print(f"Config:        {config_path}")
    print(f"ntfy:          {settings.ntfy.subscribe_url}")
    print(f"Notifications: {', '.join(enabled) or 'none'}")
    print(f"Quiet hours:   {f'{settings.quiet_hours.start}-{settings.quiet_hours.end}' if settings.quiet_hours.enabled else 'off'}")
    print(f"Respect DND:   {settings.respect_dnd}")
    print(f"Paused:        {settings.is_paused}")
    return 0


async def send_test_notification(store: SettingsStore) -> int:
    from .dispatcher import NotificationDispatcher

    dispatcher = NotificationDispatcher(store)
    try:
        ok = await dispatcher.send_test_notification()
    finally:
        await dispatcher.stop()

    if ok:
        print(f"Test notification sent to {store.settings.ntfy.subscribe_url}")
        return 0
    print(f"Test notification failed: {dispatcher.last_error}", file=sys.stderr)
    return 1


async def main_async(args: argparse.Namespace, store: SettingsStore) -> int:
    """Async main entry point."""
    # Import here to keep --help and --dry-run fast
    from .daemon import BoopDaemon

    daemon = BoopDaemon(
        store,
        socket_path=args.socket or get_default_socket_path(),
        status_path=args.status_file or get_default_status_path(),
    )
    return await daemon.run()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging(args.log_level)

    config_path = args.config or get_default_config_path()
    if args.dry_run:
        return dry_run(config_path)

    store = SettingsStore(config_path)
    if args.paused:
        store.set_paused(True)

    try:
        if args.test_notification:
            return asyncio.run(send_test_notification(store))
        return asyncio.run(main_async(args, store))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
