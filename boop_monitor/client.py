"""Event emitter for the shell side of the socket.

Hook scripts and wrappers use send_events() to report session lifecycle to a
running monitor. A monitor that is not running is not an error: the events
are dropped and False is returned.

Example:
    >>> await send_events(socket_path, [StartEvent(session_id="s1", tool="claude",
    ...                                            project_name="demo", pid=42)])
"""

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from .config import get_default_socket_path
from .errors import BoopError
from .models import LifecycleEvent
from .protocol import encode

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 1.0


def _to_line(item: Union[LifecycleEvent, str]) -> str:
    if isinstance(item, str):
        return item if item.endswith("\n") else item + "\n"
    return encode(item)


def is_available(socket_path: Optional[Path] = None) -> bool:
    return (socket_path or get_default_socket_path()).exists()


async def send_events(
    socket_path: Optional[Path],
    events: Iterable[Union[LifecycleEvent, str]],
    timeout: float = DEFAULT_TIMEOUT_SEC,
) -> bool:
    """Write events to the monitor socket over one connection.

    Args:
        socket_path: Monitor socket; defaults to ~/.boop/sock
        events: Events to encode, or raw lines sent as-is (newline added)
        timeout: Seconds allowed for connecting and writing

    Returns:
        True if the events were written, False if no monitor is listening

    Raises:
        BoopError: If the connection or write fails for another reason
    """
    path = socket_path or get_default_socket_path()
    payload = "".join(_to_line(item) for item in events).encode("utf-8")

    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(path)), timeout=timeout
        )
    except (FileNotFoundError, ConnectionRefusedError):
        logger.debug(f"No monitor listening on {path}, dropping events")
        return False
    except (OSError, asyncio.TimeoutError) as e:
        raise BoopError(f"Failed to connect to socket {path}: {e!r}") from e

    try:
        writer.write(payload)
        await asyncio.wait_for(writer.drain(), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        raise BoopError(f"Failed to send events to {path}: {e!r}") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing connection to {path}: {e}")

    return True
