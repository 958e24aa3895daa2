"""Exceptions raised by the boop monitor."""

from pathlib import Path
from typing import Optional


class BoopError(Exception):
    """Base class for monitor errors."""


class BindError(BoopError):
    """The local socket could not be created, bound or put into listen mode."""

    def __init__(self, path: Path, reason: str, cause: Optional[BaseException] = None) -> None:
        self.path = path
        self.reason = reason
        self.cause = cause
        super().__init__(f"Failed to bind socket at {path}: {reason}")


class ConfigError(BoopError):
    """The settings file exists but could not be read or validated."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid configuration in {path}: {reason}")
