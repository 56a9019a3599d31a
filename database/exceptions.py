"""Errors raised by the rebuild and compaction engines."""

from __future__ import annotations

from typing import Optional


class MaintenanceError(Exception):
    """Base class for maintenance run failures."""


class UserAbortError(MaintenanceError):
    """The operator answered "no" at a confirmation point."""

    def __init__(self, message: str = "Aborted by user", *, topic: Optional[str] = None):
        super().__init__(message)
        self.topic = topic


class IndexVerificationError(MaintenanceError):
    """An index was created but its definition or build state is wrong."""

    def __init__(self, collection: str, index: str, reason: str):
        super().__init__(f'Index "{collection}.{index}" failed verification: {reason}')
        self.collection = collection
        self.index = index
        self.reason = reason


class UnsupportedServerVersionError(MaintenanceError):
    def __init__(self, found: str, minimum: str):
        super().__init__(f"MongoDB {found} is not supported (minimum {minimum})")
        self.found = found
        self.minimum = minimum


class StateFileError(MaintenanceError):
    """A checkpoint, backup or log file could not be written."""
