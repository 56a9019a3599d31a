"""
Lifecycle hooks for an optional external observer of a rebuild run.

Subclass ``RebuildCoordinator`` and override what you need; every hook is a
no-op by default. Hooks may be sync or async. ``notify_coordinator`` is the
only way the engines call them: a failing hook is logged at debug level and
never interrupts the run.
"""

from __future__ import annotations

import inspect
from typing import Any, Dict, Optional

from observability import get_logger


class RebuildCoordinator:
    async def on_rebuild_start(self, db_name: str, collection_count: int) -> None:
        return None

    async def on_collection_start(self, collection: str, index_count: int) -> None:
        return None

    async def on_index_start(self, collection: str, index: str, size_mb: float) -> None:
        return None

    async def on_index_complete(
        self, collection: str, index: str, seconds: float, success: bool
    ) -> None:
        return None

    async def on_collection_complete(
        self, collection: str, reclaimed_mb: float, seconds: float
    ) -> None:
        return None

    async def on_rebuild_complete(
        self,
        db_name: str,
        total_reclaimed_mb: float,
        seconds: float,
        success: bool,
        warning: Optional[str] = None,
    ) -> None:
        return None

    async def on_error(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        return None


async def notify_coordinator(
    coordinator: Any, hook: str, *args: Any, logger: Any = None, **kwargs: Any
) -> None:
    if coordinator is None:
        return
    method = getattr(coordinator, hook, None)
    if not callable(method):
        return
    try:
        result = method(*args, **kwargs)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        (logger or get_logger("coordinator")).debug(
            "coordinator_hook_failed", hook=hook, error=str(exc)
        )
