"""
Removal of covering indexes left behind by an interrupted rebuild.

Strict mode (a ``completed`` map is given) only drops a covering index whose
original index is recorded as completed; anything else may still be the
only usable copy of an index whose swap never finished. Aggressive mode
(``completed is None``) drops every index carrying the covering suffix.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

from database.exceptions import UserAbortError
from database.models import OrphanedIndex
from database.mongo_utils import IndexInspector
from observability import emit_event, get_logger
from services.confirmation import Confirmation, Decision


class OrphanReclaimer:
    def __init__(
        self,
        db: Any,
        cover_suffix: str,
        *,
        confirmation: Optional[Confirmation] = None,
        logger: Any = None,
    ):
        if not cover_suffix:
            raise ValueError("cover_suffix must not be empty")
        self._db = db
        self._suffix = cover_suffix
        self._confirmation = confirmation
        self._log = logger or get_logger("orphan_reclaimer")
        self._inspector = IndexInspector(db, logger=self._log)

    async def find(
        self,
        collections: Optional[Iterable[str]] = None,
        completed: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> List[OrphanedIndex]:
        if collections is None:
            collections = await self._db.list_collection_names()
        orphans: List[OrphanedIndex] = []
        for collection in collections:
            done = set(completed.get(collection, ())) if completed is not None else None
            for descriptor in await self._inspector.list_descriptors(collection):
                name = descriptor.name
                if not name.endswith(self._suffix) or name == self._suffix:
                    continue
                if done is not None and name[: -len(self._suffix)] not in done:
                    continue
                orphans.append(OrphanedIndex(collection=collection, index=name))
        return orphans

    async def reclaim(
        self,
        collections: Optional[Iterable[str]] = None,
        completed: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> List[OrphanedIndex]:
        mode = "strict" if completed is not None else "aggressive"
        orphans = await self.find(collections, completed)
        if not orphans:
            self._log.info("no_orphaned_indexes", mode=mode)
            return []

        self._log.warning(
            "orphaned_indexes_found",
            mode=mode,
            count=len(orphans),
            indexes=[f"{o.collection}.{o.index}" for o in orphans],
        )
        if self._confirmation is not None:
            decision = await self._confirmation.ask(
                "orphan-cleanup",
                f"Drop {len(orphans)} orphaned covering index(es)?",
                [Decision.YES, Decision.NO],
            )
            if decision != Decision.YES:
                raise UserAbortError("User aborted orphaned index cleanup", topic="orphan-cleanup")

        removed: List[OrphanedIndex] = []
        for orphan in orphans:
            if await self._inspector.drop_index_if_exists(orphan.collection, orphan.index):
                self._log.info("orphaned_index_dropped", collection=orphan.collection, index=orphan.index)
            else:
                self._log.info("orphaned_index_already_gone", collection=orphan.collection, index=orphan.index)
            removed.append(orphan)
        emit_event("orphan_cleanup_done", mode=mode, removed=len(removed))
        return removed
