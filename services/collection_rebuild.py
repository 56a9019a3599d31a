"""Rebuild the eligible indexes of one collection, largest first."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from config import RebuildConfig
from database.exceptions import UserAbortError
from database.models import CollectionLog, IndexDescriptor, IndexLog, utc_now_iso
from database.mongo_utils import IndexInspector, bytes_to_mb, format_duration, is_ignored
from observability import get_logger
from services.confirmation import Confirmation, Decision
from services.coordinator import notify_coordinator
from services.index_rebuild import IndexRebuildEngine


@dataclass
class CollectionRebuildResult:
    status: str
    log: CollectionLog
    failed_indexes: List[str] = field(default_factory=list)


class CollectionRebuildEngine:
    def __init__(
        self,
        db: Any,
        inspector: IndexInspector,
        index_engine: IndexRebuildEngine,
        state_store: Any,
        config: RebuildConfig,
        *,
        confirmation: Optional[Confirmation] = None,
        coordinator: Any = None,
        logger: Any = None,
    ):
        self._db = db
        self._inspector = inspector
        self._index_engine = index_engine
        self._state_store = state_store
        self._config = config
        self._confirmation = confirmation
        self._coordinator = coordinator
        self._log = logger or get_logger("collection_rebuild")

    def is_processable(self, collection: str, descriptor: IndexDescriptor) -> bool:
        if descriptor.is_id_index or descriptor.unique:
            return False
        if descriptor.name.endswith(self._config.cover_suffix):
            return False
        if is_ignored(descriptor.name, self._config.ignored_indexes):
            return False
        return not self._state_store.state.is_completed(collection, descriptor.name)

    def _from_covering(self, original: str, covering: IndexDescriptor) -> Optional[IndexDescriptor]:
        key = list(covering.key)
        if len(key) < 2 or key[-1][0] != self._config.cheap_suffix_field:
            return None
        options = {}
        if "partialFilterExpression" in covering.options:
            options["partialFilterExpression"] = covering.options["partialFilterExpression"]
        return IndexDescriptor(name=original, key=key[:-1], options=options)

    def missing_originals(
        self, collection: str, descriptors: List[IndexDescriptor]
    ) -> List[IndexDescriptor]:
        """Indexes dropped by an interrupted rebuild and never recreated.

        The checkpointed definition wins; without one the key is read back
        from the covering index, which keeps only the partial filter option.
        """
        present = {d.name for d in descriptors}
        completed = self._state_store.state.completed_for(collection)
        missing: Dict[str, IndexDescriptor] = {}
        for descriptor in self._state_store.in_flight_descriptors(collection):
            if descriptor.name not in present and descriptor.name not in completed:
                missing[descriptor.name] = descriptor

        suffix = self._config.cover_suffix
        for covering in descriptors:
            if not covering.name.endswith(suffix):
                continue
            original = covering.name[: -len(suffix)]
            if not original or original in present or original in completed or original in missing:
                continue
            derived = self._from_covering(original, covering)
            if derived is None:
                continue
            self._log.warning(
                "index_definition_derived_from_covering",
                collection=collection,
                index=original,
                key=[f"{field}:{direction}" for field, direction in derived.key],
            )
            missing[original] = derived

        for name in missing:
            self._log.warning("original_index_missing", collection=collection, index=name)
        return list(missing.values())

    async def plan(
        self, collection: str
    ) -> Tuple[List[Tuple[IndexDescriptor, int]], Dict[str, int]]:
        """Eligible indexes with their sizes (largest first) and all index sizes."""
        descriptors = await self._inspector.list_descriptors(collection)
        sizes = await self._inspector.index_sizes(collection)
        completed = self._state_store.state.completed_for(collection)
        for name in sorted(completed):
            self._log.info("index_already_completed", collection=collection, index=name)
        eligible = [
            (d, int(sizes.get(d.name, 0))) for d in descriptors if self.is_processable(collection, d)
        ]
        # A missing original is restored even when its name matches an ignore pattern
        for descriptor in self.missing_originals(collection, descriptors):
            cover_size = sizes.get(descriptor.name + self._config.cover_suffix, 0)
            eligible.append((descriptor, int(cover_size)))
        eligible.sort(key=lambda item: item[1], reverse=True)
        return eligible, sizes

    async def _ask(self, topic: str, question: str, choices: List[Decision]) -> Decision:
        if not self._config.safe_run or self._confirmation is None:
            return Decision.YES
        return await self._confirmation.ask(topic, question, choices)

    async def rebuild(self, collection: str) -> CollectionRebuildResult:
        started = time.monotonic()
        collection_log = CollectionLog(start_time=utc_now_iso())
        eligible, initial_sizes = await self.plan(collection)
        collection_log.initial_size_mb = bytes_to_mb(sum(initial_sizes.values()))

        if not eligible:
            self._log.info("collection_has_no_rebuild_work", collection=collection)
            return CollectionRebuildResult(status="skipped", log=collection_log)

        self._log.info(
            "collection_rebuild_plan",
            collection=collection,
            indexes=[f"{d.name} (~{bytes_to_mb(size):.3f} MB)" for d, size in eligible],
        )
        await notify_coordinator(
            self._coordinator, "on_collection_start", collection, len(eligible), logger=self._log
        )

        decision = await self._ask(
            "indexes",
            f'Rebuild {len(eligible)} index(es) of "{collection}"?',
            [Decision.YES, Decision.NO, Decision.SPECIFY, Decision.SKIP],
        )
        if decision == Decision.NO:
            raise UserAbortError("User aborted the rebuild", topic="indexes")
        if decision == Decision.SKIP:
            self._log.info("collection_skipped_by_user", collection=collection)
            return CollectionRebuildResult(status="skipped", log=collection_log)
        specify = decision == Decision.SPECIFY

        failed: List[str] = []
        for descriptor, size in eligible:
            if specify:
                answer = await self._ask(
                    "index-specify",
                    f'Process index "{descriptor.name}"?',
                    [Decision.YES, Decision.NO],
                )
                if answer != Decision.YES:
                    self._log.info("index_skipped_by_user", collection=collection, index=descriptor.name)
                    continue

            size_mb = bytes_to_mb(size)
            await notify_coordinator(
                self._coordinator, "on_index_start", collection, descriptor.name, size_mb, logger=self._log
            )
            index_log = await self._index_engine.rebuild(collection, descriptor, size_mb)
            collection_log.indexes[descriptor.name] = index_log
            success = index_log.status == "completed"
            await notify_coordinator(
                self._coordinator,
                "on_index_complete",
                collection,
                descriptor.name,
                index_log.time_seconds,
                success,
                logger=self._log,
            )
            if not success:
                failed.append(descriptor.name)
                await self._record_failure(collection, descriptor.name, index_log, collection_log)

        await self._measure(collection, collection_log)
        collection_log.total_time_seconds = time.monotonic() - started
        await notify_coordinator(
            self._coordinator,
            "on_collection_complete",
            collection,
            collection_log.reclaimed_mb,
            collection_log.total_time_seconds,
            logger=self._log,
        )
        self._log.info(
            "collection_rebuild_done",
            collection=collection,
            duration=format_duration(collection_log.total_time_seconds),
            reclaimed_mb=round(collection_log.reclaimed_mb, 3),
            failed=len(failed),
        )
        return CollectionRebuildResult(status="completed", log=collection_log, failed_indexes=failed)

    async def _record_failure(
        self, collection: str, index: str, index_log: IndexLog, collection_log: CollectionLog
    ) -> None:
        warning = (
            f'Index "{collection}.{index}" failed after {index_log.retries} '
            f"retr{'y' if index_log.retries == 1 else 'ies'}: {index_log.error}"
        )
        collection_log.warnings.append(warning)
        await notify_coordinator(
            self._coordinator,
            "on_error",
            warning,
            {"collection": collection, "index": index, "retries": index_log.retries},
            logger=self._log,
        )

    async def _measure(self, collection: str, collection_log: CollectionLog) -> None:
        """One collStats after the whole collection; index sizes settle only then."""
        try:
            sizes = await self._inspector.index_sizes(collection)
        except PyMongoError as exc:
            warning = f'Could not measure final index sizes of "{collection}": {exc}'
            collection_log.warnings.append(warning)
            self._log.warning("final_measure_failed", collection=collection, error=str(exc))
            collection_log.final_size_mb = collection_log.initial_size_mb
            return
        for name, index_log in collection_log.indexes.items():
            index_log.final_size_mb = bytes_to_mb(sizes.get(name, 0))
        collection_log.final_size_mb = bytes_to_mb(sum(sizes.values()))
        collection_log.reclaimed_mb = collection_log.initial_size_mb - collection_log.final_size_mb
