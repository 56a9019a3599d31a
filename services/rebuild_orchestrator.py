"""
Full rebuild run over one database.

Order of work: open session -> strict orphan cleanup -> version check ->
index backup -> collection selection -> per-collection rebuild (checkpoint
after every index, cumulative log after every collection) -> summary. The
checkpoint and backup are deleted only when nothing failed and no dropped
index is still waiting to be recreated.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from typing import Any, Dict, List, Optional, Tuple

from config import RebuildConfig
from database.exceptions import UserAbortError
from database.models import DatabaseLog, RebuildState, utc_now_iso
from database.mongo_utils import (
    IndexInspector,
    bytes_to_mb,
    format_duration,
    resolve_cluster_name,
    select_collections,
)
from database.version import OptionFilter, VersionProbe, require_minimum_version
from observability import emit_event, get_logger
from services.collection_rebuild import CollectionRebuildEngine
from services.confirmation import Confirmation, ConsoleConfirmation, Decision
from services.coordinator import notify_coordinator
from services.index_rebuild import IndexRebuildEngine
from services.orphan_reclaimer import OrphanReclaimer
from services.state_store import StateStore


class DatabaseRebuildOrchestrator:
    def __init__(
        self,
        db: Any,
        config: RebuildConfig,
        *,
        confirmation: Optional[Confirmation] = None,
        coordinator: Any = None,
        state_store: Optional[StateStore] = None,
        sleep=asyncio.sleep,
        logger: Any = None,
    ):
        self._db = db
        self._config = config
        if confirmation is None and config.safe_run:
            confirmation = ConsoleConfirmation()
        self._confirmation = confirmation if config.safe_run else None
        self._coordinator = coordinator
        self._state_store = state_store
        self._sleep = sleep
        self._log = logger or get_logger("rebuild", database=config.db_name)

    async def _ask(self, topic: str, question: str, choices: List[Decision]) -> Decision:
        if self._confirmation is None:
            return Decision.YES
        return await self._confirmation.ask(topic, question, choices)

    async def _open_store(self) -> StateStore:
        if self._state_store is not None:
            return self._state_store
        cluster = await resolve_cluster_name(self._db, self._config.cluster_name, logger=self._log)
        self._state_store = StateStore(
            cluster,
            self._config.runtime_dir,
            self._config.log_dir,
            kind="rebuild",
            performance_logging=self._config.performance_logging,
            save_collection_log=self._config.save_collection_log,
            logger=self._log,
        )
        return self._state_store

    async def _discover(self, inspector: IndexInspector) -> Tuple[Dict[str, List[Dict[str, Any]]], Dict[str, int]]:
        """Index definitions of every collection and the total index size of each."""
        definitions: Dict[str, List[Dict[str, Any]]] = {}
        totals: Dict[str, int] = {}
        for name in await self._db.list_collection_names():
            if name.startswith("system."):
                continue
            definitions[name] = await self._db[name].list_indexes().to_list(length=None)
            totals[name] = sum((await inspector.index_sizes(name)).values())
        return definitions, totals

    def _add_in_flight_definitions(
        self, definitions: Dict[str, List[Dict[str, Any]]], state: RebuildState
    ) -> None:
        # Older backups get pruned; keep dropped-but-not-recreated indexes in the new one
        for name, docs in definitions.items():
            present = {doc.get("name") for doc in docs}
            for index, document in state.in_progress_for(name).items():
                if index not in present:
                    docs.append(dict(document))

    async def _choose_collections(self, ordered: List[str], totals: Dict[str, int]) -> List[str]:
        self._log.info(
            "collections_to_process",
            collections=[f"{n} (~{bytes_to_mb(totals.get(n, 0)):.3f} MB)" for n in ordered],
        )
        decision = await self._ask(
            "collections",
            f"Rebuild indexes of {len(ordered)} collection(s)?",
            [Decision.YES, Decision.NO, Decision.SPECIFY],
        )
        if decision == Decision.NO:
            raise UserAbortError("User aborted before any collection was processed", topic="collections")
        if decision != Decision.SPECIFY:
            return ordered
        chosen: List[str] = []
        for name in ordered:
            answer = await self._ask(
                "collection-specify",
                f'Process collection "{name}"?',
                [Decision.YES, Decision.NO, Decision.END],
            )
            if answer == Decision.END:
                break
            if answer == Decision.YES:
                chosen.append(name)
        return chosen

    async def run(self) -> DatabaseLog:
        config = self._config
        started = time.monotonic()
        store = await self._open_store()
        state = store.load()

        db_log = DatabaseLog(cluster_name=store.cluster_name, db_name=config.db_name)
        previous_seconds = 0.0
        if state.cumulative_log is not None:
            previous = state.cumulative_log
            previous_seconds = previous.total_time_seconds
            db_log.start_time = previous.start_time
            db_log.collections = previous.collections
            db_log.warnings = list(previous.warnings)
            self._log.info(
                "cumulative_log_loaded",
                previous_sessions=len(state.sessions),
                previous_seconds=round(previous_seconds, 1),
                previous_reclaimed_mb=round(previous.total_reclaimed_mb, 2),
            )
        store.start_session()
        emit_event("rebuild_started", database=config.db_name, cluster=store.cluster_name)

        def _finish(status: str) -> None:
            store.finish_session(status)
            db_log.total_time_seconds = previous_seconds + (time.monotonic() - started)
            db_log.recompute_totals()
            db_log.session_history = list(store.state.sessions)

        try:
            inspector = IndexInspector(self._db, logger=self._log, sleep=self._sleep)

            reclaimer = OrphanReclaimer(
                self._db, config.cover_suffix, confirmation=self._confirmation, logger=self._log
            )
            await reclaimer.reclaim(completed=state.completed)

            version = await VersionProbe(self._db, logger=self._log).detect()
            db_log.mongo_version = version.full
            require_minimum_version(version)
            option_filter = OptionFilter(version, logger=self._log)

            definitions, totals = await self._discover(inspector)
            self._add_in_flight_definitions(definitions, state)
            store.write_backup(definitions)
            store.prune_stale_runtime_files()

            if config.specified_collections and config.ignored_collections:
                warning = "specified_collections overrides ignored_collections"
                self._log.warning("collection_filters_conflict")
                db_log.add_warning(warning)
            selected = select_collections(
                definitions.keys(), config.specified_collections, config.ignored_collections
            )
            if not selected:
                db_log.error = "No collections match the specified criteria."
                self._log.error("no_collections_selected")
                _finish("completed")
                store.save()
                self._write_log(store, db_log)
                return db_log
            ordered = sorted(selected, key=lambda n: totals.get(n, 0), reverse=True)
            chosen = await self._choose_collections(ordered, totals)

            await notify_coordinator(
                self._coordinator, "on_rebuild_start", config.db_name, len(chosen), logger=self._log
            )
            index_engine = IndexRebuildEngine(
                self._db,
                inspector,
                option_filter,
                store,
                cover_suffix=config.cover_suffix,
                cheap_suffix_field=config.cheap_suffix_field,
                retry_policy=config.retry_policy,
                ready_policy=config.ready_policy,
                sleep=self._sleep,
                logger=self._log,
            )
            collection_engine = CollectionRebuildEngine(
                self._db,
                inspector,
                index_engine,
                store,
                config,
                confirmation=self._confirmation,
                coordinator=self._coordinator,
                logger=self._log,
            )

            failed_total = 0
            for name in chosen:
                result = await collection_engine.rebuild(name)
                if result.status == "skipped":
                    continue
                failed_total += len(result.failed_indexes)
                merged = db_log.merge_collection(name, result.log)
                for warning in result.log.warnings:
                    db_log.add_warning(warning)
                store.save_cumulative(db_log)
                store.write_collection_log(name, merged.to_dict())
        except UserAbortError as exc:
            self._log.warning("rebuild_aborted", reason=str(exc))
            db_log.add_warning(f"User aborted: {exc}")
            _finish("aborted")
            store.save_cumulative(db_log)
            self._write_log(store, db_log)
            await notify_coordinator(
                self._coordinator,
                "on_rebuild_complete",
                config.db_name,
                db_log.total_reclaimed_mb,
                db_log.total_time_seconds,
                False,
                warning=str(exc),
                logger=self._log,
            )
            return db_log
        except Exception as exc:
            db_log.error = str(exc)
            db_log.error_stack = traceback.format_exc()
            emit_event("rebuild_failed", severity="critical", database=config.db_name, error=str(exc))
            _finish("failed")
            try:
                store.save_cumulative(db_log)
                self._write_log(store, db_log)
            except Exception as write_exc:
                self._log.error("partial_log_write_failed", error=str(write_exc))
            await notify_coordinator(
                self._coordinator,
                "on_error",
                f"Rebuild of {config.db_name} failed: {exc}",
                {"database": config.db_name},
                logger=self._log,
            )
            await notify_coordinator(
                self._coordinator,
                "on_rebuild_complete",
                config.db_name,
                db_log.total_reclaimed_mb,
                db_log.total_time_seconds,
                False,
                logger=self._log,
            )
            raise

        _finish("completed" if failed_total == 0 else "failed")
        warning = None
        pending = store.state.in_progress_count()
        if failed_total:
            warning = f"{failed_total} index(es) failed; run again to retry them"
        elif pending:
            warning = f"{pending} dropped index(es) not yet recreated; run again to restore them"
            db_log.add_warning(warning)
        clean = failed_total == 0 and pending == 0
        if warning:
            store.save_cumulative(db_log)
        self._write_log(store, db_log)
        self._log_summary(db_log)
        await notify_coordinator(
            self._coordinator,
            "on_rebuild_complete",
            config.db_name,
            db_log.total_reclaimed_mb,
            db_log.total_time_seconds,
            clean,
            warning=warning,
            logger=self._log,
        )
        if clean:
            store.delete_checkpoint()
            store.delete_backup()
        else:
            self._log.warning(
                "checkpoint_kept",
                failed_indexes=failed_total,
                in_flight=pending,
                path=str(store.state_file),
            )
        emit_event(
            "rebuild_finished",
            database=config.db_name,
            reclaimed_mb=round(db_log.total_reclaimed_mb, 2),
            failed_indexes=failed_total,
            finished_at=utc_now_iso(),
        )
        return db_log

    def _write_log(self, store: StateStore, db_log: DatabaseLog) -> None:
        store.write_performance_log(db_log.to_dict())

    def _log_summary(self, db_log: DatabaseLog) -> None:
        self._log.info(
            "rebuild_summary",
            duration=format_duration(db_log.total_time_seconds),
            initial_mb=round(db_log.total_initial_size_mb, 2),
            final_mb=round(db_log.total_final_size_mb, 2),
            reclaimed_mb=round(db_log.total_reclaimed_mb, 2),
            collections=len(db_log.collections),
            warnings=len(db_log.warnings),
        )
        if len(db_log.session_history) > 1:
            self._log.info(
                "multi_session_summary",
                sessions=len(db_log.session_history),
                indexes_rebuilt=sum(s.indexes_rebuilt for s in db_log.session_history),
                history=[
                    f"{s.session_id}: {s.status}, {s.indexes_rebuilt} index(es), "
                    f"{format_duration(s.total_time_seconds)}"
                    for s in db_log.session_history
                ],
            )
