"""
Full compaction run over one database.

Not checkpointed: ``compact`` and ``autoCompact`` are idempotent, so an
interrupted run is simply started again (at-least-once per collection).
"""

from __future__ import annotations

import asyncio
import time
import traceback
from typing import Any, List, Optional

from config import DEFAULT_RUNTIME_DIR, CompactConfig
from database.exceptions import UserAbortError
from database.models import CollectionCompactLog, CompactDatabaseLog
from database.mongo_utils import format_duration, resolve_cluster_name, select_collections
from database.version import ServerVersionInfo, VersionProbe, require_minimum_version
from observability import emit_event, get_logger
from services.compaction import CompactionEngine
from services.confirmation import Confirmation, ConsoleConfirmation, Decision
from services.coordinator import notify_coordinator
from services.state_store import StateStore


class DatabaseCompactionOrchestrator:
    def __init__(
        self,
        db: Any,
        config: CompactConfig,
        *,
        confirmation: Optional[Confirmation] = None,
        coordinator: Any = None,
        state_store: Optional[StateStore] = None,
        engine: Optional[CompactionEngine] = None,
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
        self._engine = engine
        self._sleep = sleep
        self._log = logger or get_logger("compact", database=config.db_name)

    async def _ask(self, topic: str, question: str, choices: List[Decision]) -> Decision:
        if self._confirmation is None:
            return Decision.YES
        return await self._confirmation.ask(topic, question, choices)

    async def _use_auto_compact(self, version: ServerVersionInfo, has_filters: bool) -> bool:
        config = self._config
        if not version.at_least(8, 0):
            return False
        if config.force_manual_compact:
            self._log.info("manual_compact_forced")
            return False
        enabled = config.auto_compact if config.auto_compact is not None else True
        if not enabled or not has_filters:
            return enabled
        # autoCompact works node-wide and cannot honour collection filters
        if self._confirmation is None:
            self._log.warning("collection_filters_force_manual_compact")
            return False
        answer = await self._ask(
            "autocompact-filters",
            "Collection filters are set but autoCompact is node-wide. Use manual compact instead?",
            [Decision.YES, Decision.NO],
        )
        if answer == Decision.YES:
            return False
        self._log.warning("auto_compact_ignores_filters")
        return True

    async def run(self) -> CompactDatabaseLog:
        config = self._config
        started = time.monotonic()
        cluster = await resolve_cluster_name(self._db, config.cluster_name, logger=self._log)
        store = self._state_store or StateStore(
            cluster,
            DEFAULT_RUNTIME_DIR,
            config.log_dir,
            kind="compact",
            performance_logging=config.performance_logging,
            logger=self._log,
        )
        db_log = CompactDatabaseLog(cluster_name=cluster, db_name=config.db_name)
        emit_event("compact_started", database=config.db_name, cluster=cluster)

        try:
            version = await VersionProbe(self._db, logger=self._log).detect()
            db_log.mongo_version = version.full
            db_log.supports_auto_compact = version.at_least(8, 0)
            require_minimum_version(version)
            engine = self._engine or CompactionEngine(
                self._db, config, version, sleep=self._sleep, logger=self._log
            )

            names = await self._db.list_collection_names()
            selected = select_collections(names, config.specified_collections, config.ignored_collections)
            if not selected:
                db_log.error = "No collections match the specified criteria."
                self._log.error("no_collections_selected")
                return self._finish(store, db_log, started)
            self._log.info(
                "compact_plan",
                collections=selected,
                min_savings_mb=config.min_savings_mb,
                tolerance=config.convergence_tolerance,
                min_convergence_size_mb=config.min_convergence_size_mb,
            )
            answer = await self._ask(
                "compact-collections",
                f"Compact {len(selected)} collection(s)?",
                [Decision.YES, Decision.NO],
            )
            if answer != Decision.YES:
                raise UserAbortError("User aborted the compaction", topic="compact-collections")

            has_filters = bool(config.specified_collections or config.ignored_collections)
            use_auto = await self._use_auto_compact(version, has_filters)

            if use_auto:
                for name in selected:
                    db_log.collections[name] = CollectionCompactLog()
            else:
                for name in selected:
                    collection_log = await engine.compact_collection(name)
                    db_log.collections[name] = collection_log
                    for error in collection_log.errors:
                        await notify_coordinator(
                            self._coordinator,
                            "on_error",
                            f'Compact of "{name}" iteration {error.iteration}: {error.error}',
                            {"collection": name, "iteration": error.iteration},
                            logger=self._log,
                        )

            force_stepdown = (
                config.force_stepdown if config.force_stepdown is not None else not version.at_least(8, 0)
            )
            if not use_auto and not version.at_least(8, 0) and force_stepdown:
                await self._step_down_phase(engine, db_log, selected)

            if use_auto:
                await self._auto_compact_phase(engine, db_log, selected)
        except UserAbortError as exc:
            self._log.warning("compact_aborted", reason=str(exc))
            db_log.warnings.append(f"User aborted: {exc}")
            return self._finish(store, db_log, started)
        except Exception as exc:
            db_log.error = str(exc)
            db_log.error_stack = traceback.format_exc()
            emit_event("compact_failed", severity="critical", database=config.db_name, error=str(exc))
            try:
                self._finish(store, db_log, started)
            except Exception as write_exc:
                self._log.error("partial_log_write_failed", error=str(write_exc))
            await notify_coordinator(
                self._coordinator,
                "on_error",
                f"Compaction of {config.db_name} failed: {exc}",
                {"database": config.db_name},
                logger=self._log,
            )
            raise

        self._finish(store, db_log, started)
        emit_event(
            "compact_finished",
            database=config.db_name,
            collections=len(db_log.collections),
            stepped_down=db_log.stepped_down,
            duration=format_duration(db_log.total_time_seconds),
        )
        return db_log

    async def _step_down_phase(
        self, engine: CompactionEngine, db_log: CompactDatabaseLog, names: List[str]
    ) -> None:
        compacted = [n for n in names if not db_log.collections[n].skipped]
        if not compacted:
            self._log.info("stepdown_not_needed")
            return
        answer = await self._ask(
            "stepdown",
            "Step down the primary so it can be compacted as a secondary?",
            [Decision.YES, Decision.NO],
        )
        if answer != Decision.YES:
            self._log.info("stepdown_declined")
            return
        result = await engine.step_down_primary()
        db_log.stepped_down = result.success
        if not result.success:
            db_log.warnings.append("Primary step-down could not be confirmed; primary not compacted")
            return
        preferred = [result.former_zone] if result.former_zone else []
        for name in compacted:
            existing = db_log.collections[name]
            again = await engine.compact_collection(name, post_step_down=True, preferred_zones=preferred)
            existing.measurements.extend(again.measurements)
            existing.iterations += again.iterations
            existing.errors.extend(again.errors)
            existing.converged = again.converged
            existing.stepped_down = True
            if again.final_measurement_mb is not None:
                existing.final_measurement_mb = again.final_measurement_mb
            existing.total_time_seconds += again.total_time_seconds

    async def _auto_compact_phase(
        self, engine: CompactionEngine, db_log: CompactDatabaseLog, names: List[str]
    ) -> None:
        targets = await engine.topology.secondary_targets()
        if len(targets) < 2:
            db_log.warnings.append(
                "Fewer than 2 distinct secondary targets found. AutoCompact will run on available nodes only."
            )
        primary_done = await engine.run_auto_compact("primary")
        for target in targets:
            if not await engine.run_auto_compact(target.zone, target.read_preference):
                db_log.warnings.append(f"AutoCompact did not complete on {target.zone}")
        if not primary_done:
            db_log.warnings.append("AutoCompact did not complete on primary")
        for name in names:
            collection_log = db_log.collections.setdefault(name, CollectionCompactLog())
            collection_log.auto_compact_enabled = True
            collection_log.auto_compact_completed = primary_done

    def _finish(self, store: StateStore, db_log: CompactDatabaseLog, started: float) -> CompactDatabaseLog:
        db_log.total_time_seconds = time.monotonic() - started
        store.write_performance_log(db_log.to_dict())
        return db_log
