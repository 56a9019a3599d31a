"""
Storage compaction of one collection across a replica set.

Manual mode (any version): ``compact`` runs on up to two secondaries per
iteration until the measured ``storageSize`` stops moving (see
``has_converged``). Before 8.0 a primary cannot give back its own freed
pages while serving writes, so the orchestrator may step it down and run
the loop again on the former primary's zone.

8.0+ mode: node-level ``autoCompact`` with ``runOnce``, monitored through
``currentOp`` and always switched off again afterwards.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from pymongo.errors import PyMongoError
from pymongo.read_preferences import Secondary

from config import CompactConfig
from database.models import CollectionCompactLog, CompactErrorRecord, utc_now_iso
from database.mongo_utils import BYTES_PER_MB, bytes_to_mb
from database.version import ServerVersionInfo
from observability import get_logger
from resilience import poll_until

AVAILABILITY_ZONE_TAG = "availabilityZone"
MEMBER_STATE_PRIMARY = 1
MEMBER_STATE_SECONDARY = 2
TARGETS_PER_ITERATION = 2
STEPDOWN_RECONNECT_DELAY_SECONDS = 2.0


def has_converged(measurements: Sequence[float], tolerance: float, min_size: float) -> bool:
    """Decide whether repeated compaction stopped making progress.

    Two identical latest measurements always converge. Otherwise both the
    first and the latest measurement must reach ``min_size`` and the latest
    must lie within ``first * (1 +/- tolerance)``.
    """
    if len(measurements) < 2:
        return False
    if measurements[-1] == measurements[-2]:
        return True
    first, latest = measurements[0], measurements[-1]
    if first < min_size or latest < min_size:
        return False
    return first * (1 - tolerance) <= latest <= first * (1 + tolerance)


@dataclass
class ReplicaMember:
    member_id: Any
    host: str
    state: Optional[int]
    zone: Optional[str] = None

    @property
    def zone_key(self) -> str:
        return self.zone or self.host


@dataclass
class SecondaryTarget:
    zone: str
    host: str
    read_preference: Secondary


@dataclass
class ConvergenceResult:
    measurements: List[int] = field(default_factory=list)
    converged: bool = False
    iterations: int = 0
    errors: List[CompactErrorRecord] = field(default_factory=list)


@dataclass
class StepDownResult:
    success: bool
    former_zone: Optional[str] = None
    former_host: Optional[str] = None


class ReplicaSetTopology:
    """Replica set members joined from ``replSetGetConfig`` and ``replSetGetStatus``."""

    def __init__(self, db: Any, logger: Any = None):
        self._admin = db.client.admin
        self._log = logger or get_logger("topology")

    async def members(self) -> List[ReplicaMember]:
        config = await self._admin.command({"replSetGetConfig": 1})
        status = await self._admin.command({"replSetGetStatus": 1})
        states = {m.get("_id"): m.get("state") for m in (status or {}).get("members") or []}
        members: List[ReplicaMember] = []
        for member in ((config or {}).get("config") or {}).get("members") or []:
            member_id = member.get("_id")
            tags = member.get("tags") or {}
            members.append(
                ReplicaMember(
                    member_id=member_id,
                    host=str(member.get("host") or f"member-{member_id}"),
                    state=states.get(member_id),
                    zone=tags.get(AVAILABILITY_ZONE_TAG),
                )
            )
        return members

    async def primary(self) -> Optional[ReplicaMember]:
        for member in await self.members():
            if member.state == MEMBER_STATE_PRIMARY:
                return member
        return None

    async def secondary_targets(self, preferred_zones: Sequence[str] = ()) -> List[SecondaryTarget]:
        targets: List[SecondaryTarget] = []
        seen_hosts = set()
        for member in await self.members():
            if member.state != MEMBER_STATE_SECONDARY or member.host in seen_hosts:
                continue
            seen_hosts.add(member.host)
            if member.zone:
                read_preference = Secondary(tag_sets=[{AVAILABILITY_ZONE_TAG: member.zone}])
            else:
                read_preference = Secondary()
            targets.append(SecondaryTarget(member.zone_key, member.host, read_preference))
        if preferred_zones:
            preferred = set(preferred_zones)
            targets = [t for t in targets if t.zone in preferred] + [
                t for t in targets if t.zone not in preferred
            ]
        return targets


class CompactionEngine:
    def __init__(
        self,
        db: Any,
        config: CompactConfig,
        version: ServerVersionInfo,
        *,
        topology: Optional[ReplicaSetTopology] = None,
        sleep=asyncio.sleep,
        logger: Any = None,
    ):
        self._db = db
        self._config = config
        self._version = version
        self._log = logger or get_logger("compaction")
        self._topology = topology or ReplicaSetTopology(db, logger=self._log)
        self._sleep = sleep

    @property
    def topology(self) -> ReplicaSetTopology:
        return self._topology

    # --- estimate ---
    async def estimate_savings(self, collection: str) -> int:
        """Reclaimable bytes: dry-run ``compact`` on 8.0+, else collStats."""
        if self._version.at_least(8, 0):
            try:
                result = await self._db.command({"compact": collection, "dryRun": True})
                if (result or {}).get("bytesFreed") is not None:
                    return int(result["bytesFreed"])
            except PyMongoError as exc:
                self._log.debug("compact_dry_run_failed", collection=collection, error=str(exc))
        return await self._estimate_from_coll_stats(collection)

    async def _estimate_from_coll_stats(self, collection: str) -> int:
        try:
            stats = await self._db.command({"collStats": collection})
        except PyMongoError as exc:
            self._log.debug("coll_stats_failed", collection=collection, error=str(exc))
            return 0
        storage_size = int((stats or {}).get("storageSize") or 0)
        data_size = int((stats or {}).get("size") or 0)
        return max(0, storage_size - data_size)

    # --- manual compaction ---
    async def _measure(self, collection: str, target: SecondaryTarget) -> Optional[int]:
        try:
            stats = await self._db.command(
                {"collStats": collection}, read_preference=target.read_preference
            )
        except PyMongoError as exc:
            self._log.debug("measure_failed", collection=collection, zone=target.zone, error=str(exc))
            return None
        return int((stats or {}).get("storageSize") or 0)

    async def _compact_iteration(
        self, collection: str, iteration: int, preferred_zones: Sequence[str]
    ) -> Tuple[Optional[int], List[CompactErrorRecord]]:
        errors: List[CompactErrorRecord] = []
        try:
            targets = await self._topology.secondary_targets(preferred_zones)
        except PyMongoError as exc:
            return None, [CompactErrorRecord(iteration, f"replica set lookup failed: {exc}")]
        if not targets:
            return None, [CompactErrorRecord(iteration, "No active secondary targets available for compact.")]
        if len(targets) < TARGETS_PER_ITERATION:
            self._log.warning("few_secondary_targets", collection=collection, targets=len(targets))

        measured_on: Optional[SecondaryTarget] = None
        for target in targets[:TARGETS_PER_ITERATION]:
            try:
                await self._db.command({"compact": collection}, read_preference=target.read_preference)
            except PyMongoError as exc:
                errors.append(CompactErrorRecord(iteration, f"{target.zone}: {exc}"))
                continue
            self._log.debug("compact_ran", collection=collection, zone=target.zone, iteration=iteration)
            measured_on = measured_on or target

        if measured_on is None:
            return None, errors
        size = await self._measure(collection, measured_on)
        if size is None:
            errors.append(CompactErrorRecord(iteration, f"{measured_on.zone}: collStats failed"))
        return size, errors

    async def compact_until_converged(
        self, collection: str, preferred_zones: Sequence[str] = ()
    ) -> ConvergenceResult:
        result = ConvergenceResult()
        min_size = self._config.min_convergence_size_mb * BYTES_PER_MB
        while result.iterations < self._config.max_iterations:
            result.iterations += 1
            size, errors = await self._compact_iteration(collection, result.iterations, preferred_zones)
            result.errors.extend(errors)
            if size is not None:
                result.measurements.append(size)
                self._log.debug(
                    "compact_measurement",
                    collection=collection,
                    iteration=result.iterations,
                    size_mb=round(bytes_to_mb(size), 1),
                )
                if has_converged(result.measurements, self._config.convergence_tolerance, min_size):
                    result.converged = True
                    break
            await self._sleep(self._config.iteration_delay_seconds)
        return result

    async def compact_collection(
        self,
        collection: str,
        *,
        post_step_down: bool = False,
        preferred_zones: Sequence[str] = (),
    ) -> CollectionCompactLog:
        started = time.monotonic()
        log = CollectionCompactLog(start_time=utc_now_iso())

        if not post_step_down:
            estimated_mb = bytes_to_mb(await self.estimate_savings(collection))
            log.estimated_savings_mb = estimated_mb
            if estimated_mb < self._config.min_savings_mb:
                log.skipped = True
                log.total_time_seconds = time.monotonic() - started
                self._log.info(
                    "compact_skipped_low_savings",
                    collection=collection,
                    estimated_mb=round(estimated_mb),
                    threshold_mb=self._config.min_savings_mb,
                )
                return log
            self._log.info("compact_estimate", collection=collection, estimated_mb=round(estimated_mb))

        result = await self.compact_until_converged(collection, preferred_zones)
        log.measurements = [bytes_to_mb(m) for m in result.measurements]
        log.converged = result.converged
        log.iterations = result.iterations
        log.errors = result.errors
        log.final_measurement_mb = log.measurements[-1] if log.measurements else None
        log.total_time_seconds = time.monotonic() - started
        event = "compact_converged" if result.converged else "compact_not_converged"
        self._log.info(
            event,
            collection=collection,
            iterations=result.iterations,
            measurements_mb=[round(m) for m in log.measurements],
            errors=len(result.errors),
        )
        return log

    # --- primary step-down (pre-8.0) ---
    async def step_down_primary(self) -> StepDownResult:
        try:
            primary = await self._topology.primary()
        except PyMongoError as exc:
            self._log.error("stepdown_primary_lookup_failed", error=str(exc))
            return StepDownResult(False)
        if primary is None:
            self._log.error("stepdown_no_primary")
            return StepDownResult(False)

        timeout = self._config.step_down_timeout_seconds
        self._log.info("stepdown_started", host=primary.host, timeout_seconds=timeout)
        try:
            await self._db.client.admin.command({"replSetStepDown": timeout})
        except PyMongoError as exc:
            # The server closes connections as it steps down
            self._log.debug("stepdown_connection_dropped", error=str(exc))
        await self._sleep(STEPDOWN_RECONNECT_DELAY_SECONDS)

        async def _former_primary_is_secondary() -> bool:
            try:
                members = await self._topology.members()
            except PyMongoError:
                return False
            former = next((m for m in members if m.host == primary.host), None)
            new_primary = any(
                m.state == MEMBER_STATE_PRIMARY and m.host != primary.host for m in members
            )
            return former is not None and former.state == MEMBER_STATE_SECONDARY and new_primary

        settled = await poll_until(
            _former_primary_is_secondary, self._config.settle_policy, sleep=self._sleep
        )
        if settled:
            self._log.info("stepdown_done", host=primary.host, zone=primary.zone_key)
        else:
            self._log.warning("stepdown_not_confirmed", host=primary.host)
        return StepDownResult(settled, former_zone=primary.zone_key, former_host=primary.host)

    # --- autoCompact (8.0+) ---
    async def _auto_compact_running(self, read_preference: Optional[Secondary]) -> bool:
        try:
            current = await self._db.client.admin.command(
                {"currentOp": 1, "active": True}, read_preference=read_preference
            )
        except PyMongoError as exc:
            self._log.debug("current_op_failed", error=str(exc))
            return False
        for op in (current or {}).get("inprog") or []:
            command = op.get("command") or {}
            if "autoCompact" in command or "autoCompact" in str(op.get("desc") or ""):
                return True
        return False

    async def run_auto_compact(self, label: str, read_preference: Optional[Secondary] = None) -> bool:
        """Run one autoCompact pass on a node. False means failed or not finished in time."""
        admin = self._db.client.admin
        self._log.info("auto_compact_enabling", node=label)
        try:
            await admin.command(
                {
                    "autoCompact": True,
                    "freeSpaceTargetMB": self._config.free_space_target_mb,
                    "runOnce": True,
                },
                read_preference=read_preference,
            )

            async def _finished() -> bool:
                return not await self._auto_compact_running(read_preference)

            finished = await poll_until(
                _finished, self._config.poll_policy, wait_first=True, sleep=self._sleep
            )
            if finished:
                self._log.info("auto_compact_done", node=label)
            else:
                self._log.warning(
                    "auto_compact_timeout", node=label, timeout_seconds=self._config.poll_policy.timeout_seconds
                )
            return finished
        except PyMongoError as exc:
            self._log.error("auto_compact_failed", node=label, error=str(exc))
            return False
        finally:
            try:
                await admin.command({"autoCompact": False}, read_preference=read_preference)
                self._log.info("auto_compact_disabled", node=label)
            except PyMongoError as exc:
                self._log.warning("auto_compact_disable_failed", node=label, error=str(exc))
