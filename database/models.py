"""Records persisted by the rebuild/compaction runs.

All ``to_dict`` / ``from_dict`` pairs use the camelCase keys of the checkpoint
and performance-log JSON files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

ID_INDEX_NAME = "_id_"

KNOWN_INDEX_OPTIONS = (
    "unique",
    "expireAfterSeconds",
    "partialFilterExpression",
    "sparse",
    "storageEngine",
    "weights",
    "default_language",
    "language_override",
    "textIndexVersion",
    "2dsphereIndexVersion",
    "bits",
    "min",
    "max",
    "bucketSize",
    "collation",
    "wildcardProjection",
    "hidden",
    "columnstoreProjection",
)

BUILD_MARKER_KEYS = ("buildUUID", "buildState")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _round_mb(value: float) -> float:
    return round(float(value or 0.0), 2)


@dataclass
class IndexDescriptor:
    """One index definition as returned by ``listIndexes``."""

    name: str
    key: List[Tuple[str, Any]]
    options: Dict[str, Any] = field(default_factory=dict)
    building: bool = False

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "IndexDescriptor":
        # listIndexes with includeBuildUUIDs wraps in-progress builds as {spec, buildUUID}
        spec = doc.get("spec") if isinstance(doc.get("spec"), Mapping) else doc
        key_doc = spec.get("key") or {}
        options = {k: spec[k] for k in KNOWN_INDEX_OPTIONS if k in spec}
        building = any(k in doc for k in BUILD_MARKER_KEYS) or any(
            k in spec for k in BUILD_MARKER_KEYS
        )
        return cls(
            name=str(spec.get("name")),
            key=[(str(k), v) for k, v in key_doc.items()],
            options=options,
            building=building,
        )

    @property
    def is_id_index(self) -> bool:
        return self.name == ID_INDEX_NAME

    @property
    def unique(self) -> bool:
        return bool(self.options.get("unique"))

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"name": self.name, "key": dict(self.key)}
        doc.update(self.options)
        return doc


@dataclass(frozen=True)
class OrphanedIndex:
    collection: str
    index: str


@dataclass
class IndexLog:
    start_time: str = field(default_factory=utc_now_iso)
    time_seconds: float = 0.0
    initial_size_mb: float = 0.0
    final_size_mb: float = 0.0
    status: str = "pending"
    retries: int = 0
    error: Optional[str] = None
    phase: str = "planning"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "startTime": self.start_time,
            "timeSeconds": round(self.time_seconds, 3),
            "initialSizeMb": _round_mb(self.initial_size_mb),
            "finalSizeMb": _round_mb(self.final_size_mb),
            "status": self.status,
            "retries": self.retries,
            "phase": self.phase,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexLog":
        return cls(
            start_time=str(data.get("startTime") or utc_now_iso()),
            time_seconds=float(data.get("timeSeconds") or 0.0),
            initial_size_mb=float(data.get("initialSizeMb") or 0.0),
            final_size_mb=float(data.get("finalSizeMb") or 0.0),
            status=str(data.get("status") or "pending"),
            retries=int(data.get("retries") or 0),
            error=data.get("error"),
            phase=str(data.get("phase") or "planning"),
        )


@dataclass
class CollectionLog:
    start_time: str = field(default_factory=utc_now_iso)
    total_time_seconds: float = 0.0
    initial_size_mb: float = 0.0
    final_size_mb: float = 0.0
    reclaimed_mb: float = 0.0
    indexes: Dict[str, IndexLog] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def failed_indexes(self) -> List[str]:
        return [name for name, log in self.indexes.items() if log.status == "failed"]

    def merge(self, newer: "CollectionLog") -> None:
        """Fold a later session's log for the same collection into this one."""
        self.indexes.update(newer.indexes)
        self.total_time_seconds += newer.total_time_seconds
        self.final_size_mb = newer.final_size_mb
        self.reclaimed_mb = self.initial_size_mb - self.final_size_mb
        for warning in newer.warnings:
            if warning not in self.warnings:
                self.warnings.append(warning)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time,
            "totalTimeSeconds": round(self.total_time_seconds, 3),
            "initialSizeMb": _round_mb(self.initial_size_mb),
            "finalSizeMb": _round_mb(self.final_size_mb),
            "reclaimedMb": _round_mb(self.reclaimed_mb),
            "indexes": {name: log.to_dict() for name, log in self.indexes.items()},
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CollectionLog":
        return cls(
            start_time=str(data.get("startTime") or utc_now_iso()),
            total_time_seconds=float(data.get("totalTimeSeconds") or 0.0),
            initial_size_mb=float(data.get("initialSizeMb") or 0.0),
            final_size_mb=float(data.get("finalSizeMb") or 0.0),
            reclaimed_mb=float(data.get("reclaimedMb") or 0.0),
            indexes={
                str(name): IndexLog.from_dict(entry)
                for name, entry in (data.get("indexes") or {}).items()
            },
            warnings=[str(w) for w in (data.get("warnings") or [])],
        )


@dataclass
class SessionRecord:
    session_id: str
    start_time: str = field(default_factory=utc_now_iso)
    end_time: Optional[str] = None
    total_time_seconds: float = 0.0
    indexes_rebuilt: int = 0
    status: str = "in-progress"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "totalTimeSeconds": round(self.total_time_seconds, 3),
            "indexesRebuilt": self.indexes_rebuilt,
            "status": self.status,
        }
        if self.end_time:
            data["endTime"] = self.end_time
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionRecord":
        return cls(
            session_id=str(data.get("sessionId") or ""),
            start_time=str(data.get("startTime") or utc_now_iso()),
            end_time=data.get("endTime"),
            total_time_seconds=float(data.get("totalTimeSeconds") or 0.0),
            indexes_rebuilt=int(data.get("indexesRebuilt") or 0),
            status=str(data.get("status") or "in-progress"),
        )


@dataclass
class DatabaseLog:
    cluster_name: str
    db_name: str
    mongo_version: str = "unknown"
    start_time: str = field(default_factory=utc_now_iso)
    total_time_seconds: float = 0.0
    total_initial_size_mb: float = 0.0
    total_final_size_mb: float = 0.0
    total_reclaimed_mb: float = 0.0
    collections: Dict[str, CollectionLog] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    session_history: List[SessionRecord] = field(default_factory=list)
    error: Optional[str] = None
    error_stack: Optional[str] = None

    def merge_collection(self, name: str, log: CollectionLog) -> CollectionLog:
        existing = self.collections.get(name)
        if existing is None:
            self.collections[name] = log
            merged = log
        else:
            existing.merge(log)
            merged = existing
        self.recompute_totals()
        return merged

    def add_warning(self, warning: str) -> None:
        if warning not in self.warnings:
            self.warnings.append(warning)

    def recompute_totals(self) -> None:
        self.total_initial_size_mb = sum(c.initial_size_mb for c in self.collections.values())
        self.total_final_size_mb = sum(c.final_size_mb for c in self.collections.values())
        self.total_reclaimed_mb = self.total_initial_size_mb - self.total_final_size_mb

    def failed_index_count(self) -> int:
        return sum(len(c.failed_indexes()) for c in self.collections.values())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "clusterName": self.cluster_name,
            "dbName": self.db_name,
            "mongoVersion": self.mongo_version,
            "startTime": self.start_time,
            "totalTimeSeconds": round(self.total_time_seconds, 3),
            "totalInitialSizeMb": _round_mb(self.total_initial_size_mb),
            "totalFinalSizeMb": _round_mb(self.total_final_size_mb),
            "totalReclaimedMb": _round_mb(self.total_reclaimed_mb),
            "collections": {name: c.to_dict() for name, c in self.collections.items()},
            "warnings": list(self.warnings),
            "sessionHistory": [s.to_dict() for s in self.session_history],
        }
        if self.error:
            data["error"] = self.error
        if self.error_stack:
            data["errorStack"] = self.error_stack
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DatabaseLog":
        return cls(
            cluster_name=str(data.get("clusterName") or ""),
            db_name=str(data.get("dbName") or ""),
            mongo_version=str(data.get("mongoVersion") or "unknown"),
            start_time=str(data.get("startTime") or utc_now_iso()),
            total_time_seconds=float(data.get("totalTimeSeconds") or 0.0),
            total_initial_size_mb=float(data.get("totalInitialSizeMb") or 0.0),
            total_final_size_mb=float(data.get("totalFinalSizeMb") or 0.0),
            total_reclaimed_mb=float(data.get("totalReclaimedMb") or 0.0),
            collections={
                str(name): CollectionLog.from_dict(entry)
                for name, entry in (data.get("collections") or {}).items()
            },
            warnings=[str(w) for w in (data.get("warnings") or [])],
            session_history=[
                SessionRecord.from_dict(s) for s in (data.get("sessionHistory") or [])
            ],
            error=data.get("error"),
            error_stack=data.get("errorStack"),
        )


@dataclass
class RebuildState:
    """Checkpoint contents: completed indexes, sessions, cumulative log.

    ``in_progress`` holds the definition (extended JSON) of every index whose
    original may already be dropped, keyed by collection then index name.
    An entry lives from just before the drop until the index is completed.
    """

    completed: Dict[str, List[str]] = field(default_factory=dict)
    sessions: List[SessionRecord] = field(default_factory=list)
    cumulative_log: Optional[DatabaseLog] = None
    in_progress: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict)

    def is_completed(self, collection: str, index: str) -> bool:
        return index in self.completed.get(collection, ())

    def completed_for(self, collection: str) -> Set[str]:
        return set(self.completed.get(collection, ()))

    def mark_completed(self, collection: str, index: str) -> bool:
        self.clear_in_progress(collection, index)
        names = self.completed.setdefault(collection, [])
        if index in names:
            return False
        names.append(index)
        return True

    def completed_count(self) -> int:
        return sum(len(v) for v in self.completed.values())

    def set_in_progress(self, collection: str, index: str, document: Dict[str, Any]) -> None:
        self.in_progress.setdefault(collection, {})[index] = document

    def clear_in_progress(self, collection: str, index: str) -> None:
        pending = self.in_progress.get(collection)
        if pending is None:
            return
        pending.pop(index, None)
        if not pending:
            del self.in_progress[collection]

    def in_progress_for(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return dict(self.in_progress.get(collection, {}))

    def in_progress_count(self) -> int:
        return sum(len(v) for v in self.in_progress.values())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "completed": {c: list(names) for c, names in self.completed.items()},
            "sessions": [s.to_dict() for s in self.sessions],
        }
        if self.in_progress:
            data["inProgress"] = {c: dict(docs) for c, docs in self.in_progress.items()}
        if self.cumulative_log is not None:
            data["cumulativeLog"] = self.cumulative_log.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RebuildState":
        completed_raw = data.get("completed") or {}
        completed: Dict[str, List[str]] = {}
        for collection, names in completed_raw.items():
            completed[str(collection)] = _unique([str(n) for n in (names or [])])
        in_progress: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for collection, docs in (data.get("inProgress") or {}).items():
            if docs:
                in_progress[str(collection)] = {str(name): dict(doc) for name, doc in docs.items()}
        cumulative = data.get("cumulativeLog")
        return cls(
            completed=completed,
            sessions=[SessionRecord.from_dict(s) for s in (data.get("sessions") or [])],
            cumulative_log=DatabaseLog.from_dict(cumulative) if cumulative else None,
            in_progress=in_progress,
        )


def _unique(items: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


@dataclass
class CompactErrorRecord:
    iteration: int
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"iteration": self.iteration, "error": self.error}


@dataclass
class CollectionCompactLog:
    start_time: str = field(default_factory=utc_now_iso)
    total_time_seconds: float = 0.0
    estimated_savings_mb: float = 0.0
    measurements: List[float] = field(default_factory=list)
    converged: bool = False
    iterations: int = 0
    final_measurement_mb: Optional[float] = None
    errors: List[CompactErrorRecord] = field(default_factory=list)
    stepped_down: bool = False
    auto_compact_enabled: bool = False
    auto_compact_completed: bool = False
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time,
            "totalTimeSeconds": round(self.total_time_seconds, 3),
            "estimatedSavingsMb": _round_mb(self.estimated_savings_mb),
            "measurements": [_round_mb(m) for m in self.measurements],
            "converged": self.converged,
            "iterations": self.iterations,
            "finalMeasurementMb": (
                _round_mb(self.final_measurement_mb)
                if self.final_measurement_mb is not None
                else None
            ),
            "errors": [e.to_dict() for e in self.errors],
            "steppedDown": self.stepped_down,
            "autoCompactEnabled": self.auto_compact_enabled,
            "autoCompactCompleted": self.auto_compact_completed,
            "skipped": self.skipped,
        }


@dataclass
class CompactDatabaseLog:
    cluster_name: str
    db_name: str
    mongo_version: str = "unknown"
    start_time: str = field(default_factory=utc_now_iso)
    total_time_seconds: float = 0.0
    supports_auto_compact: bool = False
    stepped_down: bool = False
    collections: Dict[str, CollectionCompactLog] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_stack: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "clusterName": self.cluster_name,
            "dbName": self.db_name,
            "mongoVersion": self.mongo_version,
            "startTime": self.start_time,
            "totalTimeSeconds": round(self.total_time_seconds, 3),
            "supportsAutoCompact": self.supports_auto_compact,
            "steppedDown": self.stepped_down,
            "collections": {name: c.to_dict() for name, c in self.collections.items()},
            "warnings": list(self.warnings),
        }
        if self.error:
            data["error"] = self.error
        if self.error_stack:
            data["errorStack"] = self.error_stack
        return data
