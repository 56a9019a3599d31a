"""
Checkpoint, backup and performance-log files for one cluster.

Layout::

    <runtime_dir>/<cluster>_state.json            checkpoint (completed, in-flight indexes, sessions)
    <runtime_dir>/<cluster>_backup_<ts>.json      index definitions (extended JSON)
    <log_dir>/<cluster>_rebuild_log_<ts>.json     performance log
    <log_dir>/<cluster>_collections_<ts>/         optional per-collection logs

The checkpoint is rewritten atomically after every completed index.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from bson import json_util

from database.exceptions import StateFileError
from database.models import DatabaseLog, IndexDescriptor, RebuildState, SessionRecord, utc_now_iso
from observability import get_logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")
_CHECKPOINT_JSON = json_util.RELAXED_JSON_OPTIONS.with_options(tz_aware=True, tzinfo=timezone.utc)


def file_timestamp(now: Optional[datetime] = None) -> str:
    """ISO timestamp without fractions and with ':' replaced, safe for file names."""
    now = now or datetime.now(timezone.utc)
    text = now.replace(microsecond=0).isoformat()
    return text.replace("+00:00", "Z").replace(":", "-")


def safe_file_part(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name) or "_"


def _write_json_atomic(path: Path, payload: Any, *, default=None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False, default=default)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class StateStore:
    """Owns the on-disk state of one rebuild (or compaction) run."""

    def __init__(
        self,
        cluster_name: str,
        runtime_dir: str,
        log_dir: str,
        *,
        kind: str = "rebuild",
        performance_logging: bool = True,
        save_collection_log: bool = False,
        timestamp: Optional[str] = None,
        logger: Any = None,
    ):
        self.cluster_name = cluster_name
        self.kind = kind
        self.performance_logging = performance_logging
        self.save_collection_log = save_collection_log
        self.timestamp = timestamp or file_timestamp()
        self._runtime_dir = Path(runtime_dir)
        self._log_dir = Path(log_dir)
        self._log = logger or get_logger("state_store")
        self._prefix = safe_file_part(cluster_name)
        self.state = RebuildState()
        self.session: Optional[SessionRecord] = None
        self._session_started: Optional[float] = None

    # --- paths ---
    @property
    def state_file(self) -> Path:
        return self._runtime_dir / f"{self._prefix}_state.json"

    @property
    def backup_file(self) -> Path:
        return self._runtime_dir / f"{self._prefix}_backup_{self.timestamp}.json"

    @property
    def log_file(self) -> Path:
        return self._log_dir / f"{self._prefix}_{self.kind}_log_{self.timestamp}.json"

    @property
    def collection_log_dir(self) -> Path:
        return self._log_dir / f"{self._prefix}_collections_{self.timestamp}"

    # --- checkpoint ---
    def load(self) -> RebuildState:
        path = self.state_file
        if not path.exists():
            self.state = RebuildState()
            return self.state
        try:
            with path.open("r", encoding="utf-8") as handle:
                self.state = RebuildState.from_dict(json.load(handle) or {})
            self._log.info(
                "checkpoint_loaded",
                path=str(path),
                completed=self.state.completed_count(),
                sessions=len(self.state.sessions),
                in_flight=self.state.in_progress_count(),
            )
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            # An unreadable checkpoint only means completed indexes get rebuilt again
            self._log.warning("checkpoint_unreadable", path=str(path), error=str(exc))
            self.state = RebuildState()
        return self.state

    def save(self) -> None:
        try:
            _write_json_atomic(self.state_file, self.state.to_dict())
        except OSError as exc:
            raise StateFileError(f"could not write checkpoint {self.state_file}: {exc}") from exc

    def mark_completed(self, collection: str, index: str) -> None:
        if self.state.mark_completed(collection, index) and self.session is not None:
            self.session.indexes_rebuilt += 1
        self.save()

    def mark_in_flight(self, collection: str, descriptor: IndexDescriptor) -> None:
        """Checkpoint the definition of an index that is about to be dropped."""
        document = json.loads(
            json_util.dumps(descriptor.to_document(), json_options=_CHECKPOINT_JSON)
        )
        self.state.set_in_progress(collection, descriptor.name, document)
        self.save()

    def in_flight_descriptors(self, collection: str) -> List[IndexDescriptor]:
        return [
            IndexDescriptor.from_document(
                json_util.loads(json.dumps(document), json_options=_CHECKPOINT_JSON)
            )
            for document in self.state.in_progress_for(collection).values()
        ]

    def delete_checkpoint(self) -> bool:
        try:
            self.state_file.unlink()
            self._log.info("checkpoint_deleted", path=str(self.state_file))
            return True
        except FileNotFoundError:
            return False

    # --- sessions ---
    def start_session(self) -> SessionRecord:
        self.session = SessionRecord(session_id=f"session_{self.timestamp}")
        self._session_started = time.monotonic()
        self.state.sessions.append(self.session)
        self.save()
        return self.session

    def finish_session(self, status: str) -> Optional[SessionRecord]:
        if self.session is None:
            return None
        self.session.status = status
        self.session.end_time = utc_now_iso()
        if self._session_started is not None:
            self.session.total_time_seconds = time.monotonic() - self._session_started
        return self.session

    def save_cumulative(self, db_log: DatabaseLog) -> None:
        self.state.cumulative_log = db_log
        self.save()

    # --- backup ---
    def write_backup(self, definitions: Mapping[str, List[Dict[str, Any]]]) -> Path:
        """Persist every index definition before anything is modified."""
        path = self.backup_file
        payload = {
            "clusterName": self.cluster_name,
            "createdAt": utc_now_iso(),
            "collections": {name: list(docs) for name, docs in definitions.items()},
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            text = json_util.dumps(payload, indent=2, json_options=json_util.RELAXED_JSON_OPTIONS)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise StateFileError(f"could not write index backup {path}: {exc}") from exc
        self._log.info("index_backup_written", path=str(path), collections=len(definitions))
        return path

    def delete_backup(self) -> bool:
        try:
            self.backup_file.unlink()
            return True
        except FileNotFoundError:
            return False

    # --- logs ---
    def write_performance_log(self, payload: Mapping[str, Any]) -> Optional[Path]:
        if not self.performance_logging:
            return None
        path = self.log_file
        try:
            _write_json_atomic(path, dict(payload), default=str)
        except OSError as exc:
            raise StateFileError(f"could not write performance log {path}: {exc}") from exc
        self._log.info("performance_log_written", path=str(path))
        return path

    def write_collection_log(self, collection: str, payload: Mapping[str, Any]) -> Optional[Path]:
        if not self.save_collection_log:
            return None
        path = self.collection_log_dir / f"{safe_file_part(collection)}_log.json"
        try:
            _write_json_atomic(path, dict(payload), default=str)
        except OSError as exc:
            raise StateFileError(f"could not write collection log {path}: {exc}") from exc
        return path

    # --- housekeeping ---
    def prune_stale_runtime_files(self) -> List[Path]:
        """Keep only this run's backup, or the newest one when it has none yet."""
        removed: List[Path] = []
        if not self._runtime_dir.is_dir():
            return removed
        backups = sorted(
            self._runtime_dir.glob(f"{self._prefix}_backup_*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        if self.backup_file in backups:
            stale_files = [p for p in backups if p != self.backup_file]
        else:
            stale_files = backups[1:]
        for stale in stale_files:
            try:
                stale.unlink()
                removed.append(stale)
            except OSError as exc:
                self._log.warning("stale_file_remove_failed", path=str(stale), error=str(exc))
        if removed:
            self._log.info("stale_runtime_files_removed", count=len(removed))
        return removed
