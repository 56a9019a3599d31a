import json
import os
from datetime import datetime, timezone

import pytest

from database.exceptions import StateFileError
from database.models import DatabaseLog, IndexDescriptor
from services.state_store import StateStore, file_timestamp, safe_file_part
from tests._mongo_fakes import logged_events


def _store(tmp_path, logger, **kwargs):
    kwargs.setdefault("timestamp", "2024-05-01T12-30-45Z")
    return StateStore("rs0", str(tmp_path / "rt"), str(tmp_path / "logs"), logger=logger, **kwargs)


def test_file_timestamp_is_filename_safe():
    ts = file_timestamp(datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc))
    assert ts == "2024-05-01T12-30-45Z"


def test_safe_file_part():
    assert safe_file_part("rs0/prod shard") == "rs0_prod_shard"
    assert safe_file_part("") == "_"


def test_paths(tmp_path, capture_logger):
    store = _store(tmp_path, capture_logger)
    assert store.state_file == tmp_path / "rt" / "rs0_state.json"
    assert store.backup_file.name == "rs0_backup_2024-05-01T12-30-45Z.json"
    assert store.log_file == tmp_path / "logs" / "rs0_rebuild_log_2024-05-01T12-30-45Z.json"
    compact = _store(tmp_path, capture_logger, kind="compact")
    assert compact.log_file.name == "rs0_compact_log_2024-05-01T12-30-45Z.json"


def test_checkpoint_survives_restart(tmp_path, capture_logger):
    store = _store(tmp_path, capture_logger)
    store.load()
    store.start_session()
    store.mark_completed("orders", "a_1")
    store.mark_completed("orders", "a_1")

    assert store.session.indexes_rebuilt == 1
    assert not list((tmp_path / "rt").glob("*.tmp"))

    restarted = _store(tmp_path, capture_logger)
    state = restarted.load()
    assert state.is_completed("orders", "a_1")
    assert len(state.sessions) == 1
    assert state.sessions[0].status == "in-progress"
    assert "checkpoint_loaded" in logged_events(capture_logger, "info")


def test_in_flight_definition_survives_restart(tmp_path, capture_logger):
    cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)
    descriptor = IndexDescriptor(
        name="recent_1",
        key=[("recent", 1), ("at", -1)],
        options={"sparse": True, "partialFilterExpression": {"at": {"$gte": cutoff}}},
    )
    store = _store(tmp_path, capture_logger)
    store.mark_in_flight("orders", descriptor)

    payload = json.loads(store.state_file.read_text(encoding="utf-8"))
    assert list(payload["inProgress"]["orders"]) == ["recent_1"]

    restarted = _store(tmp_path, capture_logger)
    restarted.load()
    [restored] = restarted.in_flight_descriptors("orders")
    assert restored.name == "recent_1"
    assert restored.key == [("recent", 1), ("at", -1)]
    assert restored.options["sparse"] is True
    assert restored.options["partialFilterExpression"]["at"]["$gte"] == cutoff
    assert restarted.in_flight_descriptors("users") == []

    restarted.mark_completed("orders", "recent_1")
    assert restarted.in_flight_descriptors("orders") == []
    assert "inProgress" not in json.loads(restarted.state_file.read_text(encoding="utf-8"))


def test_unreadable_checkpoint_starts_fresh(tmp_path, capture_logger):
    store = _store(tmp_path, capture_logger)
    store.state_file.parent.mkdir(parents=True)
    store.state_file.write_text("{not json", encoding="utf-8")

    state = store.load()

    assert state.completed == {}
    assert "checkpoint_unreadable" in logged_events(capture_logger, "warning")


def test_finish_session_and_cumulative_log(tmp_path, capture_logger):
    store = _store(tmp_path, capture_logger)
    store.start_session()
    record = store.finish_session("completed")
    store.save_cumulative(DatabaseLog(cluster_name="rs0", db_name="appdb"))

    assert record.status == "completed"
    assert record.end_time is not None
    data = json.loads(store.state_file.read_text(encoding="utf-8"))
    assert data["sessions"][0]["status"] == "completed"
    assert data["cumulativeLog"]["dbName"] == "appdb"


def test_delete_checkpoint(tmp_path, capture_logger):
    store = _store(tmp_path, capture_logger)
    store.save()
    assert store.delete_checkpoint() is True
    assert store.delete_checkpoint() is False


def test_save_failure_raises_state_file_error(tmp_path, capture_logger):
    blocker = tmp_path / "rt"
    blocker.write_text("not a directory", encoding="utf-8")
    store = _store(tmp_path, capture_logger)
    with pytest.raises(StateFileError):
        store.save()


def test_backup_and_pruning(tmp_path, capture_logger):
    runtime = tmp_path / "rt"
    runtime.mkdir()
    stale = []
    for i, ts in enumerate(["2024-01-01T00-00-00Z", "2024-02-01T00-00-00Z"]):
        path = runtime / f"rs0_backup_{ts}.json"
        path.write_text("{}", encoding="utf-8")
        os.utime(path, (1000 + i, 1000 + i))
        stale.append(path)
    other_cluster = runtime / "rs1_backup_2024-01-01T00-00-00Z.json"
    other_cluster.write_text("{}", encoding="utf-8")

    store = _store(tmp_path, capture_logger)
    path = store.write_backup({"orders": [{"v": 2, "key": {"a": 1}, "name": "a_1"}]})
    removed = store.prune_stale_runtime_files()

    assert sorted(removed) == sorted(stale)
    assert path.exists()
    assert other_cluster.exists()
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["clusterName"] == "rs0"
    assert payload["collections"]["orders"][0]["name"] == "a_1"

    assert store.delete_backup() is True
    assert not path.exists()


def test_performance_log_can_be_disabled(tmp_path, capture_logger):
    off = _store(tmp_path, capture_logger, performance_logging=False)
    assert off.write_performance_log({"a": 1}) is None
    assert not (tmp_path / "logs").exists()

    on = _store(tmp_path, capture_logger)
    path = on.write_performance_log({"a": 1})
    assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1}


def test_collection_logs_only_when_enabled(tmp_path, capture_logger):
    assert _store(tmp_path, capture_logger).write_collection_log("orders", {}) is None

    store = _store(tmp_path, capture_logger, save_collection_log=True)
    path = store.write_collection_log("orders", {"indexes": {}})
    assert path == store.collection_log_dir / "orders_log.json"
    assert path.exists()
