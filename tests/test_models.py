from database.models import (
    CollectionLog,
    DatabaseLog,
    IndexDescriptor,
    IndexLog,
    RebuildState,
    SessionRecord,
)


def test_descriptor_from_list_indexes_document():
    d = IndexDescriptor.from_document(
        {"v": 2, "key": {"status": 1, "created": -1}, "name": "status_1_created_-1", "sparse": True, "ns": "x.y"}
    )
    assert d.name == "status_1_created_-1"
    assert d.key == [("status", 1), ("created", -1)]
    assert d.options == {"sparse": True}
    assert d.building is False
    assert not d.unique and not d.is_id_index


def test_descriptor_recognises_in_progress_build():
    d = IndexDescriptor.from_document(
        {"spec": {"v": 2, "key": {"a": 1}, "name": "a_1", "unique": True}, "buildUUID": "abc"}
    )
    assert d.name == "a_1"
    assert d.building is True
    assert d.unique is True
    assert d.to_document() == {"name": "a_1", "key": {"a": 1}, "unique": True}


def test_collection_log_merge_keeps_first_initial_size():
    older = CollectionLog(total_time_seconds=10, initial_size_mb=100, final_size_mb=80, warnings=["w1"])
    older.indexes["a_1"] = IndexLog(status="failed", error="boom")
    newer = CollectionLog(total_time_seconds=5, initial_size_mb=80, final_size_mb=60, warnings=["w1", "w2"])
    newer.indexes["a_1"] = IndexLog(status="completed")
    newer.indexes["b_1"] = IndexLog(status="completed")

    older.merge(newer)

    assert older.initial_size_mb == 100
    assert older.final_size_mb == 60
    assert older.reclaimed_mb == 40
    assert older.total_time_seconds == 15
    assert older.warnings == ["w1", "w2"]
    assert older.failed_indexes() == []
    assert set(older.indexes) == {"a_1", "b_1"}


def test_database_log_totals_and_failures():
    db_log = DatabaseLog(cluster_name="rs0", db_name="appdb")
    first = CollectionLog(initial_size_mb=50, final_size_mb=30)
    first.indexes["x_1"] = IndexLog(status="failed")
    db_log.merge_collection("orders", first)
    db_log.merge_collection("users", CollectionLog(initial_size_mb=20, final_size_mb=15))

    assert db_log.total_initial_size_mb == 70
    assert db_log.total_final_size_mb == 45
    assert db_log.total_reclaimed_mb == 25
    assert db_log.failed_index_count() == 1

    db_log.add_warning("once")
    db_log.add_warning("once")
    assert db_log.warnings == ["once"]


def test_rebuild_state_checkpoint_format():
    state = RebuildState.from_dict(
        {
            "completed": {"orders": ["a_1", "a_1", "b_1"]},
            "sessions": [{"sessionId": "session_1", "indexesRebuilt": 2, "status": "aborted"}],
            "cumulativeLog": {"clusterName": "rs0", "dbName": "appdb", "totalReclaimedMb": 3.5},
        }
    )

    assert state.completed == {"orders": ["a_1", "b_1"]}
    assert state.is_completed("orders", "b_1")
    assert not state.is_completed("users", "b_1")
    assert state.mark_completed("orders", "c_1") is True
    assert state.mark_completed("orders", "c_1") is False
    assert state.completed_count() == 3
    assert state.sessions[0].indexes_rebuilt == 2
    assert state.cumulative_log.total_reclaimed_mb == 3.5

    data = state.to_dict()
    assert data["completed"]["orders"] == ["a_1", "b_1", "c_1"]
    assert data["sessions"][0]["sessionId"] == "session_1"
    assert data["cumulativeLog"]["dbName"] == "appdb"


def test_session_record_omits_missing_end_time():
    assert "endTime" not in SessionRecord(session_id="s").to_dict()
