import json
import types

import pytest

from config import CompactConfig
from database.exceptions import UnsupportedServerVersionError
from database.models import CollectionCompactLog, CompactErrorRecord
from services.compaction import StepDownResult
from services.compaction_orchestrator import DatabaseCompactionOrchestrator
from services.confirmation import Decision
from services.state_store import StateStore
from tests._mongo_fakes import FakeDatabase, RecordingCoordinator, ScriptedConfirmation


class _StubEngine:
    """Records what the orchestrator asks of the compaction engine."""

    def __init__(self, *, step_down=None, targets=("az2", "az3"), skipped=()):
        self.compacted = []
        self.auto_runs = []
        self.step_downs = 0
        self._step_down = step_down or StepDownResult(True, former_zone="az1", former_host="a:27017")
        self._skipped = set(skipped)
        self._targets = [types.SimpleNamespace(zone=z, host=z, read_preference=f"rp-{z}") for z in targets]
        self.topology = types.SimpleNamespace(secondary_targets=self._secondary_targets)

    async def _secondary_targets(self, preferred_zones=()):
        return list(self._targets)

    async def compact_collection(self, name, *, post_step_down=False, preferred_zones=()):
        self.compacted.append((name, post_step_down, list(preferred_zones)))
        if name in self._skipped:
            return CollectionCompactLog(skipped=True)
        if post_step_down:
            return CollectionCompactLog(measurements=[40.0, 40.0], converged=True, iterations=2, final_measurement_mb=40.0)
        return CollectionCompactLog(
            measurements=[90.0, 70.0],
            iterations=2,
            final_measurement_mb=70.0,
            errors=[CompactErrorRecord(1, "az2: interrupted")],
        )

    async def step_down_primary(self):
        self.step_downs += 1
        return self._step_down

    async def run_auto_compact(self, label, read_preference=None):
        self.auto_runs.append((label, read_preference))
        return True


def _db(version):
    db = FakeDatabase(version=version)
    db.add_collection("orders")
    db.add_collection("users")
    db.add_collection("system.profile")
    return db


def _run(tmp_path, db, engine, logger, *, confirmation=None, coordinator=None, **config):
    config.setdefault("safe_run", confirmation is not None)
    cfg = CompactConfig(db_name="appdb", log_dir=str(tmp_path / "logs"), cluster_name="rs0", **config)
    store = StateStore("rs0", str(tmp_path / "rt"), cfg.log_dir, kind="compact", logger=logger)
    orchestrator = DatabaseCompactionOrchestrator(
        db,
        cfg,
        confirmation=confirmation,
        coordinator=coordinator,
        state_store=store,
        engine=engine,
        logger=logger,
    )
    return orchestrator, store


@pytest.mark.asyncio
async def test_pre_8_0_compacts_then_steps_down_primary(tmp_path, capture_logger):
    engine = _StubEngine()
    coordinator = RecordingCoordinator()
    orchestrator, store = _run(tmp_path, _db("7.0.4"), engine, capture_logger, coordinator=coordinator)

    db_log = await orchestrator.run()

    assert engine.compacted == [
        ("orders", False, []),
        ("users", False, []),
        ("orders", True, ["az1"]),
        ("users", True, ["az1"]),
    ]
    assert db_log.stepped_down is True
    orders = db_log.collections["orders"]
    assert orders.measurements == [90.0, 70.0, 40.0, 40.0]
    assert orders.iterations == 4
    assert orders.converged is True
    assert orders.stepped_down is True
    assert orders.final_measurement_mb == 40.0
    assert db_log.supports_auto_compact is False
    assert [h for h in coordinator.hooks()] == ["on_error", "on_error"]

    payload = json.loads(store.log_file.read_text(encoding="utf-8"))
    assert payload["steppedDown"] is True
    assert set(payload["collections"]) == {"orders", "users"}


@pytest.mark.asyncio
async def test_step_down_can_be_disabled(tmp_path, capture_logger):
    engine = _StubEngine()
    orchestrator, _store = _run(tmp_path, _db("6.0.0"), engine, capture_logger, force_stepdown=False)

    db_log = await orchestrator.run()

    assert engine.step_downs == 0
    assert db_log.stepped_down is False
    assert len(engine.compacted) == 2


@pytest.mark.asyncio
async def test_unconfirmed_step_down_leaves_warning(tmp_path, capture_logger):
    engine = _StubEngine(step_down=StepDownResult(False, former_zone="az1", former_host="a:27017"))
    orchestrator, _store = _run(tmp_path, _db("6.0.0"), engine, capture_logger)

    db_log = await orchestrator.run()

    assert db_log.stepped_down is False
    assert len(engine.compacted) == 2
    assert db_log.warnings == ["Primary step-down could not be confirmed; primary not compacted"]


@pytest.mark.asyncio
async def test_step_down_skipped_when_nothing_was_compacted(tmp_path, capture_logger):
    engine = _StubEngine(skipped=("orders", "users"))
    orchestrator, _store = _run(tmp_path, _db("6.0.0"), engine, capture_logger)

    await orchestrator.run()

    assert engine.step_downs == 0


@pytest.mark.asyncio
async def test_declined_step_down(tmp_path, capture_logger):
    engine = _StubEngine()
    confirmation = ScriptedConfirmation({"stepdown": [Decision.NO]})
    orchestrator, _store = _run(tmp_path, _db("6.0.0"), engine, capture_logger, confirmation=confirmation)

    await orchestrator.run()

    assert confirmation.topics() == ["compact-collections", "stepdown"]
    assert engine.step_downs == 0


@pytest.mark.asyncio
async def test_8_0_uses_auto_compact_on_every_node(tmp_path, capture_logger):
    engine = _StubEngine()
    orchestrator, _store = _run(tmp_path, _db("8.0.1"), engine, capture_logger)

    db_log = await orchestrator.run()

    assert engine.compacted == []
    assert engine.step_downs == 0
    assert engine.auto_runs == [("primary", None), ("az2", "rp-az2"), ("az3", "rp-az3")]
    assert db_log.supports_auto_compact is True
    assert set(db_log.collections) == {"orders", "users"}
    assert all(c.auto_compact_enabled and c.auto_compact_completed for c in db_log.collections.values())
    assert db_log.warnings == []


@pytest.mark.asyncio
async def test_auto_compact_warns_about_single_target(tmp_path, capture_logger):
    engine = _StubEngine(targets=("az2",))
    orchestrator, _store = _run(tmp_path, _db("8.0.1"), engine, capture_logger)

    db_log = await orchestrator.run()

    assert db_log.warnings[0].startswith("Fewer than 2 distinct secondary targets")


@pytest.mark.asyncio
async def test_8_0_with_filters_falls_back_to_manual_compact(tmp_path, capture_logger):
    engine = _StubEngine()
    orchestrator, _store = _run(
        tmp_path, _db("8.0.1"), engine, capture_logger, specified_collections=["orders"]
    )

    db_log = await orchestrator.run()

    assert engine.auto_runs == []
    assert engine.compacted == [("orders", False, [])]
    # no step-down on 8.0 unless forced
    assert engine.step_downs == 0
    assert list(db_log.collections) == ["orders"]


@pytest.mark.asyncio
async def test_8_0_with_filters_can_still_choose_auto_compact(tmp_path, capture_logger):
    engine = _StubEngine()
    confirmation = ScriptedConfirmation({"autocompact-filters": [Decision.NO]})
    orchestrator, _store = _run(
        tmp_path,
        _db("8.0.1"),
        engine,
        capture_logger,
        confirmation=confirmation,
        ignored_collections=["users"],
    )

    await orchestrator.run()

    assert "autocompact-filters" in confirmation.topics()
    assert engine.compacted == []
    assert [label for label, _rp in engine.auto_runs] == ["primary", "az2", "az3"]


@pytest.mark.asyncio
async def test_force_manual_compact_on_8_0(tmp_path, capture_logger):
    engine = _StubEngine()
    orchestrator, _store = _run(tmp_path, _db("8.0.1"), engine, capture_logger, force_manual_compact=True)

    await orchestrator.run()

    assert engine.auto_runs == []
    assert [c[0] for c in engine.compacted] == ["orders", "users"]


@pytest.mark.asyncio
async def test_declined_compaction_changes_nothing(tmp_path, capture_logger):
    engine = _StubEngine()
    confirmation = ScriptedConfirmation({"compact-collections": [Decision.NO]})
    orchestrator, store = _run(tmp_path, _db("7.0.0"), engine, capture_logger, confirmation=confirmation)

    db_log = await orchestrator.run()

    assert engine.compacted == []
    assert db_log.warnings[0].startswith("User aborted")
    assert store.log_file.exists()


@pytest.mark.asyncio
async def test_unsupported_version_is_reported_and_raised(tmp_path, capture_logger):
    engine = _StubEngine()
    coordinator = RecordingCoordinator()
    orchestrator, store = _run(tmp_path, _db("4.2.0"), engine, capture_logger, coordinator=coordinator)

    with pytest.raises(UnsupportedServerVersionError):
        await orchestrator.run()

    assert engine.compacted == []
    assert coordinator.hooks() == ["on_error"]
    payload = json.loads(store.log_file.read_text(encoding="utf-8"))
    assert payload["mongoVersion"] == "4.2.0"
    assert "not supported" in payload["error"]
