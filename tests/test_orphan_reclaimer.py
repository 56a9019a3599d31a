import pytest

from database.exceptions import UserAbortError
from database.models import OrphanedIndex
from services.confirmation import Decision
from services.orphan_reclaimer import OrphanReclaimer
from tests._mongo_fakes import FakeDatabase, ScriptedConfirmation

SUFFIX = "_cover_temp"


def _db():
    db = FakeDatabase()
    orders = db.add_collection("orders")
    orders.add_index("a_1", [("a", 1)])
    orders.add_index("a_1" + SUFFIX, [("a", 1), ("_rebuild_cover_field_", 1)])
    # original b_1 already dropped: the covering index is the only copy
    orders.add_index("b_1" + SUFFIX, [("b", 1), ("_rebuild_cover_field_", 1)])
    orders.add_index(SUFFIX, [("c", 1)])
    users = db.add_collection("users")
    users.add_index("name_1" + SUFFIX, [("name", 1), ("_rebuild_cover_field_", 1)])
    return db


@pytest.mark.asyncio
async def test_strict_mode_only_drops_completed(capture_logger):
    db = _db()
    reclaimer = OrphanReclaimer(db, SUFFIX, logger=capture_logger)

    removed = await reclaimer.reclaim(completed={"orders": ["a_1"]})

    assert removed == [OrphanedIndex("orders", "a_1" + SUFFIX)]
    assert "b_1" + SUFFIX in db["orders"].indexes
    assert "name_1" + SUFFIX in db["users"].indexes


@pytest.mark.asyncio
async def test_aggressive_mode_drops_every_covering_index(capture_logger):
    db = _db()
    reclaimer = OrphanReclaimer(db, SUFFIX, logger=capture_logger)

    removed = await reclaimer.reclaim()

    assert {(o.collection, o.index) for o in removed} == {
        ("orders", "a_1" + SUFFIX),
        ("orders", "b_1" + SUFFIX),
        ("users", "name_1" + SUFFIX),
    }
    # an index named exactly like the suffix is not a covering index
    assert SUFFIX in db["orders"].indexes


@pytest.mark.asyncio
async def test_restricted_to_given_collections(capture_logger):
    db = _db()
    found = await OrphanReclaimer(db, SUFFIX, logger=capture_logger).find(collections=["users"])
    assert found == [OrphanedIndex("users", "name_1" + SUFFIX)]


@pytest.mark.asyncio
async def test_declined_cleanup_aborts_without_dropping(capture_logger):
    db = _db()
    confirmation = ScriptedConfirmation({"orphan-cleanup": [Decision.NO]})
    reclaimer = OrphanReclaimer(db, SUFFIX, confirmation=confirmation, logger=capture_logger)

    with pytest.raises(UserAbortError):
        await reclaimer.reclaim()

    assert confirmation.topics() == ["orphan-cleanup"]
    assert not db["orders"].index_ops()


@pytest.mark.asyncio
async def test_nothing_to_reclaim_asks_nothing(capture_logger):
    db = FakeDatabase()
    db.add_collection("orders").add_index("a_1", [("a", 1)])
    confirmation = ScriptedConfirmation()

    assert await OrphanReclaimer(db, SUFFIX, confirmation=confirmation, logger=capture_logger).reclaim() == []
    assert confirmation.asked == []


def test_empty_suffix_rejected():
    with pytest.raises(ValueError):
        OrphanReclaimer(FakeDatabase(), "")
