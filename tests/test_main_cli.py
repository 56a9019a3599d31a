import pytest
import structlog
from pymongo.errors import ServerSelectionTimeoutError

import main
from database.models import DatabaseLog, SessionRecord
from observability import clear_run_context
from tests._mongo_fakes import FakeClient


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DATABASE_NAME", raising=False)
    monkeypatch.setenv("MONGODB_URL", "mongodb://localhost:27017")
    yield monkeypatch
    clear_run_context()
    structlog.reset_defaults()


def test_parser_compact_flags():
    args = main.build_parser().parse_args(
        ["compact", "-d", "appdb", "--no-force-stepdown", "--max-iterations", "3", "--convergence-tolerance", "0.1"]
    )
    assert args.command == "compact"
    assert args.force_stepdown is False
    assert args.auto_compact is None
    assert args.max_iterations == 3
    assert args.convergence_tolerance == 0.1
    assert args.safe_run is None


def test_parser_rebuild_flags():
    args = main.build_parser().parse_args(
        ["rebuild", "-u", "mongodb://h", "--no-safe-run", "--ignored-indexes", "tmp_*", "--save-collection-log"]
    )
    assert args.safe_run is False
    assert args.ignored_indexes == "tmp_*"
    assert args.save_collection_log is True
    assert args.performance_logging is None


def test_invalid_uri_is_a_configuration_error(cli_env, capsys):
    code = main.main(["rebuild", "-u", "http://nope", "-d", "appdb", "--no-safe-run"])
    assert code == 2
    assert "Configuration error" in capsys.readouterr().err


def test_missing_database_name_exits(cli_env):
    with pytest.raises(SystemExit):
        main.main(["cleanup", "--no-safe-run"])


def test_cleanup_drops_every_covering_index(cli_env, capsys):
    client = FakeClient()
    db = client["appdb"]
    orders = db.add_collection("orders")
    orders.add_index("a_1", [("a", 1)])
    orders.add_index("a_1_cover_temp", [("a", 1), ("_rebuild_cover_field_", 1)])
    cli_env.setattr(main, "AsyncIOMotorClient", lambda *args, **kwargs: client)

    code = main.main(["cleanup", "-d", "appdb", "--no-safe-run", "--log-format", "console"])

    assert code == 0
    assert set(orders.indexes) == {"_id_", "a_1"}
    assert client.closed is True
    assert "Dropped 1 covering index(es)." in capsys.readouterr().out


def test_driver_error_exits_with_failure(cli_env, capsys):
    client = FakeClient()
    db = client["appdb"]

    async def unreachable():
        raise ServerSelectionTimeoutError("localhost:27017: connection refused")

    db.list_collection_names = unreachable
    cli_env.setattr(main, "AsyncIOMotorClient", lambda *args, **kwargs: client)

    code = main.main(["cleanup", "-d", "appdb", "--no-safe-run", "--log-format", "console"])

    assert code == 1
    assert client.closed is True
    err = capsys.readouterr().err
    assert "Recent errors:" in err
    assert "connection refused" in err


@pytest.mark.parametrize(
    "status, expected",
    [("aborted", main.EXIT_ABORTED), ("completed", 0)],
)
def test_rebuild_exit_code_follows_last_session(cli_env, status, expected):
    class StubOrchestrator:
        def __init__(self, db, config, confirmation=None):
            self.config = config

        async def run(self):
            log = DatabaseLog(cluster_name="rs0", db_name=self.config.db_name)
            log.session_history = [
                SessionRecord(session_id="session_1", status="failed"),
                SessionRecord(session_id="session_2", status=status),
            ]
            return log

    cli_env.setattr(main, "AsyncIOMotorClient", lambda *args, **kwargs: FakeClient())
    cli_env.setattr(main, "DatabaseRebuildOrchestrator", StubOrchestrator)

    code = main.main(["rebuild", "-d", "appdb", "-y", "--log-format", "console"])

    assert code == expected
