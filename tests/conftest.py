"""
tests/conftest.py

Minimal, safe env defaults for all tests. Nothing here talks to a real
MongoDB; engines are exercised against the fakes in ``tests/_mongo_fakes.py``.
"""

import os
import sys
from pathlib import Path

import pytest
from structlog.testing import CapturingLogger

# Prefer the project root on sys.path so `config`, `database`, `services` resolve
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017/test")

from tests._mongo_fakes import FakeSleep  # noqa: E402


@pytest.fixture
def capture_logger():
    return CapturingLogger()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture(autouse=True)
def _reset_recent_errors():
    from observability import reset_recent_errors

    reset_recent_errors()
    yield
    reset_recent_errors()
