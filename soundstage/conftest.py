# soundstage/conftest.py
import os
import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest

# Must be set before soundstage.core.config builds its Settings
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="soundstage-tests-"))
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR / 'test.db'}"
os.environ.setdefault("ENV", "test")
os.environ["ALLOW_HEADER_AUTH"] = "true"
os.environ.pop("AUTH_JWT_SECRET", None)


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all tables once per session against the temporary SQLite file."""
    from soundstage.core.database import create_all_tables, init_engine

    init_engine()
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Delete all rows before each test so every test starts from an empty ledger."""
    from soundstage.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def sql_ledger():
    from soundstage.features.credits.ledger import CreditLedger
    from soundstage.features.credits.store import SqlAccountStore

    return CreditLedger(SqlAccountStore())


@pytest.fixture
def memory_ledger():
    from soundstage.features.credits.ledger import CreditLedger
    from soundstage.features.credits.store import InMemoryAccountStore

    return CreditLedger(InMemoryAccountStore())


@pytest.fixture(params=["sql", "memory"])
def ledger(request):
    """The same ledger behaviour over both account stores."""
    return request.getfixturevalue(f"{request.param}_ledger")


@pytest.fixture
def gateway():
    """Generation gateway double that accepts every submit."""
    from soundstage.models.generation import TaskHandle, TaskStatus

    mock_gateway = Mock()
    counter = {"n": 0}

    def _submit(request):
        counter["n"] += 1
        return TaskHandle(task_id=f"task_{counter['n']}", status=TaskStatus.PENDING)

    mock_gateway.submit.side_effect = _submit
    return mock_gateway


@pytest.fixture
def client(gateway):
    """TestClient with the generation gateway swapped for the mock."""
    from fastapi.testclient import TestClient

    from soundstage.features.generation.gateway import get_gateway
    from soundstage.main import app

    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()

