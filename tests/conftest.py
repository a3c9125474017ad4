"""
Shared fixtures: a throwaway SQLite database per test, a session bound to
it, and a FastAPI test client wired to both.
"""

from pathlib import Path
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from queryhub.core.db import get_db, make_engine
from queryhub.core.errors import ExecutionError
from queryhub.core.init_db import init_db
from queryhub.main import create_app
from queryhub.services.execution_service import ExecutionDispatcher, get_dispatcher
from queryhub.services.query_engine import QueryResult, ThreadPoolQueryEngine


@pytest.fixture
def engine(tmp_path: Path):
    engine = make_engine(f"sqlite:///{tmp_path / 'queryhub_test.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class ScriptedEngine:
    """Query engine stand-in: stays pending for N waits, then answers."""

    def __init__(self, pending_rounds: int = 0, result: Optional[QueryResult] = None, error: Optional[str] = None):
        self.pending_rounds = pending_rounds
        self.result = result or QueryResult(columns=["one"], rows=[[1]])
        self.error = error
        self.started: List[tuple] = []
        self.waits: List[str] = []
        self.cancelled: List[str] = []

    def has_data_source(self, data_source: str) -> bool:
        return data_source in {"main", "db1"}

    def start(self, data_source: str, statement: str) -> str:
        if not self.has_data_source(data_source):
            raise ExecutionError(f"Unknown data source: {data_source}")
        self.started.append((data_source, statement))
        return f"run-{len(self.started)}"

    def wait(self, run_id: str, timeout: float) -> Optional[QueryResult]:
        self.waits.append(run_id)
        if self.pending_rounds > 0:
            self.pending_rounds -= 1
            return None
        if self.error:
            raise ExecutionError(self.error)
        return self.result

    def cancel(self, run_id: str) -> bool:
        self.cancelled.append(run_id)
        return True


@pytest.fixture
def scripted_engine():
    return ScriptedEngine()


@pytest.fixture
def query_engine(engine):
    qe = ThreadPoolQueryEngine({"main": str(engine.url)}, engine_factory=lambda url: engine)
    yield qe
    qe.shutdown()


@pytest.fixture
def dispatcher(query_engine):
    return ExecutionDispatcher(query_engine, secret_key="test-secret-for-continuation-tokens", time_budget=5.0)


@pytest.fixture
def client(session_factory, dispatcher):
    app = create_app()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return TestClient(app)
