import os
import tempfile
from datetime import date
from pathlib import Path

# Configure the application for tests *before* importing any healthcast modules
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="healthcast-tests-"))
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_RUNTIME_DIR / 'app.db'}")
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("FORECAST_ENGINE", "seasonal")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from healthcast.db.session import build_engine, get_db, init_db
from healthcast.main import app
from healthcast.models import ImportedAggregate
from healthcast.routers.forecast import get_orchestrator
from healthcast.services.orchestrator import build_orchestrator


@pytest.fixture(scope="function")
def engine(tmp_path):
    # file-backed so worker threads (asyncio.to_thread) each get a real connection
    eng = build_engine(f"sqlite:///{tmp_path / 'healthcast.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def client(session_factory):
    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: build_orchestrator(session_factory=session_factory)
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_orchestrator, None)


@pytest.fixture(scope="function")
def seed_monthly(db):
    """Insert imported monthly counts for an entity, starting at ``start``."""

    def _seed(entity_key, values, start=date(2020, 1, 1), location_id=None):
        year, month = start.year, start.month
        for v in values:
            db.add(ImportedAggregate(
                entity_key=entity_key,
                period=date(year, month, 1),
                count=v,
                location_id=location_id,
                source_label="pytest",
            ))
            month += 1
            if month > 12:
                year, month = year + 1, 1
        db.commit()

    return _seed
