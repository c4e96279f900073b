"""Shared fixtures: a file-backed SQLite database per test and the services built on it."""

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.db import create_session_factory, get_engine, init_db
from app.core.settings import Settings
from app.services.job_store import JobStore
from app.services.remote_store import SqlRemoteStore
from app.services.sync_service import SyncService
from app.workers.job_runner import JobWorker
from main import create_app


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway database, with the worker loop disabled."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'sync.db'}",
        log_file=str(tmp_path / "logs" / "sync.log"),
        worker_enabled=False,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
    )


@pytest.fixture
def engine(settings: Settings) -> Iterator[Engine]:
    engine = get_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return create_session_factory(engine)


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry policy, recorded instead of slept."""
    return []


@pytest.fixture
def remote_store(session_factory: sessionmaker) -> SqlRemoteStore:
    return SqlRemoteStore(session_factory)


@pytest.fixture
def sync_service(remote_store: SqlRemoteStore, settings: Settings, sleeps: list[float]) -> SyncService:
    return SyncService(remote_store, settings, sleep=sleeps.append)


@pytest.fixture
def job_store(session_factory: sessionmaker) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def worker(job_store: JobStore, sync_service: SyncService, settings: Settings) -> Iterator[JobWorker]:
    worker = JobWorker(job_store, sync_service, settings)
    yield worker
    worker.stop_loop(timeout=1)


@pytest.fixture
def client(settings: Settings) -> Iterator[TestClient]:
    """API client; entering the context runs the lifespan, which creates the tables."""
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client
