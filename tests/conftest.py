"""Shared test fixtures."""
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from dbsync.models.catalog import Book, BorrowRecord, Category, ReaderProfile, SystemUser  # noqa: F401
from dbsync.models.change_log import ChangeLogEntry  # noqa: F401
from dbsync.models.conflict import ConflictRecord  # noqa: F401
from dbsync.api.main import create_app
from dbsync.config import Settings
from dbsync.db.engine import ReplicaPool
from dbsync.replication.applier import RecordApplier
from dbsync.replication.primary import PrimaryCache
from dbsync.replication.worker import SyncConfig, SyncWorker
from dbsync.runtime import Runtime, build_runtime, get_runtime

NODES = ("n1", "n2", "n3")


def _memory_engine():
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture(name="node_engines")
def node_engines_fixture():
    """One in-memory SQLite engine per replica node."""
    engines = {name: _memory_engine() for name in NODES}
    yield engines
    for engine in engines.values():
        SQLModel.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(name="pool")
def pool_fixture(node_engines) -> ReplicaPool:
    pool = ReplicaPool(engines=node_engines, connect_timeout=5)
    pool.create_all()
    return pool


@pytest.fixture(name="applier")
def applier_fixture(pool) -> RecordApplier:
    return RecordApplier(pool)


@pytest.fixture(name="primary_cache")
def primary_cache_fixture() -> PrimaryCache:
    return PrimaryCache(lambda: "n1", ttl_seconds=300)


@pytest.fixture(name="notifier")
def notifier_fixture():
    notifier = AsyncMock()
    notifier.notify_conflict = AsyncMock()
    return notifier


@pytest.fixture(name="worker")
def worker_fixture(pool, primary_cache, applier, notifier) -> SyncWorker:
    return SyncWorker(
        pool,
        primary_cache,
        applier=applier,
        notifier=notifier,
        config=SyncConfig(batch_size=100, max_retries=3, soft_deadline_seconds=50),
    )


@pytest.fixture(name="runtime")
def runtime_fixture(pool, notifier, tmp_path) -> Runtime:
    """Fully wired services over the in-memory nodes."""
    settings = Settings(primary_state_file=str(tmp_path / "primary.json"), default_primary="n1")
    return build_runtime(pool, settings=settings, notifier=notifier)


@pytest.fixture(name="client")
def client_fixture(runtime):
    app = create_app()
    app.dependency_overrides[get_runtime] = lambda: runtime
    with TestClient(app) as c:
        yield c
