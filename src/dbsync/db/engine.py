"""Replica pool: one SQLModel engine per named node, plus the process-wide singleton."""
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine, make_url
from sqlmodel import Session, SQLModel, create_engine

from dbsync.config import get_settings

logger = logging.getLogger(__name__)

# MySQL-family triggers skip logging while this session variable is set.
_CAPTURE_FLAG = "@sync_in_progress"
_SESSION_VARIABLE_DIALECTS = {"mysql", "mariadb"}


class UnknownNodeError(ValueError):
    """Raised when a node name is not part of the configured replica set."""


def _build_engine(url: str, connect_timeout: int) -> Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": connect_timeout},
        )
    return create_engine(
        url,
        connect_args={"connect_timeout": connect_timeout},
        pool_timeout=connect_timeout,
        pool_pre_ping=True,
    )


class ReplicaPool:
    """
    Named set of database engines, one per replica node.

    Engines are built lazily from URLs, or injected directly (tests pass
    in-memory engines).
    """

    def __init__(
        self,
        nodes: Optional[Dict[str, str]] = None,
        *,
        engines: Optional[Dict[str, Engine]] = None,
        connect_timeout: int = 10,
    ):
        self._urls: Dict[str, str] = dict(nodes or {})
        self._engines: Dict[str, Engine] = dict(engines or {})
        self.connect_timeout = connect_timeout
        if not self._urls and not self._engines:
            raise ValueError("ReplicaPool needs at least one node")

    @property
    def names(self) -> List[str]:
        """Node names in configuration order."""
        ordered = list(self._urls)
        ordered += [n for n in self._engines if n not in self._urls]
        return ordered

    def __contains__(self, name: str) -> bool:
        return name in self._urls or name in self._engines

    def require(self, name: str) -> str:
        if name not in self:
            raise UnknownNodeError(f"unknown node {name!r}")
        return name

    def engine(self, name: str) -> Engine:
        if name not in self._engines:
            url = self._urls.get(self.require(name))
            self._engines[name] = _build_engine(url, self.connect_timeout)
        return self._engines[name]

    @contextmanager
    def session(self, name: str) -> Generator[Session, None, None]:
        with Session(self.engine(name)) as session:
            yield session

    def ping(self, name: str) -> float:
        """Round-trip a trivial query; returns latency in milliseconds."""
        started = time.perf_counter()
        with self.engine(name).connect() as conn:
            conn.execute(text("SELECT 1"))
        return (time.perf_counter() - started) * 1000.0

    def test_connections(self) -> Dict[str, Dict[str, Optional[str]]]:
        """Probe every node; a failing node is reported, never raised."""
        results = {}
        for name in self.names:
            try:
                self.ping(name)
                results[name] = {"status": "connected", "error": None}
            except Exception as exc:
                logger.warning("Node %s unreachable: %s", name, exc)
                results[name] = {"status": "error", "error": str(exc)}
        return results

    def create_all(self) -> None:
        """Create replication and tracked tables on every reachable node."""
        # Import all models so metadata is populated before create_all
        from dbsync.models import catalog, change_log, conflict  # noqa: F401
        from dbsync.db.migrations import run_migrations

        for name in self.names:
            try:
                engine = self.engine(name)
                SQLModel.metadata.create_all(engine)
                run_migrations(engine)
            except Exception as exc:
                logger.error("Schema bootstrap failed on %s: %s", name, exc)

    def dispose(self) -> None:
        for engine in self._engines.values():
            engine.dispose()


@contextmanager
def suppressed_capture(session: Session, suppress: bool = True) -> Generator[None, None, None]:
    """
    Mark the session as a replay so the node's change capture ignores it.

    Only MySQL-family nodes hold the flag as session state; other dialects
    have nothing to set and the scope is a no-op.
    """
    dialect = session.get_bind().dialect.name
    active = suppress and dialect in _SESSION_VARIABLE_DIALECTS
    if active:
        session.connection().execute(text(f"SET {_CAPTURE_FLAG} = 1"))
    try:
        yield
    finally:
        if active:
            session.connection().execute(text(f"SET {_CAPTURE_FLAG} = NULL"))


_pool: Optional[ReplicaPool] = None


def get_pool() -> ReplicaPool:
    """Return the module-level pool, creating it (and the schema) on first call."""
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = ReplicaPool(
            settings.nodes, connect_timeout=settings.connect_timeout_seconds
        )
        _pool.create_all()
    return _pool
