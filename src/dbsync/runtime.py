"""
Process-wide wiring of the replication services.

Everything shares one ReplicaPool; the worker and the conflict resolver both
read the primary through PrimaryCache instances that the designation service
invalidates after a switch. The caches re-read the state file when it has
changed, so a switch made by another process (the API) reaches the worker
once the cache expires.
"""
from dataclasses import dataclass
from typing import Optional

from dbsync.config import get_settings
from dbsync.db.engine import ReplicaPool, get_pool
from dbsync.notify.telegram import build_notifier
from dbsync.replication.applier import RecordApplier
from dbsync.replication.conflicts import ConflictResolver
from dbsync.replication.primary import PrimaryCache, PrimaryDesignationService
from dbsync.replication.worker import SyncConfig, SyncWorker


@dataclass
class Runtime:
    pool: ReplicaPool
    designation: PrimaryDesignationService
    applier: RecordApplier
    worker: SyncWorker
    resolver: ConflictResolver


def build_runtime(pool: ReplicaPool, settings=None, notifier=None) -> Runtime:
    settings = settings or get_settings()
    designation = PrimaryDesignationService.from_settings(pool, settings)
    applier = RecordApplier(pool)

    def new_cache() -> PrimaryCache:
        return designation.register_cache(
            PrimaryCache(designation.reload, settings.primary_cache_ttl_seconds)
        )

    worker = SyncWorker(
        pool,
        new_cache(),
        applier=applier,
        notifier=notifier or build_notifier(settings),
        config=SyncConfig.from_settings(settings),
    )
    designation.attach_worker(worker)
    resolver = ConflictResolver(pool, applier, new_cache().get)
    return Runtime(pool, designation, applier, worker, resolver)


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(get_pool())
    return _runtime
