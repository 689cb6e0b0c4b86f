"""
Primary designation: which node is authoritative, and safe switching.

The designation lives in a JSON state file (current primary, last switch
time, bounded history). A switch runs health and consistency checks first
and either commits completely or leaves the current primary untouched with a
failed history entry naming the precondition that stopped it.
"""
import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, inspect, select

from dbsync.db.engine import ReplicaPool
from dbsync.models.designation import (
    DesignationState,
    PrimaryDesignation,
    SwitchRecord,
    SwitchStatus,
)
from dbsync.replication.schema import DELETED_FIELD, get_schema, tracked_tables

logger = logging.getLogger(__name__)

# Responses slower than this raise a pre-check warning.
_SLOW_RESPONSE_MS = 1000


class SwitchPreconditionError(RuntimeError):
    """A switch was refused; `precondition` names the check that failed."""

    def __init__(self, precondition: str, message: str, report: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.precondition = precondition
        self.report = report


class SwitchInProgressError(RuntimeError):
    """Another switch or rollback is already running."""


class PrimaryCache:
    """Caches the current primary name for a bounded time."""

    def __init__(
        self,
        provider: Callable[[], str],
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._provider = provider
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: Optional[str] = None
        self._expires_at = 0.0

    def get(self) -> str:
        now = self._clock()
        if self._value is None or now >= self._expires_at:
            self._value = self._provider()
            self._expires_at = now + self._ttl
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self._expires_at = 0.0


@dataclass
class SwitchResult:
    success: bool
    previous_primary: str
    current_primary: str
    switch_id: str
    consistency_report: Optional[Dict[str, Any]] = None
    message: str = ""


class PrimaryDesignationService:
    """Reads and changes the primary designation."""

    def __init__(
        self,
        pool: ReplicaPool,
        state_file: Path,
        default_primary: str,
        history_limit: int = 10,
        connect_timeout: float = 10,
    ):
        self.pool = pool
        self.state_file = Path(state_file)
        self.default_primary = default_primary
        self.history_limit = history_limit
        self.connect_timeout = connect_timeout
        self.state = DesignationState.STABLE
        self._lock = asyncio.Lock()
        self._caches: List[PrimaryCache] = []
        self._worker = None
        self._stamp = None
        self._designation = self._load()
        self._stamp = self._file_stamp()

    @classmethod
    def from_settings(cls, pool: ReplicaPool, settings) -> "PrimaryDesignationService":
        return cls(
            pool,
            state_file=Path(settings.primary_state_file),
            default_primary=settings.default_primary,
            history_limit=settings.primary_history_limit,
            connect_timeout=settings.connect_timeout_seconds,
        )

    # ─── Wiring ───────────────────────────────────────────────────────────────

    @property
    def current_primary(self) -> str:
        return self._designation.current_primary

    @property
    def last_switch_time(self) -> Optional[datetime]:
        return self._designation.last_switch_time

    def register_cache(self, cache: PrimaryCache) -> PrimaryCache:
        """Caches registered here are invalidated after every successful switch."""
        self._caches.append(cache)
        return cache

    def attach_worker(self, worker) -> None:
        self._worker = worker

    def reload(self) -> str:
        """
        Current primary, re-read from the state file if another process has
        rewritten it since (a switch made through the API, for instance).
        """
        stamp = self._file_stamp()
        if stamp is not None and stamp != self._stamp and not self._lock.locked():
            previous = self.current_primary
            self._designation = self._load()
            self._stamp = self._file_stamp()
            if self.current_primary != previous:
                logger.info("Primary changed on disk: %s -> %s", previous, self.current_primary)
        return self.current_primary

    # ─── Read operations ──────────────────────────────────────────────────────

    def current(self) -> Dict[str, Any]:
        return {
            "current_primary": self.reload(),
            "available_nodes": self.pool.names,
            "last_switch_time": self.last_switch_time,
            "state": self.state.value,
        }

    def history(self, limit: int = 10) -> List[SwitchRecord]:
        """Switch attempts, newest first."""
        return list(reversed(self._designation.history))[:limit]

    async def health_check(self, node: Optional[str] = None) -> Dict[str, Any]:
        """
        Probe one node, or every node when `node` is None.

        Returns the probe dict for a single node, else {node: probe}.
        """
        nodes = [self.pool.require(node)] if node else self.pool.names
        probes = await asyncio.gather(*(self._probe_with_timeout(n) for n in nodes))
        results = dict(zip(nodes, probes))
        return results[node] if node else results

    async def consistency_check(self, node_a: str, node_b: str) -> Dict[str, Any]:
        """Compare non-deleted row counts of every tracked table on two nodes."""
        self.pool.require(node_a)
        self.pool.require(node_b)
        loop = asyncio.get_event_loop()

        details: Dict[str, Dict[str, Any]] = {}
        for table in tracked_tables():
            try:
                a_count, b_count = await asyncio.gather(
                    loop.run_in_executor(None, self._count_rows, node_a, table),
                    loop.run_in_executor(None, self._count_rows, node_b, table),
                )
                details[table] = {
                    "consistent": a_count == b_count,
                    "source_records": a_count,
                    "target_records": b_count,
                    "difference": a_count - b_count,
                }
            except Exception as exc:
                logger.warning("Consistency check of %s failed (%s vs %s): %s",
                               table, node_a, node_b, exc)
                details[table] = {"consistent": False, "error": str(exc)}

        consistent_tables = sum(1 for d in details.values() if d["consistent"])
        return {
            "source": node_a,
            "target": node_b,
            "consistent": consistent_tables == len(details),
            "total_tables": len(details),
            "consistent_tables": consistent_tables,
            "details": details,
            "checked_at": datetime.utcnow(),
        }

    async def overview(self) -> Dict[str, Any]:
        return {
            **self.current(),
            "health": await self.health_check(),
            "recent_switches": self.history(5),
        }

    async def pre_check(self, target: str) -> Dict[str, Any]:
        """Dry run of a switch: what would block it, and what to do about it."""
        self.pool.require(target)
        current = self.current_primary
        if target == current:
            raise SwitchPreconditionError("same_node", f"{target} is already the primary")

        health, consistency = await asyncio.gather(
            self.health_check(target), self.consistency_check(current, target)
        )
        warnings: List[str] = []
        recommendations: List[str] = []
        if health["status"] != "healthy":
            warnings.append(f"target node {target} is {health['status']}: {health.get('error')}")
            recommendations.append("repair the target node before switching")
        if not consistency["consistent"]:
            inconsistent = consistency["total_tables"] - consistency["consistent_tables"]
            warnings.append(f"{inconsistent} table(s) differ between {current} and {target}")
            recommendations.append("run a sync and wait for it to finish before switching")
        if (health.get("response_time_ms") or 0) > _SLOW_RESPONSE_MS:
            warnings.append(f"target node responds slowly ({health['response_time_ms']} ms)")
            recommendations.append("check network latency to the target node")

        return {
            "current_primary": current,
            "target": target,
            "health": health,
            "consistency": consistency,
            "warnings": warnings,
            "recommendations": recommendations,
            "can_switch": health["status"] == "healthy" and consistency["consistent"],
        }

    async def trigger_sync(self):
        """Run one replication tick now; None if a tick is already running."""
        if self._worker is None:
            raise RuntimeError("no sync worker attached")
        return await self._worker.run_once()

    # ─── Switching ────────────────────────────────────────────────────────────

    async def switch(
        self,
        target: str,
        *,
        force: bool = False,
        skip_consistency_check: bool = False,
        reason: str = "manual switch",
        operator: str = "system",
    ) -> SwitchResult:
        """
        Make `target` the primary.

        Raises:
            UnknownNodeError: `target` is not a configured node (no history entry).
            SwitchInProgressError: another switch is running.
            SwitchPreconditionError: a safety check failed; primary unchanged.
        """
        self.pool.require(target)
        self.reload()
        if self._lock.locked():
            raise SwitchInProgressError("a primary switch is already in progress")

        async with self._lock:
            previous = self.current_primary
            record = SwitchRecord(
                id=uuid.uuid4().hex,
                from_node=previous,
                to_node=target,
                reason=reason,
                operator=operator,
                force=force,
                skip_consistency_check=skip_consistency_check,
            )
            self._designation.history.append(record)
            self.state = DesignationState.SWITCHING
            logger.info("Switching primary %s -> %s (%s, by %s)", previous, target, reason, operator)

            try:
                self._check_preconditions(record, await self._gather_checks(record))
                self._commit(record)
            except Exception as exc:
                record.status = SwitchStatus.FAILED
                record.error = str(exc)
                record.finished_at = datetime.utcnow()
                self.state = DesignationState.FAILED
                self._save_quietly()
                logger.error("Primary switch %s -> %s failed: %s", previous, target, exc)
                raise

            for cache in self._caches:
                cache.invalidate()
            self.state = DesignationState.STABLE
            logger.info("Primary is now %s (was %s)", target, previous)
            return SwitchResult(
                success=True,
                previous_primary=previous,
                current_primary=target,
                switch_id=record.id,
                consistency_report=record.consistency_report,
                message=f"primary switched from {previous} to {target}",
            )

    async def rollback(self, operator: str = "system") -> SwitchResult:
        """Switch back to the node the most recent completed switch moved away from."""
        self.reload()
        last = next(
            (r for r in reversed(self._designation.history) if r.status == SwitchStatus.COMPLETED),
            None,
        )
        if last is None:
            raise SwitchPreconditionError("no_history", "no completed switch to roll back")
        return await self.switch(
            last.from_node, reason=f"rollback to {last.from_node}", operator=operator
        )

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _gather_checks(self, record: SwitchRecord) -> Dict[str, Any]:
        if record.to_node == record.from_node:
            return {}
        checks = {"health": await self.health_check(record.to_node)}
        if not record.skip_consistency_check:
            checks["consistency"] = await self.consistency_check(record.from_node, record.to_node)
            record.consistency_report = _jsonable_report(checks["consistency"])
        return checks

    @staticmethod
    def _check_preconditions(record: SwitchRecord, checks: Dict[str, Any]) -> None:
        if record.to_node == record.from_node:
            raise SwitchPreconditionError("same_node", f"{record.to_node} is already the primary")

        health = checks["health"]
        if health["status"] != "healthy" and not record.force:
            raise SwitchPreconditionError(
                "unhealthy",
                f"target node {record.to_node} is {health['status']}: {health.get('error')}",
                health,
            )

        consistency = checks.get("consistency")
        if consistency is not None and not consistency["consistent"] and not record.force:
            raise SwitchPreconditionError(
                "inconsistent",
                f"{consistency['total_tables'] - consistency['consistent_tables']} table(s) "
                f"differ between {record.from_node} and {record.to_node}",
                consistency,
            )

    def _commit(self, record: SwitchRecord) -> None:
        previous_time = self._designation.last_switch_time
        self._designation.current_primary = record.to_node
        self._designation.last_switch_time = datetime.utcnow()
        record.status = SwitchStatus.COMPLETED
        record.finished_at = self._designation.last_switch_time
        try:
            self._save()
        except OSError as exc:
            self._designation.current_primary = record.from_node
            self._designation.last_switch_time = previous_time
            raise SwitchPreconditionError("persist", f"could not persist designation: {exc}")

    def _probe(self, node: str) -> Dict[str, Any]:
        checked = datetime.utcnow()
        try:
            latency = self.pool.ping(node)
        except Exception as exc:
            logger.warning("Health probe of %s failed: %s", node, exc)
            return {"status": "error", "connected": False, "error": str(exc), "last_checked": checked}

        try:
            existing = set(inspect(self.pool.engine(node)).get_table_names())
            missing = sorted(set(tracked_tables()) - existing)
            record_count = None if "books" in missing else self._count_rows(node, "books")
        except Exception as exc:
            logger.warning("Health probe of %s could not read the schema: %s", node, exc)
            return {"status": "error", "connected": True, "error": str(exc), "last_checked": checked}

        return {
            "status": "unhealthy" if missing else "healthy",
            "connected": True,
            "response_time_ms": round(latency, 2),
            "has_all_tables": not missing,
            "missing_tables": missing,
            "record_count": record_count,
            "error": f"missing tables: {', '.join(missing)}" if missing else None,
            "last_checked": checked,
        }

    async def _probe_with_timeout(self, node: str) -> Dict[str, Any]:
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._probe, node), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Health probe of %s timed out after %ss", node, self.connect_timeout)
            return {
                "status": "unhealthy",
                "connected": False,
                "error": f"timed out after {self.connect_timeout}s",
                "last_checked": datetime.utcnow(),
            }

    def _count_rows(self, node: str, table_name: str) -> int:
        table = get_schema(table_name).table
        with self.pool.engine(node).connect() as conn:
            return conn.execute(
                select(func.count()).select_from(table).where(table.c[DELETED_FIELD] == 0)
            ).scalar_one()

    def _load(self) -> PrimaryDesignation:
        if self.state_file.exists():
            try:
                designation = PrimaryDesignation.model_validate_json(self.state_file.read_text())
                if designation.current_primary in self.pool:
                    return designation
                logger.warning("Stored primary %s is not a configured node; using %s",
                               designation.current_primary, self.default_primary)
                designation.current_primary = self.default_primary
                return designation
            except ValueError as exc:
                logger.error("Unreadable designation file %s: %s", self.state_file, exc)

        designation = PrimaryDesignation(current_primary=self.default_primary)
        self._designation = designation
        self._save_quietly()
        return designation

    def _save(self) -> None:
        self._designation.history = self._designation.history[-self.history_limit:]
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        tmp.write_text(self._designation.model_dump_json(indent=2))
        os.replace(tmp, self.state_file)
        self._stamp = self._file_stamp()

    def _file_stamp(self):
        try:
            stat = self.state_file.stat()
        except OSError:
            return None
        return stat.st_ino, stat.st_mtime_ns, stat.st_size

    def _save_quietly(self) -> None:
        try:
            self._save()
        except OSError as exc:
            logger.error("Could not persist designation to %s: %s", self.state_file, exc)


def _jsonable_report(report: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in report.items()}
