"""Tests for PrimaryCache and PrimaryDesignationService."""
import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlmodel import SQLModel

from dbsync.db.engine import UnknownNodeError
from dbsync.models.catalog import Book
from dbsync.models.designation import DesignationState, SwitchStatus
from dbsync.replication.primary import (
    PrimaryCache,
    PrimaryDesignationService,
    SwitchInProgressError,
    SwitchPreconditionError,
)

from support import book, seed_row


@pytest.fixture(name="state_file")
def state_file_fixture(tmp_path):
    return tmp_path / "primary.json"


@pytest.fixture(name="service")
def service_fixture(pool, state_file) -> PrimaryDesignationService:
    return PrimaryDesignationService(pool, state_file, default_primary="n1", connect_timeout=5)


@pytest.fixture(name="bare_node_pool")
def bare_node_pool_fixture(pool, node_engines):
    """n1/n2 bootstrapped; n3 reachable but without any tracked table."""
    SQLModel.metadata.drop_all(node_engines["n3"])
    return pool


# ─── PrimaryCache ─────────────────────────────────────────────────────────────

class TestPrimaryCache:
    def test_caches_until_ttl(self):
        provider = MagicMock(side_effect=["n1", "n2"])
        now = [0.0]
        cache = PrimaryCache(provider, ttl_seconds=300, clock=lambda: now[0])

        assert cache.get() == "n1"
        now[0] = 299
        assert cache.get() == "n1"
        now[0] = 300
        assert cache.get() == "n2"
        assert provider.call_count == 2

    def test_invalidate_forces_reload(self):
        provider = MagicMock(side_effect=["n1", "n2"])
        cache = PrimaryCache(provider, ttl_seconds=300)
        cache.get()
        cache.invalidate()
        assert cache.get() == "n2"


# ─── State file ───────────────────────────────────────────────────────────────

class TestState:
    def test_missing_file_defaults_and_is_created(self, service, state_file):
        assert service.current_primary == "n1"
        assert json.loads(state_file.read_text())["current_primary"] == "n1"

    def test_unreadable_file_falls_back_to_default(self, pool, state_file):
        state_file.write_text("{not json")
        service = PrimaryDesignationService(pool, state_file, default_primary="n2")
        assert service.current_primary == "n2"

    def test_unknown_stored_primary_falls_back(self, pool, state_file):
        state_file.write_text(json.dumps({"current_primary": "n9", "history": []}))
        service = PrimaryDesignationService(pool, state_file, default_primary="n1")
        assert service.current_primary == "n1"

    def test_current(self, service):
        current = service.current()
        assert current["current_primary"] == "n1"
        assert current["available_nodes"] == ["n1", "n2", "n3"]
        assert current["state"] == "stable"


# ─── Health and consistency ───────────────────────────────────────────────────

class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy_node(self, pool, service):
        seed_row(pool, "n2", Book, **book())
        seed_row(pool, "n2", Book, **book(8, is_deleted=1))

        health = await service.health_check("n2")

        assert health["status"] == "healthy"
        assert health["connected"] is True
        assert health["has_all_tables"] is True
        assert health["record_count"] == 1
        assert health["response_time_ms"] >= 0

    @pytest.mark.asyncio
    async def test_missing_tables_is_unhealthy(self, bare_node_pool, state_file):
        service = PrimaryDesignationService(bare_node_pool, state_file, "n1")
        health = await service.health_check("n3")
        assert health["status"] == "unhealthy"
        assert "books" in health["missing_tables"]

    @pytest.mark.asyncio
    async def test_connection_error(self, pool, service):
        with patch.object(pool, "ping", side_effect=RuntimeError("refused")):
            health = await service.health_check("n2")
        assert health["status"] == "error"
        assert health["connected"] is False
        assert "refused" in health["error"]

    @pytest.mark.asyncio
    async def test_timeout_is_unhealthy(self, pool, state_file):
        service = PrimaryDesignationService(pool, state_file, "n1", connect_timeout=0.05)
        with patch.object(service, "_probe", side_effect=lambda node: time.sleep(0.5)):
            health = await service.health_check("n2")
        assert health["status"] == "unhealthy"
        assert "timed out" in health["error"]

    @pytest.mark.asyncio
    async def test_all_nodes(self, service):
        health = await service.health_check()
        assert set(health) == {"n1", "n2", "n3"}

    @pytest.mark.asyncio
    async def test_unknown_node(self, service):
        with pytest.raises(UnknownNodeError):
            await service.health_check("n9")


class TestConsistencyCheck:
    @pytest.mark.asyncio
    async def test_empty_nodes_are_consistent(self, service):
        report = await service.consistency_check("n1", "n2")
        assert report["consistent"] is True
        assert report["consistent_tables"] == report["total_tables"] == 5

    @pytest.mark.asyncio
    async def test_counts_only_live_rows(self, pool, service):
        seed_row(pool, "n1", Book, **book())
        seed_row(pool, "n2", Book, **book())
        seed_row(pool, "n2", Book, **book(8, is_deleted=1))

        report = await service.consistency_check("n1", "n2")

        assert report["details"]["books"]["consistent"] is True

    @pytest.mark.asyncio
    async def test_difference_reported_per_table(self, pool, service):
        seed_row(pool, "n1", Book, **book())

        report = await service.consistency_check("n1", "n2")

        assert report["consistent"] is False
        assert report["details"]["books"] == {
            "consistent": False, "source_records": 1, "target_records": 0, "difference": 1,
        }
        assert report["details"]["categories"]["consistent"] is True

    @pytest.mark.asyncio
    async def test_table_failure_does_not_abort(self, bare_node_pool, state_file):
        service = PrimaryDesignationService(bare_node_pool, state_file, "n1")
        report = await service.consistency_check("n1", "n3")
        assert report["consistent"] is False
        assert "error" in report["details"]["books"]
        assert len(report["details"]) == 5


# ─── Switching ────────────────────────────────────────────────────────────────

class TestSwitch:
    @pytest.mark.asyncio
    async def test_successful_switch_persists_and_invalidates_caches(self, service, pool, state_file):
        cache = service.register_cache(PrimaryCache(lambda: service.current_primary))
        assert cache.get() == "n1"

        result = await service.switch("n2", reason="maintenance", operator="ops")

        assert result.success
        assert result.previous_primary == "n1"
        assert result.current_primary == "n2"
        assert result.consistency_report["consistent"] is True
        assert service.current_primary == "n2"
        assert service.state is DesignationState.STABLE
        assert cache.get() == "n2"
        record = service.history(1)[0]
        assert record.status is SwitchStatus.COMPLETED
        assert record.operator == "ops"
        reloaded = PrimaryDesignationService(pool, state_file, default_primary="n1")
        assert reloaded.current_primary == "n2"
        assert reloaded.last_switch_time is not None

    @pytest.mark.asyncio
    async def test_unhealthy_target_refused(self, bare_node_pool, state_file):
        service = PrimaryDesignationService(bare_node_pool, state_file, "n1")

        with pytest.raises(SwitchPreconditionError) as exc_info:
            await service.switch("n3")

        assert exc_info.value.precondition == "unhealthy"
        assert service.current_primary == "n1"
        assert service.state is DesignationState.FAILED
        record = service.history(1)[0]
        assert record.status is SwitchStatus.FAILED
        assert record.to_node == "n3"
        stored = json.loads(state_file.read_text())
        assert stored["current_primary"] == "n1"
        assert stored["history"][-1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_force_overrides_health(self, bare_node_pool, state_file):
        service = PrimaryDesignationService(bare_node_pool, state_file, "n1")
        result = await service.switch("n3", force=True)
        assert result.current_primary == "n3"

    @pytest.mark.asyncio
    async def test_inconsistent_target_refused(self, pool, service):
        seed_row(pool, "n1", Book, **book())
        with pytest.raises(SwitchPreconditionError) as exc_info:
            await service.switch("n2")
        assert exc_info.value.precondition == "inconsistent"
        assert service.current_primary == "n1"

    @pytest.mark.asyncio
    async def test_skip_consistency_check(self, pool, service):
        seed_row(pool, "n1", Book, **book())
        result = await service.switch("n2", skip_consistency_check=True)
        assert result.current_primary == "n2"
        assert result.consistency_report is None

    @pytest.mark.asyncio
    async def test_same_node_refused(self, service):
        with pytest.raises(SwitchPreconditionError) as exc_info:
            await service.switch("n1")
        assert exc_info.value.precondition == "same_node"
        assert service.history(1)[0].status is SwitchStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_node_leaves_no_history(self, service):
        with pytest.raises(ValueError):
            await service.switch("n9")
        assert service.history() == []

    @pytest.mark.asyncio
    async def test_persist_failure_restores_primary(self, service):
        with patch.object(service, "_save", side_effect=OSError("disk full")):
            with pytest.raises(SwitchPreconditionError) as exc_info:
                await service.switch("n2")
        assert exc_info.value.precondition == "persist"
        assert service.current_primary == "n1"

    @pytest.mark.asyncio
    async def test_concurrent_switch_fails_fast(self, service):
        results = await asyncio.gather(
            service.switch("n2"), service.switch("n3"), return_exceptions=True
        )
        assert sum(isinstance(r, SwitchInProgressError) for r in results) == 1
        assert service.current_primary == "n2"

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, pool, state_file):
        service = PrimaryDesignationService(pool, state_file, "n1", history_limit=3)
        for target in ("n2", "n3", "n1", "n2"):
            await service.switch(target)
        assert len(service.history(10)) == 3
        assert len(json.loads(state_file.read_text())["history"]) == 3


# ─── State file shared between processes ──────────────────────────────────────

class TestReload:
    @pytest.mark.asyncio
    async def test_switch_by_another_service_is_picked_up(self, pool, service, state_file):
        other = PrimaryDesignationService(pool, state_file, default_primary="n1", connect_timeout=5)

        await service.switch("n2", operator="api")

        assert other.current_primary == "n1"
        assert other.reload() == "n2"
        assert other.history()[0].operator == "api"
        assert other.current()["current_primary"] == "n2"

    @pytest.mark.asyncio
    async def test_cache_over_reload_follows_other_process(self, pool, service, state_file):
        other = PrimaryDesignationService(pool, state_file, default_primary="n1", connect_timeout=5)
        cache = PrimaryCache(other.reload, ttl_seconds=0)
        assert cache.get() == "n1"

        await service.switch("n3")

        assert cache.get() == "n3"

    def test_unchanged_file_is_not_reread(self, service):
        with patch.object(service, "_load") as load:
            assert service.reload() == "n1"
        load.assert_not_called()

    def test_missing_file_keeps_current_value(self, service, state_file):
        state_file.unlink()
        assert service.reload() == "n1"

    @pytest.mark.asyncio
    async def test_rollback_uses_history_written_elsewhere(self, pool, service, state_file):
        other = PrimaryDesignationService(pool, state_file, default_primary="n1", connect_timeout=5)
        await service.switch("n2")

        result = await other.rollback(operator="ops")

        assert result.previous_primary == "n2"
        assert result.current_primary == "n1"


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_returns_to_previous_primary(self, service):
        await service.switch("n2")

        result = await service.rollback(operator="ops")

        assert result.current_primary == "n1"
        history = service.history(10)
        assert len(history) == 2
        assert history[0].reason == "rollback to n1"
        assert all(r.status is SwitchStatus.COMPLETED for r in history)

    @pytest.mark.asyncio
    async def test_rollback_without_history(self, service):
        with pytest.raises(SwitchPreconditionError) as exc_info:
            await service.rollback()
        assert exc_info.value.precondition == "no_history"


class TestOperatorViews:
    @pytest.mark.asyncio
    async def test_pre_check_warns_about_inconsistency(self, pool, service):
        seed_row(pool, "n1", Book, **book())

        check = await service.pre_check("n2")

        assert check["can_switch"] is False
        assert check["warnings"]
        assert check["recommendations"]
        assert check["health"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_pre_check_clean(self, service):
        check = await service.pre_check("n2")
        assert check["can_switch"] is True
        assert check["warnings"] == []

    @pytest.mark.asyncio
    async def test_pre_check_same_node(self, service):
        with pytest.raises(SwitchPreconditionError):
            await service.pre_check("n1")

    @pytest.mark.asyncio
    async def test_overview(self, service):
        await service.switch("n2")
        overview = await service.overview()
        assert overview["current_primary"] == "n2"
        assert set(overview["health"]) == {"n1", "n2", "n3"}
        assert len(overview["recent_switches"]) == 1

    @pytest.mark.asyncio
    async def test_trigger_sync_delegates_to_worker(self, service):
        worker = MagicMock()
        worker.run_once = AsyncMock(return_value="report")
        service.attach_worker(worker)
        assert await service.trigger_sync() == "report"

    @pytest.mark.asyncio
    async def test_trigger_sync_without_worker(self, service):
        with pytest.raises(RuntimeError):
            await service.trigger_sync()
