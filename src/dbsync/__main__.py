"""
Main entrypoint: runs the replication scheduler in one process.

FastAPI runs separately under uvicorn (status, conflicts, failover).

Usage:
    python -m dbsync init          # create replication schema on every node
    python -m dbsync tick          # run one replication tick and print the report
    python -m dbsync simulate version  # stage a conflict (see dbsync.scripts.simulate)
    python -m dbsync               # starts the scheduler (runs until interrupted)
    uvicorn dbsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import json
import logging
import sys
from dataclasses import asdict

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_simulate(argv) -> None:
    from dbsync.scripts.simulate import run_simulate
    run_simulate(argv)


def _run_init() -> None:
    from dbsync.db.engine import get_pool

    pool = get_pool()
    for name, result in pool.test_connections().items():
        logger.info("Node %s: %s", name, result["status"])


async def _run_tick() -> None:
    from dbsync.runtime import get_runtime

    runtime = get_runtime()
    report = await runtime.worker.run_once()
    print(json.dumps(asdict(report), default=str, indent=2))
    runtime.pool.dispose()


async def _run_worker() -> None:
    from dbsync.runtime import get_runtime
    from dbsync.scheduler.jobs import build_scheduler

    runtime = get_runtime()
    config = runtime.worker.get_config()

    for name, result in runtime.pool.test_connections().items():
        if result["status"] != "connected":
            logger.warning("Node %s is unreachable at startup: %s", name, result["error"])

    scheduler = build_scheduler(runtime.worker)
    scheduler.start()
    logger.info(
        "Scheduler started (primary %s, tick every %ss)",
        runtime.designation.current_primary,
        config.interval_seconds,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        close = getattr(runtime.worker.notifier, "close", None)
        if close is not None:
            await close()
        runtime.pool.dispose()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m dbsync init|tick|simulate` or just `python -m dbsync`
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "init":
        _run_init()
    elif command == "tick":
        asyncio.run(_run_tick())
    elif command == "simulate":
        _run_simulate(sys.argv[2:])
    else:
        asyncio.run(_run_worker())
