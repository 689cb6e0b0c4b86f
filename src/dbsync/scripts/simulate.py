"""
Stage a replication conflict on a live deployment.

Edits one book directly on a replica (bypassing change capture) and queues
an UPDATE for it on the primary, so the next tick reports a conflict of the
chosen kind.

Usage:
    python -m dbsync simulate version|time|mismatch [--book-id ID] [--target NODE]

Scenarios:
    version   target sync_version jumps 5 ahead of the primary's
    time      target last_updated_time moves one day into the future
    mismatch  target title differs and the row is marked as written there
"""
import argparse
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, update

from dbsync.db.engine import ReplicaPool, suppressed_capture
from dbsync.models.change_log import RETRYABLE_STATUSES, ChangeLogEntry
from dbsync.replication.applier import RecordApplier
from dbsync.replication.change_log import ChangeLogStore
from dbsync.replication.schema import get_schema
from dbsync.runtime import get_runtime

SCENARIOS = ("version", "time", "mismatch")


def _target_edit(scenario: str, source: Dict[str, Any], target: str) -> Dict[str, Any]:
    if scenario == "version":
        return {
            "sync_version": (source.get("sync_version") or 0) + 5,
            "last_updated_time": datetime.utcnow(),
        }
    if scenario == "time":
        return {"last_updated_time": datetime.utcnow() + timedelta(days=1)}
    if scenario == "mismatch":
        return {"title": f"{source['title']} (edited on {target})", "db_source": target}
    raise ValueError(f"unknown scenario {scenario!r}, expected one of {', '.join(SCENARIOS)}")


def stage_conflict(
    pool: ReplicaPool,
    primary: str,
    target: str,
    scenario: str,
    book_id: int = 1,
) -> int:
    """
    Diverge `book_id` on `target` and queue an UPDATE for it on `primary`.

    The queued change also stamps the book's description on the primary, so
    the target copy differs in a business field and goes through conflict
    detection instead of being treated as already in sync.

    Returns the id of the queued change-log entry.
    """
    pool.require(target)
    if target == primary:
        raise ValueError("target must be a replica, not the primary")

    schema = get_schema("books")
    source = RecordApplier(pool).fetch_row(schema, book_id, primary)
    if source is None:
        raise LookupError(f"book {book_id} does not exist on {primary}")

    table = schema.table
    with pool.engine(target).begin() as conn:
        conn.execute(
            update(table)
            .where(table.c[schema.primary_key] == book_id)
            .values(**_target_edit(scenario, source, target))
        )

    stamp = f"conflict simulation ({scenario}) {datetime.utcnow():%Y-%m-%d %H:%M:%S}"
    log = ChangeLogEntry.__table__
    with pool.session(primary) as session:
        with suppressed_capture(session):
            session.connection().execute(
                update(table)
                .where(table.c[schema.primary_key] == book_id)
                .values(description=stamp)
            )
        # Older queued entries for this row would replicate before the staged one.
        session.connection().execute(
            delete(log).where(
                log.c.table_name == "books",
                log.c.record_id == str(book_id),
                log.c.sync_status.in_(RETRYABLE_STATUSES),
            )
        )
        session.commit()
        return ChangeLogStore.append(
            session, "books", book_id, "UPDATE", {**source, "description": stamp}, primary
        )


def run_simulate(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(prog="python -m dbsync simulate",
                                     description="Stage a replication conflict")
    parser.add_argument("scenario", choices=SCENARIOS)
    parser.add_argument("--book-id", type=int, default=1, help="book to diverge (default: 1)")
    parser.add_argument("--target", help="replica to edit (default: first non-primary node)")
    args = parser.parse_args(argv)

    runtime = get_runtime()
    pool = runtime.pool
    primary = runtime.designation.current_primary
    target = args.target or next((n for n in pool.names if n != primary), None)
    if target is None:
        print("❌ Only one node is configured; nothing to conflict with.")
        sys.exit(1)

    print("\n🔍 Node connectivity:")
    for name, result in pool.test_connections().items():
        mark = "✅" if result["status"] == "connected" else "❌"
        print(f"  {mark} {name}: {result['status']}")

    print(f"\n📌 Scenario '{args.scenario}': book {args.book_id}, primary {primary}, target {target}")
    try:
        log_id = stage_conflict(pool, primary, target, args.scenario, args.book_id)
    except (LookupError, ValueError) as exc:
        print(f"❌ {exc}")
        sys.exit(1)

    print(f"✅ Queued change-log entry {log_id}.")
    print("   The next tick (or `python -m dbsync tick`) should record a conflict on "
          f"{target}.\n")
