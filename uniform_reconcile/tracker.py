"""
Run tracking for execute-mode reconciliation commands.

Each run that may write is recorded in the ``_migrations`` collection when
it starts and updated when it finishes, so there is a trail of what was
applied, by whom and with which outcome.
"""

import getpass
import logging
import socket
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .store import DocumentStore

logger = logging.getLogger(__name__)

MIGRATIONS_COLLECTION = "_migrations"

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_INTERRUPTED = "interrupted"


def _applied_by() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


def start_run(
    store: DocumentStore,
    command: str,
    options: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> str:
    """Record a run as started and return its id."""
    started_at = now or datetime.now(timezone.utc)
    run_id = f"{command}_{started_at.strftime('%Y%m%dT%H%M%S%fZ')}"
    store.insert_one(MIGRATIONS_COLLECTION, {
        "_id": run_id,
        "migration_id": run_id,
        "command": command,
        "mode": "execute",
        "options": options or {},
        "status": STATUS_RUNNING,
        "applied_by": _applied_by(),
        "started_at": started_at,
        "finished_at": None,
        "summary": {},
    })
    logger.info("Recorded run %s in %s", run_id, MIGRATIONS_COLLECTION)
    return run_id


def finish_run(
    store: DocumentStore,
    run_id: str,
    status: str,
    summary: Dict[str, Any],
    now: Optional[datetime] = None,
) -> None:
    store.update_one(MIGRATIONS_COLLECTION, {"_id": run_id}, {
        "status": status,
        "summary": summary,
        "finished_at": now or datetime.now(timezone.utc),
    })


def list_runs(store: DocumentStore, limit: int = 20, command: Optional[str] = None) -> List[Dict[str, Any]]:
    """Recorded runs, most recent first."""
    query = {"command": command} if command else {}
    runs = list(store.find(MIGRATIONS_COLLECTION, query))

    def started(run):
        value = run.get("started_at")
        if not isinstance(value, datetime):
            return datetime.min
        if value.tzinfo is not None:
            # pymongo hands back naive UTC datetimes
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    runs.sort(key=started, reverse=True)
    return runs[:limit]
