"""Task record store: per-issue records, progress logs and cancellation flags.

Every function here accepts a connection from ``db.engine.get_db`` and is
safe to call against a fresh database. Reads of missing or corrupted rows
return ``None`` (or skip the row) instead of raising.
"""

import json
import logging
import sqlite3
import time
from dataclasses import fields
from datetime import datetime

from issue_orchestrator.db.models import INITIALIZING, TaskRecord

logger = logging.getLogger(__name__)

MAX_PROGRESS_LOG = 500

_RECORD_FIELDS = {f.name for f in fields(TaskRecord)}


def sanitize_unicode(text: str) -> str:
    """Replace unpaired UTF-16 surrogates with U+FFFD.

    A high surrogate immediately followed by a low surrogate is a valid
    pair and is kept as-is.
    """
    result = []
    i = 0
    n = len(text)
    while i < n:
        code = ord(text[i])
        if 0xD800 <= code <= 0xDBFF:
            if i + 1 < n and 0xDC00 <= ord(text[i + 1]) <= 0xDFFF:
                result.append(text[i])
                result.append(text[i + 1])
                i += 2
                continue
            result.append("\ufffd")
        elif 0xDC00 <= code <= 0xDFFF:
            result.append("\ufffd")
        else:
            result.append(text[i])
        i += 1
    return "".join(result)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _log_timestamp() -> str:
    # e.g. "3:04:05 PM"
    return datetime.now().strftime("%I:%M:%S %p").lstrip("0")


def create_initial_task(
    issue_key: str,
    issue_summary: str,
    issue_url: str,
    repo_name: str,
    branch_name: str,
    worktree_path: str,
    base_branch: str,
) -> TaskRecord:
    """Build (but do not save) a fresh record in the 'initializing' state."""
    now = _now_ms()
    return TaskRecord(
        task_id=issue_key,
        issue_key=issue_key,
        issue_summary=sanitize_unicode(issue_summary),
        issue_url=issue_url,
        repo_name=repo_name,
        branch_name=branch_name,
        worktree_path=worktree_path,
        base_branch=base_branch,
        status=INITIALIZING,
        created_at=now,
        updated_at=now,
    )


def get_task(db: sqlite3.Connection, issue_key: str) -> TaskRecord | None:
    """Get a task record by issue key."""
    row = db.execute(
        "SELECT payload FROM tasks WHERE issue_key = ?", (issue_key,)
    ).fetchone()
    if not row:
        return None
    return _parse_record(row["payload"])


def save_task(db: sqlite3.Connection, task: TaskRecord) -> TaskRecord:
    """Write a record, overwriting any previous one, and bump updatedAt."""
    task.updated_at = _now_ms()
    db.execute(
        """INSERT INTO tasks (issue_key, payload, updated_at) VALUES (?, ?, ?)
           ON CONFLICT(issue_key) DO UPDATE SET
               payload = excluded.payload, updated_at = excluded.updated_at""",
        (task.issue_key, json.dumps(task.to_dict()), task.updated_at),
    )
    db.commit()
    return task


def update_task_status(
    db: sqlite3.Connection,
    issue_key: str,
    status: str,
    **changes,
) -> TaskRecord | None:
    """Set a task's status and merge any extra field changes.

    Returns the updated record, or None if the task does not exist.
    """
    task = get_task(db, issue_key)
    if not task:
        return None

    unknown = set(changes) - _RECORD_FIELDS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    task.status = status
    for name, value in changes.items():
        if isinstance(value, str):
            value = sanitize_unicode(value)
        setattr(task, name, value)
    return save_task(db, task)


def append_progress_log(db: sqlite3.Connection, issue_key: str, message: str) -> None:
    """Append a timestamped line to a task's progress log, keeping the newest entries."""
    task = get_task(db, issue_key)
    if not task:
        return
    task.progress_log.append(f"[{_log_timestamp()}] {sanitize_unicode(message)}")
    if len(task.progress_log) > MAX_PROGRESS_LOG:
        task.progress_log = task.progress_log[-MAX_PROGRESS_LOG:]
    save_task(db, task)


def list_tasks(db: sqlite3.Connection) -> list[TaskRecord]:
    """List all readable task records, most recently updated first."""
    rows = db.execute(
        "SELECT issue_key, payload FROM tasks ORDER BY updated_at DESC"
    ).fetchall()
    tasks = []
    for row in rows:
        task = _parse_record(row["payload"])
        if task is None:
            logger.warning("Skipping corrupted task record: %s", row["issue_key"])
            continue
        tasks.append(task)
    return tasks


def remove_task(db: sqlite3.Connection, issue_key: str) -> bool:
    """Delete a task record. Returns whether a record was removed."""
    cursor = db.execute("DELETE FROM tasks WHERE issue_key = ?", (issue_key,))
    db.commit()
    return cursor.rowcount > 0


# ── Cancellation flags ──────────────────────────────────────────────────────


def request_cancel(db: sqlite3.Connection, issue_key: str) -> None:
    """Raise the cancellation flag for a task."""
    db.execute(
        "INSERT OR REPLACE INTO cancel_flags (issue_key) VALUES (?)", (issue_key,)
    )
    db.commit()


def is_cancel_requested(db: sqlite3.Connection, issue_key: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM cancel_flags WHERE issue_key = ?", (issue_key,)
    ).fetchone()
    return row is not None


def clear_cancel(db: sqlite3.Connection, issue_key: str) -> None:
    db.execute("DELETE FROM cancel_flags WHERE issue_key = ?", (issue_key,))
    db.commit()


def _parse_record(payload: str) -> TaskRecord | None:
    try:
        data = json.loads(payload)
        return TaskRecord.from_dict(data)
    except (ValueError, KeyError, TypeError, AttributeError):
        return None
