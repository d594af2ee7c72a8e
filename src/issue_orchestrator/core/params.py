"""Orchestration parameters handed from a dispatcher to a background run."""

import json
import sqlite3

from issue_orchestrator.db.models import FeedbackParams, RunParams, params_from_dict


def save_params(
    db: sqlite3.Connection,
    issue_key: str,
    params: RunParams | FeedbackParams,
) -> None:
    """Store params for a task, replacing any earlier ones."""
    db.execute(
        "INSERT OR REPLACE INTO orchestration_params (issue_key, payload) VALUES (?, ?)",
        (issue_key, json.dumps(params.to_dict())),
    )
    db.commit()


def get_params(db: sqlite3.Connection, issue_key: str) -> RunParams | FeedbackParams | None:
    """Read params for a task. Malformed payloads read as absent."""
    row = db.execute(
        "SELECT payload FROM orchestration_params WHERE issue_key = ?", (issue_key,)
    ).fetchone()
    if not row:
        return None
    try:
        return params_from_dict(json.loads(row["payload"]))
    except (ValueError, KeyError, TypeError, AttributeError):
        return None


def clear_params(db: sqlite3.Connection, issue_key: str) -> None:
    db.execute("DELETE FROM orchestration_params WHERE issue_key = ?", (issue_key,))
    db.commit()
