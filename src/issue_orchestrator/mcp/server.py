"""MCP server exposing issue orchestrator tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from issue_orchestrator.config import Config, ConfigError, get_config
from issue_orchestrator.core import dispatch as dispatch_mod
from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.db.engine import init_db
from issue_orchestrator.db.models import STATUS_LABELS, IssueSnapshot
from issue_orchestrator.integrations.linear import LinearClient, LinearError


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    app = AppContext(db=init_db(config.db_path), config=config)
    try:
        yield app
    finally:
        app.db.close()


mcp = FastMCP("issue-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _issue(config: Config, issue_key: str, title: str | None, description: str) -> IssueSnapshot:
    if title:
        return IssueSnapshot(key=issue_key, title=title, description=description)
    if not config.linear_api_key:
        raise ConfigError("No LINEAR_API_KEY set; pass a title to describe the issue")
    client = LinearClient(config.linear_api_key)
    try:
        return client.fetch_issue(issue_key)
    finally:
        client.close()


def _dispatched(app: AppContext, issue_key: str, launch: bool) -> dict:
    result = {"issue_key": issue_key, "status": "queued"}
    if launch:
        log_file = app.config.db_path.parent / "logs" / f"{issue_key}.log"
        result["pid"] = dispatch_mod.launch_background(issue_key, log_file)
        result["status"] = "launched"
    task = tasks_mod.get_task(app.db, issue_key)
    if task:
        result["branch_name"] = task.branch_name
        result["worktree_path"] = task.worktree_path
    return result


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None) -> list[dict]:
    """List tracked tasks, most recently updated first, optionally filtered by status."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db)
    if status:
        tasks = [t for t in tasks if t.status == status]
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, issue_key: str, log_tail: int = 20) -> dict:
    """Get a task's details and the last ``log_tail`` progress log entries."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, issue_key)
    if not task:
        return {"error": f"Task not found: {issue_key}"}
    data = _task_to_dict(task)
    data["progress_log"] = task.progress_log[-log_tail:] if log_tail > 0 else []
    data["cancel_requested"] = tasks_mod.is_cancel_requested(app.db, issue_key)
    return data


@mcp.tool()
def cancel_task(ctx: Context, issue_key: str) -> dict:
    """Ask a running task to stop. It ends in 'cancelled' within a few seconds."""
    app = _ctx(ctx)
    if not dispatch_mod.request_cancellation(app.db, issue_key):
        return {"error": f"Task not found: {issue_key}"}
    return {"issue_key": issue_key, "cancel_requested": True}


# ── Dispatch Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def plan_issue(
    ctx: Context,
    issue_key: str,
    repo_name: str,
    title: str | None = None,
    description: str = "",
    branch_name: str | None = None,
    base_branch: str | None = None,
    instructions: str = "",
    update_existing_plan: bool = False,
    launch: bool = True,
) -> dict:
    """Have the agent explore the repo and write an implementation plan for an issue.

    Without a title the issue is fetched from Linear.
    """
    app = _ctx(ctx)
    try:
        issue = _issue(app.config, issue_key, title, description)
        dispatch_mod.dispatch_plan(
            app.db, app.config, issue, repo_name, branch_name, base_branch,
            instructions, update_existing_plan,
        )
    except (ConfigError, LinearError) as e:
        return {"error": str(e)}
    return _dispatched(app, issue_key, launch)


@mcp.tool()
def implement_issue(
    ctx: Context,
    issue_key: str,
    repo_name: str,
    title: str | None = None,
    description: str = "",
    branch_name: str | None = None,
    base_branch: str | None = None,
    instructions: str = "",
    launch: bool = True,
) -> dict:
    """Have the agent implement an issue, push the branch and open a pull request.

    An existing plan for the branch is followed if one was written.
    """
    app = _ctx(ctx)
    try:
        issue = _issue(app.config, issue_key, title, description)
        dispatch_mod.dispatch_implement(
            app.db, app.config, issue, repo_name, branch_name, base_branch, instructions
        )
    except (ConfigError, LinearError) as e:
        return {"error": str(e)}
    return _dispatched(app, issue_key, launch)


@mcp.tool()
def send_feedback(
    ctx: Context,
    issue_key: str,
    feedback_text: str,
    post_as_comment: bool = True,
    launch: bool = True,
) -> dict:
    """Resume the task's agent session to apply review feedback to its pull request."""
    app = _ctx(ctx)
    try:
        dispatch_mod.dispatch_feedback(
            app.db, app.config, issue_key, feedback_text, post_as_comment
        )
    except (ConfigError, ValueError) as e:
        return {"error": str(e)}
    return _dispatched(app, issue_key, launch)


@mcp.tool()
def reload_config(ctx: Context) -> dict:
    """Re-read configuration from the environment."""
    app = _ctx(ctx)
    config = get_config()
    if config.db_path != app.config.db_path:
        app.db.close()
        app.db = init_db(config.db_path)
    app.config = config
    return {"repos": [r.name for r in config.repos], "db_path": str(config.db_path)}


def _task_to_dict(task) -> dict:
    return {
        "issue_key": task.issue_key,
        "issue_summary": task.issue_summary,
        "issue_url": task.issue_url,
        "repo_name": task.repo_name,
        "branch_name": task.branch_name,
        "base_branch": task.base_branch,
        "worktree_path": task.worktree_path,
        "status": task.status,
        "status_label": STATUS_LABELS.get(task.status, task.status),
        "pr_url": task.pr_url,
        "pr_number": task.pr_number,
        "cost_usd": task.cost_usd,
        "error": task.error,
    }
