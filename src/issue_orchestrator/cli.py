"""CLI entry point for the issue orchestrator."""

import json
import logging
import sys
from datetime import datetime

import click

from issue_orchestrator.config import ConfigError, get_config
from issue_orchestrator.core import dispatch as dispatch_mod
from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.core.orchestrator import Orchestrator
from issue_orchestrator.core.worktrees import WorkspaceManager
from issue_orchestrator.db.engine import get_db
from issue_orchestrator.db.models import ERROR, STATUS_LABELS, IssueSnapshot
from issue_orchestrator.integrations.github import GitHubClient, GitHubError
from issue_orchestrator.integrations.linear import LinearClient, LinearError


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def main():
    """iorch - Issue Orchestrator CLI"""
    logging.basicConfig(
        level=get_config().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Dispatch Commands ─────────────────────────────────────────────────────────


def _resolve_issue(config, issue_key, title, description) -> IssueSnapshot:
    """Snapshot the issue from Linear, or from the command line when given."""
    if title:
        return IssueSnapshot(key=issue_key, title=title, description=description or "")
    if not config.linear_api_key:
        _fail("No LINEAR_API_KEY set; pass --title to describe the issue")
    client = LinearClient(config.linear_api_key)
    try:
        return client.fetch_issue(issue_key)
    except LinearError as e:
        _fail(f"Could not fetch {issue_key}: {e}")
    finally:
        client.close()


def _start(config, issue_key, foreground):
    if foreground:
        task = Orchestrator(config).run(issue_key)
        _report(task)
        return
    log_file = config.db_path.parent / "logs" / f"{issue_key}.log"
    pid = dispatch_mod.launch_background(issue_key, log_file)
    click.echo(f"  Running in background (PID {pid}), log: {log_file}")


def _run_options(func):
    for decorator in reversed(
        [
            click.argument("issue_key"),
            click.option("--repo", "repo_name", required=True, help="Configured repository name"),
            click.option("--branch", default=None, help="Branch name (generated if omitted)"),
            click.option("--base", "base_branch", default=None, help="Base branch"),
            click.option("--instructions", "-i", default="", help="Extra instructions"),
            click.option("--title", default=None, help="Issue title (skips the Linear lookup)"),
            click.option("--description", "-d", default=None, help="Issue description"),
            click.option("--foreground", is_flag=True, help="Run here instead of in the background"),
        ]
    ):
        func = decorator(func)
    return func


@main.command("plan")
@_run_options
@click.option("--update", is_flag=True, help="Revise the existing plan instead of starting over")
def plan_command(
    issue_key, repo_name, branch, base_branch, instructions, title, description, foreground,
    update,
):
    """Explore the repository and write an implementation plan."""
    config = get_config()
    issue = _resolve_issue(config, issue_key, title, description)
    with _get_db() as db:
        try:
            params = dispatch_mod.dispatch_plan(
                db, config, issue, repo_name, branch, base_branch, instructions, update
            )
        except ConfigError as e:
            _fail(str(e))
    click.echo(f"Planning {issue_key} on {params.branch_name}")
    _start(config, issue_key, foreground)


@main.command("implement")
@_run_options
def implement_command(
    issue_key, repo_name, branch, base_branch, instructions, title, description, foreground
):
    """Implement an issue and open a pull request."""
    config = get_config()
    issue = _resolve_issue(config, issue_key, title, description)
    with _get_db() as db:
        try:
            params = dispatch_mod.dispatch_implement(
                db, config, issue, repo_name, branch, base_branch, instructions
            )
        except ConfigError as e:
            _fail(str(e))
    click.echo(f"Implementing {issue_key} on {params.branch_name}")
    _start(config, issue_key, foreground)


@main.command("feedback")
@click.argument("issue_key")
@click.argument("feedback_text")
@click.option("--comment/--no-comment", default=True, help="Also post the feedback on the PR")
@click.option(
    "--include-new-comments", is_flag=True, help="Add PR comments made since the last commit"
)
@click.option("--foreground", is_flag=True, help="Run here instead of in the background")
def feedback_command(issue_key, feedback_text, comment, include_new_comments, foreground):
    """Apply review feedback to an existing pull request."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, issue_key)
        if not task:
            _fail(f"Task not found: {issue_key}")

        context = None
        if include_new_comments:
            client = GitHubClient(config.github_token, config.github_owner, config.bot_logins)
            try:
                context = dispatch_mod.collect_new_comments(client, task)
            except GitHubError as e:
                click.echo(f"Could not read PR comments: {e}", err=True)
            finally:
                client.close()

        try:
            dispatch_mod.dispatch_feedback(db, config, issue_key, feedback_text, comment, context)
        except ConfigError as e:
            _fail(str(e))
    click.echo(f"Feedback queued for {issue_key}")
    _start(config, issue_key, foreground)


@main.command("run")
@click.argument("issue_key")
def run_command(issue_key):
    """Run the queued flow for an issue (used by background launches)."""
    task = Orchestrator(get_config()).run(issue_key)
    if task is None:
        _fail(f"No orchestration params found for {issue_key}")
    _report(task)
    if task.status == ERROR:
        sys.exit(1)


@main.command("cancel")
@click.argument("issue_key")
def cancel_command(issue_key):
    """Ask a running task to stop."""
    with _get_db() as db:
        if not dispatch_mod.request_cancellation(db, issue_key):
            _fail(f"Task not found: {issue_key}")
    click.echo(f"Cancellation requested for {issue_key}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Inspect and clean up tasks."""
    pass


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, json_output):
    """List tasks, most recently updated first."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db)
    if status:
        tasks = [t for t in tasks if t.status == status]

    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        pr = f" [{task.pr_url}]" if task.pr_url else ""
        click.echo(
            f"  {task.issue_key}: {task.issue_summary} "
            f"({STATUS_LABELS.get(task.status, task.status)}){pr}"
        )


@task_group.command("show")
@click.argument("issue_key")
def task_show(issue_key):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, issue_key)
    if not task:
        _fail(f"Task not found: {issue_key}")

    click.echo(f"Task: {task.issue_key}")
    click.echo(f"  Summary: {task.issue_summary}")
    click.echo(f"  Status: {STATUS_LABELS.get(task.status, task.status)}")
    click.echo(f"  Repo: {task.repo_name}")
    click.echo(f"  Branch: {task.branch_name} (base {task.base_branch})")
    click.echo(f"  Worktree: {task.worktree_path}")
    if task.issue_url:
        click.echo(f"  Issue: {task.issue_url}")
    if task.pr_url:
        click.echo(f"  PR: {task.pr_url}")
    if task.claude_session_id:
        click.echo(f"  Session: {task.claude_session_id}")
    if task.cost_usd is not None:
        click.echo(f"  Cost: ${task.cost_usd:.2f}")
    if task.error:
        click.echo(f"  Error: {task.error}")
    click.echo(f"  Updated: {datetime.fromtimestamp(task.updated_at / 1000):%Y-%m-%d %H:%M:%S}")


@task_group.command("log")
@click.argument("issue_key")
@click.option("--tail", "-n", default=None, type=int, help="Only show the last N entries")
def task_log(issue_key, tail):
    """Print a task's progress log."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, issue_key)
    if not task:
        _fail(f"Task not found: {issue_key}")
    entries = task.progress_log[-tail:] if tail else task.progress_log
    for entry in entries:
        click.echo(entry)


@task_group.command("remove")
@click.argument("issue_key")
@click.option("--remove-worktree", is_flag=True, help="Also delete the task's worktree")
def task_remove(issue_key, remove_worktree):
    """Delete a task record."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, issue_key)
        if not task:
            _fail(f"Task not found: {issue_key}")

        if remove_worktree and task.worktree_path:
            workspaces = WorkspaceManager(config)
            try:
                if workspaces.workspace_exists(task.worktree_path):
                    workspaces.remove_workspace(
                        config.get_repo(task.repo_name), task.worktree_path
                    )
                    click.echo(f"  Worktree removed: {task.worktree_path}")
            except Exception as e:
                click.echo(f"  Worktree removal failed: {e}", err=True)

        tasks_mod.remove_task(db, issue_key)
    click.echo(f"Removed task: {issue_key}")


# ── Servers ───────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the task JSON API."""
    from issue_orchestrator.web.app import run_server

    click.echo(f"Serving task API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from issue_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _report(task):
    if task is None:
        return
    click.echo(f"{task.issue_key}: {STATUS_LABELS.get(task.status, task.status)}")
    if task.pr_url:
        click.echo(f"  PR: {task.pr_url}")
    if task.error:
        click.echo(f"  Error: {task.error}", err=True)


if __name__ == "__main__":
    main()
