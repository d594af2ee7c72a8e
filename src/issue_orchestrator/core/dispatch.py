"""Dispatching runs: validate, record the task, save params, start the worker."""

import logging
import re
import sqlite3
import subprocess
import sys
from pathlib import Path

from issue_orchestrator.config import Config, ConfigError, RepoConfig
from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.core.params import save_params
from issue_orchestrator.core.worktrees import WorkspaceManager
from issue_orchestrator.db.models import FeedbackParams, IssueSnapshot, RunParams, TaskRecord
from issue_orchestrator.integrations.github import GitHubClient, format_new_comments

logger = logging.getLogger(__name__)

BRANCH_SUMMARY_LIMIT = 40


def generate_branch_name(summary: str, issue_key: str) -> str:
    """``<kebab-summary-max-40>-<KEY>``, e.g. ``fix-login-timeout-ENG-123``."""
    kebab = re.sub(r"[^a-z0-9\s-]", "", summary.lower()).strip()
    kebab = re.sub(r"-+", "-", re.sub(r"\s+", "-", kebab))
    if len(kebab) > BRANCH_SUMMARY_LIMIT:
        kebab = kebab[:BRANCH_SUMMARY_LIMIT].rstrip("-")
    return f"{kebab}-{issue_key}" if kebab else issue_key


def validate_repo(config: Config, repo_name: str) -> RepoConfig:
    """Resolve a repository and check its local checkout. Raises ConfigError."""
    repo = config.get_repo(repo_name)
    if not repo.local_path.exists():
        raise ConfigError(f"Local checkout not found for {repo_name}: {repo.local_path}")
    return repo


def _refresh_task(
    db: sqlite3.Connection,
    config: Config,
    issue: IssueSnapshot,
    repo: RepoConfig,
    branch_name: str,
    base_branch: str,
) -> TaskRecord:
    """Reset a task to 'initializing', keeping history from an earlier run on the same branch."""
    workspace = WorkspaceManager(config).resolve_workspace_path(repo.name, branch_name)
    task = tasks_mod.create_initial_task(
        issue.key,
        issue.title,
        issue.url,
        repo.name,
        branch_name,
        str(workspace),
        base_branch,
    )
    existing = tasks_mod.get_task(db, issue.key)
    if existing and existing.repo_name == repo.name and existing.branch_name == branch_name:
        task.created_at = existing.created_at
        task.claude_session_id = existing.claude_session_id
        task.pr_url = existing.pr_url
        task.pr_number = existing.pr_number
        task.cost_usd = existing.cost_usd
        task.progress_log = existing.progress_log
    return tasks_mod.save_task(db, task)


def _dispatch_run(
    db: sqlite3.Connection,
    config: Config,
    mode: str,
    issue: IssueSnapshot,
    repo_name: str,
    branch_name: str | None,
    base_branch: str | None,
    user_instructions: str,
    update_existing_plan: bool = False,
) -> RunParams:
    repo = validate_repo(config, repo_name)
    params = RunParams(
        mode=mode,
        issue=issue,
        repo_name=repo.name,
        branch_name=branch_name or generate_branch_name(issue.title, issue.key),
        base_branch=base_branch or repo.default_branch,
        user_instructions=user_instructions,
        update_existing_plan=update_existing_plan,
    )
    _refresh_task(db, config, issue, repo, params.branch_name, params.base_branch)
    tasks_mod.clear_cancel(db, issue.key)
    save_params(db, issue.key, params)
    tasks_mod.append_progress_log(db, issue.key, f"Queued {mode} run on {params.branch_name}")
    logger.info("Dispatched %s for %s on %s", mode, issue.key, params.branch_name)
    return params


def dispatch_plan(
    db: sqlite3.Connection,
    config: Config,
    issue: IssueSnapshot,
    repo_name: str,
    branch_name: str | None = None,
    base_branch: str | None = None,
    user_instructions: str = "",
    update_existing_plan: bool = False,
) -> RunParams:
    return _dispatch_run(
        db, config, "plan", issue, repo_name, branch_name, base_branch,
        user_instructions, update_existing_plan,
    )


def dispatch_implement(
    db: sqlite3.Connection,
    config: Config,
    issue: IssueSnapshot,
    repo_name: str,
    branch_name: str | None = None,
    base_branch: str | None = None,
    user_instructions: str = "",
) -> RunParams:
    return _dispatch_run(
        db, config, "implement", issue, repo_name, branch_name, base_branch, user_instructions
    )


def dispatch_feedback(
    db: sqlite3.Connection,
    config: Config,
    issue_key: str,
    feedback_text: str,
    post_as_comment: bool = True,
    new_comments_context: str | None = None,
) -> FeedbackParams:
    """Queue a feedback run against the task's existing branch and PR."""
    task = tasks_mod.get_task(db, issue_key)
    if not task:
        raise ValueError(f"Task not found: {issue_key}")
    validate_repo(config, task.repo_name)

    params = FeedbackParams(
        issue_key=issue_key,
        repo_name=task.repo_name,
        feedback_text=feedback_text,
        post_as_comment=post_as_comment,
        new_comments_context=new_comments_context,
    )
    tasks_mod.clear_cancel(db, issue_key)
    save_params(db, issue_key, params)
    tasks_mod.append_progress_log(db, issue_key, "Queued feedback run")
    logger.info("Dispatched feedback for %s", issue_key)
    return params


def collect_new_comments(client: GitHubClient, task: TaskRecord) -> str | None:
    """Prompt context for PR comments made since the branch's last commit."""
    if not task.pr_number:
        return None
    pr = client.fetch_pull_request(task.repo_name, task.pr_number)
    comments = client.comments_since(
        client.list_review_comments(task.repo_name, task.pr_number),
        since=client.last_commit_time(task.repo_name, task.pr_number),
        exclude=(pr.author,),
    )
    return format_new_comments(comments)


def launch_background(issue_key: str, log_file: Path | None = None) -> int:
    """Start ``iorch run <key>`` detached from this process. Returns its PID."""
    cmd = [sys.executable, "-m", "issue_orchestrator.cli", "run", issue_key]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a") as f:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=f,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    else:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    logger.info("Launched background run for %s (PID %s)", issue_key, proc.pid)
    return proc.pid


def request_cancellation(db: sqlite3.Connection, issue_key: str) -> bool:
    """Flag a task for cancellation. Returns False if the task does not exist."""
    if tasks_mod.get_task(db, issue_key) is None:
        return False
    tasks_mod.request_cancel(db, issue_key)
    tasks_mod.append_progress_log(db, issue_key, "Cancellation requested")
    return True
