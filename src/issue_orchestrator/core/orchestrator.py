"""The task state machine: plan, implement and feedback flows.

A run is started for an issue key whose parameters were saved by a
dispatcher. Every step writes its status to the task store before doing
its work and appends a progress line, so a poller always sees what is
happening. Any failure ends the task in ``error``; a failure caused by a
cancellation request ends it in ``cancelled`` instead.
"""

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from issue_orchestrator.config import Config
from issue_orchestrator.core import prompts
from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.core.agents import AgentResult, AgentSupervisor
from issue_orchestrator.core.cancellation import CancellationToken, CancelWatcher, TaskCancelled
from issue_orchestrator.core.params import clear_params, get_params, save_params
from issue_orchestrator.core.worktrees import WorkspaceManager
from issue_orchestrator.db.engine import get_db
from issue_orchestrator.db.models import (
    CANCELLED,
    COMPLETE,
    DEPENDENCIES_INSTALLED,
    ERROR,
    FEEDBACK_IMPLEMENTING,
    IMPLEMENTATION_COMPLETE,
    IMPLEMENTING,
    PLAN_COMPLETE,
    PLANNING,
    PR_CREATED,
    PUSHING,
    WORKTREE_CREATED,
    FeedbackParams,
    RunParams,
    TaskRecord,
)
from issue_orchestrator.integrations.git import GitError
from issue_orchestrator.integrations.github import GitHubClient
from issue_orchestrator.integrations.linear import LinearClient
from issue_orchestrator.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)

PR_DESCRIPTION_LIMIT = 2000

NOTIFY_STATUSES = (COMPLETE, ERROR, CANCELLED, PLAN_COMPLETE)


class Orchestrator:
    def __init__(
        self,
        config: Config,
        supervisor: AgentSupervisor | None = None,
        workspaces: WorkspaceManager | None = None,
        code_host: GitHubClient | None = None,
        issue_tracker: LinearClient | None = None,
        notifier: SlackNotifier | None = None,
    ):
        self.config = config
        self.supervisor = supervisor or AgentSupervisor(config)
        self.workspaces = workspaces or WorkspaceManager(config)
        # Clients built here are closed by close(); injected ones belong to the caller
        self._owned_clients: list[GitHubClient | LinearClient] = []
        if code_host is None:
            code_host = GitHubClient(config.github_token, config.github_owner, config.bot_logins)
            self._owned_clients.append(code_host)
        self.code_host = code_host
        if issue_tracker is None and config.linear_api_key:
            issue_tracker = LinearClient(config.linear_api_key)
            self._owned_clients.append(issue_tracker)
        self.issue_tracker = issue_tracker
        self.notifier = notifier or SlackNotifier(config.slack_bot_token, config.slack_channel)

    # ── Entry point ─────────────────────────────────────────────────────────

    def run(self, issue_key: str) -> TaskRecord | None:
        """Run the flow recorded in the task's saved parameters.

        Returns the final task record, or None when there was nothing to run.
        The orchestrator's own HTTP clients are closed afterwards.
        """
        try:
            return self._run(issue_key)
        finally:
            self.close()

    def close(self):
        for client in self._owned_clients:
            client.close()
        self._owned_clients = []

    def _run(self, issue_key: str) -> TaskRecord | None:
        with get_db(self.config.db_path) as db:
            params = get_params(db, issue_key)
            if params is None:
                logger.error("No orchestration params found for %s", issue_key)
                return None

            token = CancellationToken()
            watcher = CancelWatcher(
                self.config.db_path, issue_key, token, self.config.cancel_poll_interval
            )
            watcher.start()
            logger.info("Starting %s run for %s", params.mode, issue_key)
            try:
                if params.mode == "plan":
                    self.run_plan(db, params, token)
                elif params.mode == "implement":
                    self.run_implement(db, params, token)
                else:
                    self.run_feedback(db, params, token)
            finally:
                watcher.stop()
                # A finished plan leaves implement params behind for the follow-up run
                if params.mode == "plan":
                    save_params(db, issue_key, params.as_implement())
                else:
                    clear_params(db, issue_key)
                tasks_mod.clear_cancel(db, issue_key)

            task = tasks_mod.get_task(db, issue_key)

        if task:
            logger.info("Run for %s finished with status %s", issue_key, task.status)
            self._notify(task)
        return task

    # ── Flows ───────────────────────────────────────────────────────────────

    def run_plan(self, db: sqlite3.Connection, params: RunParams, token: CancellationToken):
        key = params.issue_key
        try:
            path = self._prepare_workspace(db, params, token)

            self._checkpoint(db, key, token)
            self._transition(db, key, PLANNING, "Starting Claude planning session...")
            self.workspaces.ensure_plan_directory()
            plan_file = self.workspaces.plan_path(params.branch_name)
            task = tasks_mod.get_task(db, key)

            existing_plan = None
            if params.update_existing_plan:
                existing_plan = self.workspaces.read_plan(params.branch_name)

            if existing_plan:
                self._log(db, key, "Updating existing plan with new instructions")
                prompt = prompts.build_plan_update_prompt(
                    params.issue,
                    params.repo_name,
                    params.base_branch,
                    plan_file,
                    existing_plan,
                    params.user_instructions,
                )
                resume = task.claude_session_id if task else None
            else:
                prompt = prompts.build_plan_prompt(
                    params.issue,
                    params.repo_name,
                    params.base_branch,
                    plan_file,
                    params.user_instructions,
                )
                resume = None

            result = self._run_agent(db, key, prompt, path, token, resume)
            self._checkpoint(db, key, token)
            self._transition(
                db,
                key,
                PLAN_COMPLETE,
                f"Plan complete (cost: ${result.cost_usd:.2f}). Plan file: {plan_file}",
                claude_session_id=result.session_id,
                cost_usd=self._total_cost(task, result),
            )
            if not plan_file.exists():
                self._log(db, key, "Warning: Agent finished without writing the plan file")
        except Exception as exc:
            self._handle_failure(db, key, token, exc)

    def run_implement(
        self, db: sqlite3.Connection, params: RunParams, token: CancellationToken
    ):
        key = params.issue_key
        try:
            self._transition_issue(db, key, self.config.issue_state_in_progress)
            path = self._prepare_workspace(db, params, token)

            self._checkpoint(db, key, token)
            self._transition(db, key, IMPLEMENTING, "Starting Claude implementation...")

            instructions = params.user_instructions
            plan = self.workspaces.read_plan(params.branch_name)
            if plan:
                self._log(db, key, "Found existing plan file — including in prompt")
                instructions = prompts.with_plan(instructions, plan)

            prompt = prompts.build_implementation_prompt(
                params.issue,
                params.repo_name,
                params.base_branch,
                instructions,
                self.config.formatter_command,
            )
            task = tasks_mod.get_task(db, key)
            result = self._run_agent(db, key, prompt, path, token)
            cost = self._total_cost(task, result)
            self._transition(
                db,
                key,
                IMPLEMENTATION_COMPLETE,
                f"Implementation complete (cost: ${result.cost_usd:.2f})",
                claude_session_id=result.session_id,
                cost_usd=cost,
            )

            self._checkpoint(db, key, token)
            self._commit_and_push(db, key, path, params.branch_name, params.repo_name)

            task = tasks_mod.get_task(db, key)
            if task and task.pr_number:
                self._transition(
                    db,
                    key,
                    PR_CREATED,
                    f"PR already exists, branch updated: {task.pr_url}",
                )
            else:
                self._log(db, key, "Creating pull request...")
                pr = self.code_host.create_pull_request(
                    params.repo_name,
                    title=f"{key}: {params.issue.title}",
                    body=self._pr_body(params, cost),
                    head=params.branch_name,
                    base=params.base_branch,
                )
                self._transition(
                    db,
                    key,
                    PR_CREATED,
                    f"PR created: {pr.html_url}",
                    pr_url=pr.html_url,
                    pr_number=pr.number,
                )
                if self.issue_tracker is not None:
                    self._best_effort(
                        db,
                        key,
                        "add issue comment",
                        lambda: self.issue_tracker.add_comment(
                            key, f"Pull request created: {pr.html_url}"
                        ),
                        "Issue comment added",
                    )

            self._transition_issue(db, key, self.config.issue_state_in_review)
            self._transition(db, key, COMPLETE, "Task complete!")
        except Exception as exc:
            self._handle_failure(db, key, token, exc)

    def run_feedback(
        self, db: sqlite3.Connection, params: FeedbackParams, token: CancellationToken
    ):
        key = params.issue_key
        task = tasks_mod.get_task(db, key)
        if task is None:
            logger.error("Task state not found for feedback run: %s", key)
            return

        try:
            repo = self.config.get_repo(params.repo_name)

            if params.post_as_comment and task.pr_number:
                self._best_effort(
                    db,
                    key,
                    "post feedback as PR comment",
                    lambda: self.code_host.add_comment(
                        repo.name, task.pr_number, params.feedback_text
                    ),
                    "Feedback posted as GitHub comment",
                )

            path = Path(task.worktree_path) if task.worktree_path else None
            if path is None or not self.workspaces.workspace_exists(path):
                self._log(db, key, "Recreating worktree...")
                path = self.workspaces.create_or_reuse_workspace(
                    repo, task.branch_name, task.base_branch
                )
                self._transition(
                    db,
                    key,
                    WORKTREE_CREATED,
                    f"Worktree created at {path}",
                    worktree_path=str(path),
                )

            self._checkpoint(db, key, token)
            if self.workspaces.commit_all_changes(path):
                self._log(db, key, "Committed pre-existing local changes")

            self._log(db, key, "Pulling latest changes...")
            try:
                self.workspaces.pull_branch(path, task.branch_name, repo.name)
                self._log(db, key, "Pulled latest changes")
            except GitError as e:
                logger.warning("Pull failed for %s: %s", key, e)
                self._log(db, key, f"Warning: Pull failed, continuing with local state: {e}")

            baseline = None
            if task.pr_number:
                baseline = self._best_effort(
                    db,
                    key,
                    "read last commit time",
                    lambda: self.code_host.last_commit_time(repo.name, task.pr_number),
                )

            self._checkpoint(db, key, token)
            self._transition(db, key, FEEDBACK_IMPLEMENTING, "Starting Claude for feedback...")
            started_at = datetime.now(timezone.utc)
            prompt = prompts.build_feedback_prompt(
                key,
                task.pr_number or 0,
                params.feedback_text,
                params.new_comments_context,
                self.config.formatter_command,
            )
            result = self._run_agent(db, key, prompt, path, token, task.claude_session_id)
            self._checkpoint(db, key, token)

            self._transition(
                db,
                key,
                PUSHING,
                "Feedback implemented, committing & pushing...",
                claude_session_id=result.session_id,
                cost_usd=self._total_cost(task, result),
            )
            if self.workspaces.commit_all_changes(path):
                self._log(db, key, "Committed remaining uncommitted changes")
            self.workspaces.push_branch(path, task.branch_name, repo.name)

            if task.pr_number and baseline is not None:
                self._best_effort(
                    db,
                    key,
                    "mark review comments addressed",
                    lambda: self._mark_addressed(
                        db, key, repo.name, task.pr_number, baseline, started_at
                    ),
                )

            self._transition(db, key, COMPLETE, "Feedback changes pushed")
        except Exception as exc:
            self._handle_failure(db, key, token, exc)

    # ── Steps ───────────────────────────────────────────────────────────────

    def _prepare_workspace(
        self, db: sqlite3.Connection, params: RunParams, token: CancellationToken
    ) -> Path:
        key = params.issue_key
        repo = self.config.get_repo(params.repo_name)

        self._checkpoint(db, key, token)
        self._log(db, key, "Creating git worktree...")
        path = self.workspaces.create_or_reuse_workspace(
            repo, params.branch_name, params.base_branch
        )
        self._transition(
            db, key, WORKTREE_CREATED, f"Worktree created at {path}", worktree_path=str(path)
        )

        self._checkpoint(db, key, token)
        self._log(db, key, "Installing dependencies...")
        command = self.workspaces.install_dependencies(path)
        if command:
            message = f"Dependencies installed ({' '.join(command)})"
        else:
            message = "No dependency manifest found, skipping install"
        self._transition(db, key, DEPENDENCIES_INSTALLED, message)
        return path

    def _run_agent(
        self,
        db: sqlite3.Connection,
        key: str,
        prompt: str,
        cwd: Path,
        token: CancellationToken,
        resume_session_id: str | None = None,
    ) -> AgentResult:
        return self.supervisor.run(
            prompt,
            cwd,
            resume_session_id=resume_session_id,
            token=token,
            on_progress=lambda line: self._log(db, key, line),
            label=key,
        )

    def _commit_and_push(
        self, db: sqlite3.Connection, key: str, path: Path, branch: str, repo_name: str
    ):
        self._transition(db, key, PUSHING, "Committing & pushing...")
        if self.workspaces.commit_all_changes(path):
            self._log(db, key, "Committed remaining uncommitted changes")
        self._log(db, key, "Pushing branch to origin...")
        self.workspaces.push_branch(path, branch, repo_name)
        self._log(db, key, "Branch pushed")

    def _mark_addressed(
        self,
        db: sqlite3.Connection,
        key: str,
        repo_name: str,
        pr_number: int,
        baseline: datetime,
        until: datetime,
    ):
        pr = self.code_host.fetch_pull_request(repo_name, pr_number)
        comments = self.code_host.comments_since(
            self.code_host.list_review_comments(repo_name, pr_number),
            since=baseline,
            until=until,
            exclude=(pr.author,),
        )
        marked = 0
        for comment in comments:
            if comment.can_react:
                self.code_host.add_reaction(repo_name, comment)
                marked += 1
        if marked:
            self._log(db, key, f"Marked {marked} review comment(s) as addressed")

    def _pr_body(self, params: RunParams, cost_usd: float) -> str:
        description = params.issue.description[:PR_DESCRIPTION_LIMIT]
        lines = [f"## {params.issue_key}: {params.issue.title}", "", description, ""]
        if params.issue.url:
            lines += [f"[Issue]({params.issue.url})", ""]
        lines += ["---", f"*Implemented by Claude (cost: ${cost_usd:.2f})*"]
        return "\n".join(lines)

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    def _log(self, db: sqlite3.Connection, key: str, message: str):
        tasks_mod.append_progress_log(db, key, message)

    def _transition(
        self,
        db: sqlite3.Connection,
        key: str,
        status: str,
        message: str | None = None,
        **changes,
    ):
        tasks_mod.update_task_status(db, key, status, **changes)
        if message:
            self._log(db, key, message)

    def _checkpoint(self, db: sqlite3.Connection, key: str, token: CancellationToken):
        """Raise TaskCancelled if cancellation was requested since the last step."""
        if not token.cancelled and tasks_mod.is_cancel_requested(db, key):
            token.cancel()
        token.raise_if_cancelled()

    def _transition_issue(self, db: sqlite3.Connection, key: str, state: str):
        if self.issue_tracker is None or not state:
            return
        self._best_effort(
            db,
            key,
            f"move issue to {state}",
            lambda: self.issue_tracker.transition_issue(key, state),
        )

    def _best_effort(
        self,
        db: sqlite3.Connection,
        key: str,
        action: str,
        func: Callable,
        success_message: str | None = None,
    ):
        try:
            result = func()
        except Exception as e:
            logger.warning("Failed to %s for %s: %s", action, key, e)
            self._log(db, key, f"Warning: Failed to {action}")
            return None
        if success_message:
            self._log(db, key, success_message)
        return result

    def _handle_failure(
        self,
        db: sqlite3.Connection,
        key: str,
        token: CancellationToken,
        exc: Exception,
    ):
        cancelled = (
            isinstance(exc, TaskCancelled)
            or token.cancelled
            or tasks_mod.is_cancel_requested(db, key)
        )
        if cancelled:
            logger.info("Task %s cancelled", key)
            self._transition(db, key, CANCELLED, "Task cancelled by user")
            return
        message = str(exc) or exc.__class__.__name__
        logger.error("Task %s failed: %s", key, message, exc_info=exc)
        self._transition(db, key, ERROR, f"Error: {message}", error=message)

    @staticmethod
    def _total_cost(task: TaskRecord | None, result: AgentResult) -> float:
        previous = task.cost_usd if task and task.cost_usd else 0.0
        return previous + result.cost_usd

    def _notify(self, task: TaskRecord):
        if task.status not in NOTIFY_STATUSES:
            return
        try:
            self.notifier.notify(task)
        except Exception:
            logger.exception("Failed to send Slack notification for %s", task.issue_key)
