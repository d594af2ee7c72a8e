"""Tests for the plan, implement and feedback flows."""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from issue_orchestrator.config import Config, RepoConfig
from issue_orchestrator.core import dispatch as dispatch_mod
from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.core.agents import AgentCancelled, AgentError, AgentResult
from issue_orchestrator.core.orchestrator import Orchestrator
from issue_orchestrator.core.params import get_params
from issue_orchestrator.core.worktrees import WorkspaceManager
from issue_orchestrator.db.engine import get_db, init_db
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
    IssueSnapshot,
)
from issue_orchestrator.integrations.git import GitError
from issue_orchestrator.integrations.github import GitHubClient, PullRequest, ReviewComment
from issue_orchestrator.integrations.linear import LinearError

PR_URL = "https://github.com/acme/svc/pull/7"


class FakeSupervisor:
    """Stands in for the agent CLI; ``on_run`` can act like the agent would."""

    def __init__(self, cost=0.25, session_id="sess-1", on_run=None):
        self.cost = cost
        self.session_id = session_id
        self.on_run = on_run
        self.calls = []

    def run(self, prompt, cwd, resume_session_id=None, token=None, on_progress=None, label=None):
        self.calls.append({"prompt": prompt, "cwd": cwd, "resume": resume_session_id})
        if on_progress:
            on_progress("[claude] Working on it")
        if self.on_run:
            self.on_run(prompt, token)
        return AgentResult(session_id=self.session_id, cost_usd=self.cost)


class FakeWorkspaces(WorkspaceManager):
    """Plain directories instead of git worktrees."""

    def __init__(self, config):
        super().__init__(config)
        self.commits = 0
        self.pushes = []
        self.pulls = []
        self.pull_error = None

    def create_or_reuse_workspace(self, repo, branch_name, base_branch):
        path = self.resolve_workspace_path(repo.name, branch_name)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def install_dependencies(self, path):
        return ["npm", "ci"]

    def commit_all_changes(self, path):
        self.commits += 1
        return True

    def push_branch(self, path, branch_name, repo_name):
        self.pushes.append(branch_name)

    def pull_branch(self, path, branch_name, repo_name):
        if self.pull_error:
            raise self.pull_error
        self.pulls.append(branch_name)


class FakeCodeHost(GitHubClient):
    """GitHub client with canned responses; comment filtering stays real."""

    def __init__(self):
        super().__init__(None, "acme")
        self.created = []
        self.comments = []
        self.reactions = []
        self.review_comments = []
        self.commit_time = None

    def create_pull_request(self, repo, title, body, head, base):
        self.created.append({"repo": repo, "title": title, "body": body, "head": head, "base": base})
        return PullRequest(7, PR_URL, title=title, author="orchestrator-bot", head=head, base=base)

    def fetch_pull_request(self, repo, number):
        return PullRequest(number, PR_URL, author="orchestrator-bot")

    def add_comment(self, repo, number, body):
        self.comments.append((number, body))

    def last_commit_time(self, repo, number):
        return self.commit_time

    def list_review_comments(self, repo, number):
        return self.review_comments

    def add_reaction(self, repo, comment, content="+1"):
        self.reactions.append(comment.id)


@pytest.fixture
def config():
    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        (tmp / "svc").mkdir()
        yield Config(
            db_path=tmp / "tasks.db",
            repos=[RepoConfig("svc", tmp / "svc")],
            worktree_base_path=tmp / "worktrees",
            plan_files_path=tmp / "plans",
            formatter_command=[],
            cancel_poll_interval=0.05,
        )


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    yield conn
    conn.close()


@pytest.fixture
def issue():
    return IssueSnapshot(
        key="ENG-42",
        title="Fix login timeout",
        description="Login requests time out after 5 seconds.",
        url="https://linear.app/acme/issue/ENG-42",
    )


@pytest.fixture
def code_host():
    host = FakeCodeHost()
    yield host
    host.close()


@pytest.fixture
def tracker():
    return MagicMock()


@pytest.fixture
def notifier():
    return MagicMock()


def _orchestrator(config, supervisor, code_host, tracker, notifier, workspaces=None):
    return Orchestrator(
        config,
        supervisor=supervisor,
        workspaces=workspaces or FakeWorkspaces(config),
        code_host=code_host,
        issue_tracker=tracker,
        notifier=notifier,
    )


def _run_tracking_statuses(orchestrator, issue_key):
    original = tasks_mod.update_task_status
    with patch("issue_orchestrator.core.tasks.update_task_status", wraps=original) as spy:
        task = orchestrator.run(issue_key)
    return task, [c.args[2] for c in spy.call_args_list]


class TestImplementFlow:
    def test_full_run(self, config, db, issue, code_host, tracker, notifier):
        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        supervisor = FakeSupervisor()
        workspaces = FakeWorkspaces(config)
        orchestrator = _orchestrator(config, supervisor, code_host, tracker, notifier, workspaces)

        task, statuses = _run_tracking_statuses(orchestrator, "ENG-42")

        assert statuses == [
            WORKTREE_CREATED,
            DEPENDENCIES_INSTALLED,
            IMPLEMENTING,
            IMPLEMENTATION_COMPLETE,
            PUSHING,
            PR_CREATED,
            COMPLETE,
        ]
        assert task.status == COMPLETE
        assert task.branch_name == "fix-login-timeout-ENG-42"
        assert task.pr_url == PR_URL
        assert task.pr_number == 7
        assert task.claude_session_id == "sess-1"
        assert task.cost_usd == pytest.approx(0.25)
        assert task.error is None

        assert code_host.created == [
            {
                "repo": "svc",
                "title": "ENG-42: Fix login timeout",
                "body": code_host.created[0]["body"],
                "head": "fix-login-timeout-ENG-42",
                "base": "main",
            }
        ]
        assert "Login requests time out" in code_host.created[0]["body"]
        assert workspaces.pushes == ["fix-login-timeout-ENG-42"]

        prompt = supervisor.calls[0]["prompt"]
        assert "ENG-42" in prompt
        assert "Fix login timeout" in prompt
        assert supervisor.calls[0]["resume"] is None
        assert supervisor.calls[0]["cwd"] == Path(task.worktree_path)

        log = tasks_mod.get_task(db, "ENG-42").progress_log
        assert any(entry.endswith("[claude] Working on it") for entry in log)
        assert any(entry.endswith(f"PR created: {PR_URL}") for entry in log)
        assert log[-1].endswith("Task complete!")

        assert get_params(db, "ENG-42") is None
        tracker.transition_issue.assert_any_call("ENG-42", "In Progress")
        tracker.transition_issue.assert_any_call("ENG-42", "In Review")
        tracker.add_comment.assert_called_once_with("ENG-42", f"Pull request created: {PR_URL}")
        notifier.notify.assert_called_once()
        assert notifier.notify.call_args[0][0].status == COMPLETE

    def test_existing_pr_not_recreated(self, config, db, issue, code_host, tracker, notifier):
        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        tasks_mod.update_task_status(db, "ENG-42", "initializing", pr_number=7, pr_url=PR_URL)

        task = _orchestrator(config, FakeSupervisor(), code_host, tracker, notifier).run("ENG-42")

        assert task.status == COMPLETE
        assert code_host.created == []
        assert any("PR already exists" in entry for entry in task.progress_log)

    def test_issue_tracker_failures_are_warnings(self, config, db, issue, code_host, notifier):
        tracker = MagicMock()
        tracker.transition_issue.side_effect = LinearError("Linear is down")
        tracker.add_comment.side_effect = LinearError("Linear is down")
        dispatch_mod.dispatch_implement(db, config, issue, "svc")

        task = _orchestrator(config, FakeSupervisor(), code_host, tracker, notifier).run("ENG-42")

        assert task.status == COMPLETE
        assert any(
            entry.endswith("Warning: Failed to move issue to In Progress")
            for entry in task.progress_log
        )
        assert any(entry.endswith("Warning: Failed to add issue comment") for entry in task.progress_log)

    def test_agent_error_ends_in_error(self, config, db, issue, code_host, tracker, notifier):
        def fail(prompt, token):
            raise AgentError("Agent exited with code 1")

        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        workspaces = FakeWorkspaces(config)
        orchestrator = _orchestrator(
            config, FakeSupervisor(on_run=fail), code_host, tracker, notifier, workspaces
        )

        task, statuses = _run_tracking_statuses(orchestrator, "ENG-42")

        assert task.status == ERROR
        assert task.error == "Agent exited with code 1"
        assert statuses[-1] == ERROR
        assert COMPLETE not in statuses
        assert task.progress_log[-1].endswith("Error: Agent exited with code 1")
        assert workspaces.pushes == []
        assert get_params(db, "ENG-42") is None
        assert notifier.notify.call_args[0][0].status == ERROR

    def test_push_failure_ends_in_error(self, config, db, issue, code_host, tracker, notifier):
        class FailingPush(FakeWorkspaces):
            def push_branch(self, path, branch_name, repo_name):
                raise GitError("git push failed: rejected", "rejected")

        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        task = _orchestrator(
            config, FakeSupervisor(), code_host, tracker, notifier, FailingPush(config)
        ).run("ENG-42")

        assert task.status == ERROR
        assert "rejected" in task.error
        assert code_host.created == []

    def test_no_params_returns_none(self, config, db, code_host, tracker, notifier):
        orchestrator = _orchestrator(config, FakeSupervisor(), code_host, tracker, notifier)
        assert orchestrator.run("ENG-404") is None
        notifier.notify.assert_not_called()

    def test_run_closes_own_clients_only(self, config, db, issue, code_host, notifier):
        config.linear_api_key = "lin_api_test"
        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        orchestrator = Orchestrator(
            config,
            supervisor=FakeSupervisor(),
            workspaces=FakeWorkspaces(config),
            notifier=notifier,
        )
        github, linear = orchestrator.code_host, orchestrator.issue_tracker
        with patch.object(github, "create_pull_request") as create_pr, patch.object(
            linear, "transition_issue"
        ), patch.object(linear, "add_comment"):
            create_pr.return_value = PullRequest(7, PR_URL)
            task = orchestrator.run("ENG-42")

        assert task.status == COMPLETE
        assert github._client.is_closed
        assert linear._client.is_closed

        injected = _orchestrator(config, FakeSupervisor(), code_host, MagicMock(), notifier)
        injected.run("ENG-404")
        assert not code_host._client.is_closed


class TestPlanFlow:
    def _write_plan(self, config, text):
        def on_run(prompt, token):
            plans = Path(config.plan_files_path)
            (plans / "fix-login-timeout-ENG-42-plan.md").write_text(text)

        return on_run

    def test_plan_then_implement(self, config, db, issue, code_host, tracker, notifier):
        dispatch_mod.dispatch_plan(db, config, issue, "svc")
        supervisor = FakeSupervisor(on_run=self._write_plan(config, "1. Raise the timeout"))
        orchestrator = _orchestrator(config, supervisor, code_host, tracker, notifier)

        task, statuses = _run_tracking_statuses(orchestrator, "ENG-42")

        assert statuses == [WORKTREE_CREATED, DEPENDENCIES_INSTALLED, PLANNING, PLAN_COMPLETE]
        assert task.status == PLAN_COMPLETE
        assert "DO NOT implement" in supervisor.calls[0]["prompt"]
        assert "fix-login-timeout-ENG-42-plan.md" in supervisor.calls[0]["prompt"]
        assert code_host.created == []
        assert notifier.notify.call_args[0][0].status == PLAN_COMPLETE

        follow_up = get_params(db, "ENG-42")
        assert follow_up.mode == "implement"
        assert follow_up.branch_name == "fix-login-timeout-ENG-42"

        supervisor.on_run = None
        task = orchestrator.run("ENG-42")

        assert task.status == COMPLETE
        prompt = supervisor.calls[1]["prompt"]
        assert "## Implementation Plan" in prompt
        assert "1. Raise the timeout" in prompt
        assert task.cost_usd == pytest.approx(0.5)
        assert get_params(db, "ENG-42") is None

    def test_missing_plan_file_warns(self, config, db, issue, code_host, tracker, notifier):
        dispatch_mod.dispatch_plan(db, config, issue, "svc")
        task = _orchestrator(config, FakeSupervisor(), code_host, tracker, notifier).run("ENG-42")

        assert task.status == PLAN_COMPLETE
        assert any("without writing the plan file" in entry for entry in task.progress_log)

    def test_update_existing_plan_resumes_session(self, config, db, issue, code_host, tracker, notifier):
        dispatch_mod.dispatch_plan(db, config, issue, "svc")
        supervisor = FakeSupervisor(on_run=self._write_plan(config, "1. Old plan"))
        orchestrator = _orchestrator(config, supervisor, code_host, tracker, notifier)
        orchestrator.run("ENG-42")

        dispatch_mod.dispatch_plan(
            db, config, issue, "svc", user_instructions="Also add a retry", update_existing_plan=True
        )
        supervisor.session_id = "sess-2"
        task = orchestrator.run("ENG-42")

        call = supervisor.calls[1]
        assert call["resume"] == "sess-1"
        assert "### Current Plan" in call["prompt"]
        assert "1. Old plan" in call["prompt"]
        assert "Also add a retry" in call["prompt"]
        assert task.claude_session_id == "sess-2"
        assert task.status == PLAN_COMPLETE


class TestCancellation:
    def test_cancel_while_agent_runs(self, config, db, issue, code_host, tracker, notifier):
        def cancel_and_wait(prompt, token):
            with get_db(config.db_path) as conn:
                tasks_mod.request_cancel(conn, "ENG-42")
            assert token.wait(5)
            raise AgentCancelled("Agent run cancelled")

        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        workspaces = FakeWorkspaces(config)
        orchestrator = _orchestrator(
            config, FakeSupervisor(on_run=cancel_and_wait), code_host, tracker, notifier, workspaces
        )

        task, statuses = _run_tracking_statuses(orchestrator, "ENG-42")

        assert task.status == CANCELLED
        assert statuses[-1] == CANCELLED
        assert ERROR not in statuses
        assert task.progress_log[-1].endswith("Task cancelled by user")
        assert workspaces.pushes == []
        assert code_host.created == []
        assert not tasks_mod.is_cancel_requested(db, "ENG-42")
        assert get_params(db, "ENG-42") is None
        assert notifier.notify.call_args[0][0].status == CANCELLED

    def test_cancel_before_start(self, config, db, issue, code_host, tracker, notifier):
        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        tasks_mod.request_cancel(db, "ENG-42")
        supervisor = FakeSupervisor()

        task = _orchestrator(config, supervisor, code_host, tracker, notifier).run("ENG-42")

        assert task.status == CANCELLED
        assert supervisor.calls == []
        assert not tasks_mod.is_cancel_requested(db, "ENG-42")

    def test_failure_after_cancel_request_is_cancelled(self, config, db, issue, code_host, tracker, notifier):
        def cancel_then_fail(prompt, token):
            with get_db(config.db_path) as conn:
                tasks_mod.request_cancel(conn, "ENG-42")
            raise AgentError("Agent exited with code -15")

        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        task = _orchestrator(
            config, FakeSupervisor(on_run=cancel_then_fail), code_host, tracker, notifier
        ).run("ENG-42")

        assert task.status == CANCELLED
        assert task.error is None

    def _cancel_then_succeed(self, config):
        def on_run(prompt, token):
            with get_db(config.db_path) as conn:
                tasks_mod.request_cancel(conn, "ENG-42")

        # The watcher never polls during the run; only the post-agent check sees the flag
        config.cancel_poll_interval = 60
        return FakeSupervisor(on_run=on_run)

    def test_plan_cancelled_when_agent_finishes_first(self, config, db, issue, code_host, tracker, notifier):
        dispatch_mod.dispatch_plan(db, config, issue, "svc")
        orchestrator = _orchestrator(
            config, self._cancel_then_succeed(config), code_host, tracker, notifier
        )

        task, statuses = _run_tracking_statuses(orchestrator, "ENG-42")

        assert task.status == CANCELLED
        assert PLAN_COMPLETE not in statuses
        assert not tasks_mod.is_cancel_requested(db, "ENG-42")

    def test_feedback_cancelled_when_agent_finishes_first(self, config, db, issue, code_host, tracker, notifier):
        workspaces = FakeWorkspaces(config)
        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        _orchestrator(config, FakeSupervisor(), code_host, tracker, notifier, workspaces).run("ENG-42")
        assert workspaces.pushes == ["fix-login-timeout-ENG-42"]

        dispatch_mod.dispatch_feedback(db, config, "ENG-42", "Rename foo to bar")
        orchestrator = _orchestrator(
            config, self._cancel_then_succeed(config), code_host, tracker, notifier, workspaces
        )

        task, statuses = _run_tracking_statuses(orchestrator, "ENG-42")

        assert task.status == CANCELLED
        assert statuses == [FEEDBACK_IMPLEMENTING, CANCELLED]
        assert workspaces.pushes == ["fix-login-timeout-ENG-42"]


class TestFeedbackFlow:
    def _complete_task(self, config, db, issue, code_host, tracker, notifier, workspaces):
        dispatch_mod.dispatch_implement(db, config, issue, "svc")
        _orchestrator(config, FakeSupervisor(), code_host, tracker, notifier, workspaces).run("ENG-42")

    def test_feedback_run(self, config, db, issue, code_host, tracker, notifier):
        workspaces = FakeWorkspaces(config)
        self._complete_task(config, db, issue, code_host, tracker, notifier, workspaces)

        baseline = datetime(2024, 1, 1, tzinfo=timezone.utc)
        later = datetime(2024, 1, 2, tzinfo=timezone.utc)
        code_host.commit_time = baseline
        code_host.review_comments = [
            ReviewComment(1, "inline", "alice", "Rename foo", later, path="app.py", line=3),
            ReviewComment(2, "review", "bob", "Looks good otherwise", later, state="COMMENTED"),
            ReviewComment(3, "comment", "orchestrator-bot", "Feedback", later),
            ReviewComment(4, "comment", "ci[bot]", "Build passed", later),
            ReviewComment(5, "comment", "carol", "Old note", datetime(2023, 12, 1, tzinfo=timezone.utc)),
        ]

        dispatch_mod.dispatch_feedback(db, config, "ENG-42", "Rename foo to bar")
        supervisor = FakeSupervisor()
        orchestrator = _orchestrator(config, supervisor, code_host, tracker, notifier, workspaces)

        task, statuses = _run_tracking_statuses(orchestrator, "ENG-42")

        assert statuses == [FEEDBACK_IMPLEMENTING, PUSHING, COMPLETE]
        assert task.status == COMPLETE
        assert task.cost_usd == pytest.approx(0.5)
        assert supervisor.calls[0]["resume"] == "sess-1"
        assert "Rename foo to bar" in supervisor.calls[0]["prompt"]
        assert "PR #7" in supervisor.calls[0]["prompt"]
        assert code_host.comments == [(7, "Rename foo to bar")]
        assert code_host.reactions == [1]
        assert workspaces.pulls == ["fix-login-timeout-ENG-42"]
        assert workspaces.pushes == ["fix-login-timeout-ENG-42"] * 2
        assert get_params(db, "ENG-42") is None

    def test_recreates_missing_worktree(self, config, db, issue, code_host, tracker, notifier):
        workspaces = FakeWorkspaces(config)
        self._complete_task(config, db, issue, code_host, tracker, notifier, workspaces)
        worktree = Path(tasks_mod.get_task(db, "ENG-42").worktree_path)
        worktree.rmdir()

        dispatch_mod.dispatch_feedback(db, config, "ENG-42", "Add a test", post_as_comment=False)
        task, statuses = _run_tracking_statuses(
            _orchestrator(config, FakeSupervisor(), code_host, tracker, notifier, workspaces),
            "ENG-42",
        )

        assert statuses[0] == WORKTREE_CREATED
        assert task.status == COMPLETE
        assert worktree.exists()
        assert code_host.comments == []

    def test_pull_failure_is_a_warning(self, config, db, issue, code_host, tracker, notifier):
        workspaces = FakeWorkspaces(config)
        self._complete_task(config, db, issue, code_host, tracker, notifier, workspaces)
        workspaces.pull_error = GitError("git pull failed: conflict", "conflict")

        dispatch_mod.dispatch_feedback(db, config, "ENG-42", "Add a test")
        task = _orchestrator(
            config, FakeSupervisor(), code_host, tracker, notifier, workspaces
        ).run("ENG-42")

        assert task.status == COMPLETE
        assert any("Warning: Pull failed" in entry for entry in task.progress_log)
