"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from issue_orchestrator.cli import main
from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.core.params import get_params
from issue_orchestrator.db.engine import get_db
from issue_orchestrator.db.models import PLAN_COMPLETE


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        repo_path = Path(tmp) / "svc"
        repo_path.mkdir()

        env = {
            "IORCH_DB_PATH": str(db_path),
            "IORCH_REPOS": json.dumps([{"name": "svc", "localPath": str(repo_path)}]),
            "IORCH_WORKTREE_BASE_PATH": str(Path(tmp) / "worktrees"),
            "LINEAR_API_KEY": None,
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v

        yield CliRunner(), db_path

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _implement(runner, *extra):
    with patch("issue_orchestrator.core.dispatch.launch_background", return_value=4242):
        return runner.invoke(
            main, ["implement", "ENG-1", "--repo", "svc", "--title", "Fix login", *extra]
        )


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Issue Orchestrator" in result.output

    def test_implement_launches_in_background(self, cli_env):
        runner, db_path = cli_env
        result = _implement(runner, "-d", "Times out after 5s")
        assert result.exit_code == 0, result.output
        assert "Implementing ENG-1 on fix-login-ENG-1" in result.output
        assert "PID 4242" in result.output

        with get_db(db_path) as db:
            task = tasks_mod.get_task(db, "ENG-1")
            params = get_params(db, "ENG-1")
        assert task.status == "initializing"
        assert params.mode == "implement"
        assert params.issue.description == "Times out after 5s"

    def test_plan_in_foreground(self, cli_env):
        runner, db_path = cli_env

        def fake_run(issue_key):
            with get_db(db_path) as db:
                return tasks_mod.update_task_status(db, issue_key, PLAN_COMPLETE)

        with patch("issue_orchestrator.cli.Orchestrator") as mock_orchestrator:
            mock_orchestrator.return_value.run.side_effect = fake_run
            result = runner.invoke(
                main,
                ["plan", "ENG-2", "--repo", "svc", "--title", "Add retries", "--update",
                 "--branch", "retries", "--foreground"],
            )

        assert result.exit_code == 0, result.output
        assert "Planning ENG-2 on retries" in result.output
        assert "ENG-2: Plan Complete" in result.output

    def test_unknown_repo(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["implement", "ENG-1", "--repo", "web", "--title", "X"])
        assert result.exit_code == 1
        assert "Repository not found" in result.output

    def test_issue_lookup_needs_linear_key(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["implement", "ENG-1", "--repo", "svc"])
        assert result.exit_code == 1
        assert "LINEAR_API_KEY" in result.output

    def test_task_list_and_show(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "list"])
        assert "No tasks found." in result.output

        _implement(runner)

        result = runner.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "ENG-1: Fix login (Initializing)" in result.output

        result = runner.invoke(main, ["task", "list", "--json"])
        data = json.loads(result.output)
        assert data[0]["issueKey"] == "ENG-1"
        assert data[0]["branchName"] == "fix-login-ENG-1"

        result = runner.invoke(main, ["task", "list", "--status", "complete"])
        assert "No tasks found." in result.output

        result = runner.invoke(main, ["task", "show", "ENG-1"])
        assert result.exit_code == 0
        assert "Branch: fix-login-ENG-1 (base main)" in result.output

    def test_task_log(self, cli_env):
        runner, db_path = cli_env
        _implement(runner)
        with get_db(db_path) as db:
            tasks_mod.append_progress_log(db, "ENG-1", "[read] app.py")

        result = runner.invoke(main, ["task", "log", "ENG-1", "-n", "1"])
        assert result.exit_code == 0
        assert result.output.strip().endswith("[read] app.py")
        assert "Queued" not in result.output

    def test_task_remove(self, cli_env):
        runner, db_path = cli_env
        _implement(runner)
        result = runner.invoke(main, ["task", "remove", "ENG-1"])
        assert result.exit_code == 0
        with get_db(db_path) as db:
            assert tasks_mod.get_task(db, "ENG-1") is None

    def test_missing_task(self, cli_env):
        runner, _ = cli_env
        for args in (["task", "show", "X-1"], ["task", "log", "X-1"], ["cancel", "X-1"]):
            result = runner.invoke(main, args)
            assert result.exit_code == 1
            assert "Task not found: X-1" in result.output

    def test_cancel(self, cli_env):
        runner, db_path = cli_env
        _implement(runner)
        result = runner.invoke(main, ["cancel", "ENG-1"])
        assert result.exit_code == 0
        assert "Cancellation requested for ENG-1" in result.output
        with get_db(db_path) as db:
            assert tasks_mod.is_cancel_requested(db, "ENG-1")

    def test_feedback_requires_task(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["feedback", "ENG-9", "Rename foo"])
        assert result.exit_code == 1

    def test_feedback_queued(self, cli_env):
        runner, db_path = cli_env
        _implement(runner)
        with patch("issue_orchestrator.core.dispatch.launch_background", return_value=7):
            result = runner.invoke(main, ["feedback", "ENG-1", "Rename foo", "--no-comment"])
        assert result.exit_code == 0, result.output
        with get_db(db_path) as db:
            params = get_params(db, "ENG-1")
        assert params.mode == "feedback"
        assert params.post_as_comment is False

    def test_run_without_params(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["run", "ENG-404"])
        assert result.exit_code == 1
        assert "No orchestration params found" in result.output
