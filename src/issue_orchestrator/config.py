"""Configuration loading from environment variables."""

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


class ConfigError(Exception):
    """Raised when the configuration cannot serve a request."""


@dataclass
class RepoConfig:
    name: str
    local_path: Path
    default_branch: str = "main"


def _default_home() -> Path:
    return Path.home() / ".issue_orchestrator"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: _default_home() / "tasks.db")
    repos: list[RepoConfig] = field(default_factory=list)
    worktree_base_path: Path = field(default_factory=lambda: _default_home() / "worktrees")
    plan_files_path: Path = field(default_factory=lambda: _default_home() / "plans")
    agent_output_dir: Path | None = None
    github_token: str | None = None
    github_owner: str = ""
    git_remote_url: str = "https://github.com/{owner}/{repo}.git"
    linear_api_key: str | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    claude_binary: str = "claude"
    claude_model: str = "sonnet"
    claude_max_turns: int = 200
    claude_max_budget_usd: float | None = None
    agent_extra_path: list[str] = field(default_factory=list)
    git_author_name: str = "Issue Orchestrator"
    git_author_email: str = "issue-orchestrator@users.noreply.github.com"
    formatter_command: list[str] = field(default_factory=lambda: ["npx", "prettier", "--write"])
    commit_message: str = "Apply remaining changes"
    bot_logins: list[str] = field(default_factory=list)
    cancel_poll_interval: float = 2.0
    issue_state_in_progress: str = "In Progress"
    issue_state_in_review: str = "In Review"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("IORCH_DB_PATH"):
            config.db_path = Path(db)

        config.repos = parse_repos(os.environ.get("IORCH_REPOS"))

        if wt_dir := os.environ.get("IORCH_WORKTREE_BASE_PATH"):
            config.worktree_base_path = Path(wt_dir)

        if plan_dir := os.environ.get("IORCH_PLAN_FILES_PATH"):
            config.plan_files_path = Path(plan_dir)

        if out_dir := os.environ.get("IORCH_AGENT_OUTPUT_DIR"):
            config.agent_output_dir = Path(out_dir)

        config.github_token = os.environ.get("GITHUB_TOKEN")
        config.github_owner = os.environ.get("GITHUB_OWNER", "")

        if remote := os.environ.get("IORCH_GIT_REMOTE_URL"):
            config.git_remote_url = remote

        config.linear_api_key = os.environ.get("LINEAR_API_KEY")
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("IORCH_SLACK_CHANNEL")

        if binary := os.environ.get("IORCH_CLAUDE_BINARY"):
            config.claude_binary = binary

        if model := os.environ.get("IORCH_CLAUDE_MODEL"):
            config.claude_model = model

        if turns := os.environ.get("IORCH_CLAUDE_MAX_TURNS"):
            config.claude_max_turns = int(turns)

        if budget := os.environ.get("IORCH_CLAUDE_MAX_BUDGET_USD"):
            config.claude_max_budget_usd = float(budget)

        if extra_path := os.environ.get("IORCH_AGENT_EXTRA_PATH"):
            config.agent_extra_path = [p for p in extra_path.split(os.pathsep) if p]

        if name := os.environ.get("IORCH_GIT_AUTHOR_NAME"):
            config.git_author_name = name

        if email := os.environ.get("IORCH_GIT_AUTHOR_EMAIL"):
            config.git_author_email = email

        # An empty value disables formatting entirely
        formatter = os.environ.get("IORCH_FORMATTER")
        if formatter is not None:
            config.formatter_command = shlex.split(formatter)

        if bots := os.environ.get("IORCH_BOT_LOGINS"):
            config.bot_logins = [b.strip() for b in bots.split(",") if b.strip()]

        if interval := os.environ.get("IORCH_CANCEL_POLL_INTERVAL"):
            config.cancel_poll_interval = float(interval)

        if state := os.environ.get("IORCH_ISSUE_STATE_IN_PROGRESS"):
            config.issue_state_in_progress = state

        if state := os.environ.get("IORCH_ISSUE_STATE_IN_REVIEW"):
            config.issue_state_in_review = state

        if level := os.environ.get("IORCH_LOG_LEVEL"):
            config.log_level = level.upper()

        return config

    def get_repo(self, name: str) -> RepoConfig:
        """Look up a configured repository by name."""
        for repo in self.repos:
            if repo.name == name:
                return repo
        raise ConfigError(f"Repository not found in config: {name}")

    def repo_url(self, repo_name: str) -> str:
        """Canonical upstream URL for a repository."""
        return self.git_remote_url.format(owner=self.github_owner, repo=repo_name)


def parse_repos(raw: str | None) -> list[RepoConfig]:
    """Parse the IORCH_REPOS JSON list, dropping malformed entries."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []

    repos = []
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        local_path = entry.get("localPath")
        if not isinstance(name, str) or not isinstance(local_path, str):
            continue
        repos.append(
            RepoConfig(
                name=name,
                local_path=Path(local_path).expanduser(),
                default_branch=entry.get("defaultBranch") or "main",
            )
        )
    return repos


def get_config() -> Config:
    """Build a fresh Config from the environment. Call again to reload."""
    return Config.from_env()
