"""Branch-scoped git worktree lifecycle: create, install, commit, sync."""

import logging
import shutil
import subprocess
from pathlib import Path

from issue_orchestrator.config import Config, RepoConfig
from issue_orchestrator.integrations import git
from issue_orchestrator.integrations.git import GitError

logger = logging.getLogger(__name__)

# Checked in order; the first lock file present decides the install command.
LOCKFILE_INSTALLERS = (
    ("bun.lockb", ["bun", "install"]),
    ("bun.lock", ["bun", "install"]),
    ("pnpm-lock.yaml", ["pnpm", "install", "--frozen-lockfile"]),
    ("yarn.lock", ["yarn", "install", "--frozen-lockfile"]),
    ("package-lock.json", ["npm", "ci"]),
    ("uv.lock", ["uv", "sync", "--frozen"]),
    ("poetry.lock", ["poetry", "install", "--no-root"]),
)

FALLBACK_MANIFEST = "package.json"
FALLBACK_INSTALL = ["npm", "install"]


class WorkspaceError(Exception):
    """Raised when preparing a workspace fails outside of git itself."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class WorkspaceManager:
    """Creates and maintains one worktree per (repository, branch)."""

    def __init__(self, config: Config):
        self.config = config

    # ── Paths ───────────────────────────────────────────────────────────────

    def resolve_workspace_path(self, repo_name: str, branch_name: str) -> Path:
        return self.config.worktree_base_path / repo_name / branch_name

    def plan_path(self, branch_name: str) -> Path:
        return self.config.plan_files_path / f"{branch_name}-plan.md"

    def ensure_plan_directory(self) -> Path:
        self.config.plan_files_path.mkdir(parents=True, exist_ok=True)
        return self.config.plan_files_path

    def read_plan(self, branch_name: str) -> str | None:
        """Return the plan text for a branch, or None if no plan was written."""
        try:
            return self.plan_path(branch_name).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def workspace_exists(path: str | Path) -> bool:
        return Path(path).exists()

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def create_or_reuse_workspace(
        self,
        repo: RepoConfig,
        branch_name: str,
        base_branch: str,
    ) -> Path:
        """Return a worktree for ``branch_name``, creating it if needed.

        An existing, registered worktree is reused after refreshing the
        remote-tracking refs. Otherwise the branch is attached in this order
        of preference: a local branch left by an earlier run (fast-forwarded
        to the upstream branch when that has moved on), the upstream branch
        (tracked), and finally a new branch forked from ``origin/<base_branch>``.
        A local branch that has diverged from upstream raises WorkspaceError.
        """
        path = self.resolve_workspace_path(repo.name, branch_name)

        if path.exists():
            if self._is_registered(repo, path):
                self._fetch(repo)
                logger.info("Reusing workspace %s", path)
                return path
            logger.warning("Removing unregistered directory at workspace path %s", path)
            self.remove_workspace(repo, path)

        path.parent.mkdir(parents=True, exist_ok=True)
        self._fetch(repo)

        if git.branch_exists(repo.local_path, branch_name):
            git.worktree_add(repo.local_path, path, branch_name, create_branch=False)
            if git.ref_exists(repo.local_path, f"refs/remotes/origin/{branch_name}"):
                self._catch_up_with_upstream(repo, path, branch_name)
        elif git.ref_exists(repo.local_path, f"refs/remotes/origin/{branch_name}"):
            git.worktree_add(
                repo.local_path, path, branch_name, f"origin/{branch_name}", track=True
            )
        else:
            git.worktree_add(repo.local_path, path, branch_name, f"origin/{base_branch}")

        logger.info("Created workspace %s for %s", path, branch_name)
        return path

    def remove_workspace(self, repo: RepoConfig, path: str | Path) -> None:
        """Force-remove a worktree, falling back to deleting the directory."""
        try:
            git.worktree_remove(repo.local_path, path, force=True)
        except GitError as e:
            logger.warning("git worktree remove failed for %s: %s", path, e)
            shutil.rmtree(path, ignore_errors=True)
            git.worktree_prune(repo.local_path)

    def install_dependencies(self, path: str | Path) -> list[str] | None:
        """Install the workspace's dependencies. Returns the command run, if any."""
        path = Path(path)
        command = None
        for lockfile, installer in LOCKFILE_INSTALLERS:
            if (path / lockfile).exists():
                command = installer
                break
        if command is None and (path / FALLBACK_MANIFEST).exists():
            command = FALLBACK_INSTALL
        if command is None:
            return None

        try:
            subprocess.run(command, cwd=path, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            output = (e.stderr or e.stdout or "").strip()
            raise WorkspaceError(f"{' '.join(command)} failed: {output}", output) from e
        except OSError as e:
            raise WorkspaceError(f"{' '.join(command)} could not start: {e}") from e
        return command

    def commit_all_changes(self, path: str | Path) -> bool:
        """Format, stage and commit everything. Returns whether a commit was made."""
        self._format_changed_files(path)
        git.stage_all(path)
        if not git.has_staged_changes(path):
            return False
        git.commit(
            path,
            self.config.commit_message,
            self.config.git_author_name,
            self.config.git_author_email,
        )
        return True

    def push_branch(self, path: str | Path, branch_name: str, repo_name: str) -> None:
        git.push(path, self.config.repo_url(repo_name), branch_name, self.config.github_token)

    def pull_branch(self, path: str | Path, branch_name: str, repo_name: str) -> None:
        """Rebase-pull ``branch_name``. A failed rebase is aborted before re-raising."""
        try:
            git.pull_rebase(
                path,
                self.config.repo_url(repo_name),
                branch_name,
                self.config.github_token,
                env=git.identity_env(self.config.git_author_name, self.config.git_author_email),
            )
        except GitError:
            try:
                git.rebase_abort(path)
            except GitError:
                pass  # No rebase in progress
            raise

    # ── Internals ───────────────────────────────────────────────────────────

    def _fetch(self, repo: RepoConfig) -> None:
        git.fetch(repo.local_path, self.config.repo_url(repo.name), self.config.github_token)

    def _catch_up_with_upstream(self, repo: RepoConfig, path: Path, branch_name: str) -> None:
        upstream = f"origin/{branch_name}"
        if git.is_ancestor(path, upstream, "HEAD"):
            return
        if not git.is_ancestor(path, "HEAD", upstream):
            self.remove_workspace(repo, path)
            raise WorkspaceError(
                f"Local branch {branch_name} has diverged from {upstream}; "
                "reconcile or delete the local branch and retry"
            )
        git.merge_ff_only(path, upstream)
        logger.info("Fast-forwarded %s to %s", branch_name, upstream)

    @staticmethod
    def _is_registered(repo: RepoConfig, path: Path) -> bool:
        target = path.resolve()
        for worktree in git.worktree_list(repo.local_path):
            if Path(worktree.path).resolve() == target:
                return True
        return False

    def _format_changed_files(self, path: str | Path) -> None:
        if not self.config.formatter_command:
            return
        try:
            files = git.changed_files(path)
            if files:
                subprocess.run(
                    self.config.formatter_command + files,
                    cwd=path,
                    capture_output=True,
                    text=True,
                    check=True,
                )
        except (GitError, subprocess.CalledProcessError, OSError) as e:
            logger.warning("Formatting skipped in %s: %s", path, e)
