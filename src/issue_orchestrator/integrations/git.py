"""Git subprocess wrappers for worktree and branch operations."""

import base64
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

REMOTE_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"

_HEADER_ARG = re.compile(r"(extraheader=Authorization: )\S+ \S+")


class GitError(Exception):
    """Raised when a git command fails. ``output`` holds the captured stderr/stdout."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def _redact(args: list[str]) -> str:
    return _HEADER_ARG.sub(r"\1<redacted>", " ".join(args))


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env={**os.environ, **env} if env else None,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        output = (e.stderr or e.stdout or "").strip()
        raise GitError(f"git {_redact(args)} failed: {output}", output) from e


def auth_config_args(url: str, token: str | None) -> list[str]:
    """``-c`` arguments injecting a token for ``url``'s host as an HTTP header.

    Keeps the token out of the URL (and therefore out of reflogs and remotes).
    Non-HTTP URLs get no credentials.
    """
    if not token:
        return []
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return []
    basic = base64.b64encode(f"pat:{token}".encode()).decode()
    return [
        "-c",
        f"http.{parts.scheme}://{parts.netloc}/.extraheader=Authorization: Basic {basic}",
    ]


def fetch(repo_path: str | Path, url: str, token: str | None = None) -> str:
    """Fetch every branch of ``url`` into ``origin/*`` remote-tracking refs."""
    return run_git(auth_config_args(url, token) + ["fetch", url, REMOTE_REFSPEC], cwd=repo_path)


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    start_point: str | None = None,
    create_branch: bool = True,
    track: bool = False,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        if track:
            args.append("--track")
        args += ["-b", branch, str(worktree_path)]
        if start_point:
            args.append(start_point)
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    def flush():
        worktrees.append(
            WorktreeInfo(
                path=current.get("worktree", ""),
                branch=current.get("branch", "").replace("refs/heads/", ""),
                head=current.get("HEAD", ""),
                is_bare=current.get("bare", False),
            )
        )

    for line in output.split("\n"):
        if not line:
            if current:
                flush()
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    if current:
        flush()

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def ref_exists(repo_path: str | Path, ref: str) -> bool:
    """Check if a ref (branch, remote-tracking branch, commit) resolves."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", ref], cwd=repo_path)
        return True
    except GitError:
        return False


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    return ref_exists(repo_path, f"refs/heads/{branch}")


def changed_files(cwd: str | Path) -> list[str]:
    """Added, copied, modified or renamed tracked files plus untracked files."""
    tracked = run_git(["diff", "--name-only", "--diff-filter=ACMR", "HEAD"], cwd=cwd)
    untracked = run_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)
    files = []
    for name in tracked.splitlines() + untracked.splitlines():
        if name and name not in files:
            files.append(name)
    return files


def stage_all(cwd: str | Path) -> str:
    return run_git(["add", "-A"], cwd=cwd)


def has_staged_changes(cwd: str | Path) -> bool:
    """``git diff --cached --quiet`` exits 1 when something is staged."""
    try:
        run_git(["diff", "--cached", "--quiet"], cwd=cwd)
        return False
    except GitError:
        return True


def commit(cwd: str | Path, message: str, author_name: str, author_email: str) -> str:
    """Commit staged changes with an explicit author and committer identity."""
    return run_git(
        ["commit", "-m", message], cwd=cwd, env=identity_env(author_name, author_email)
    )


def identity_env(name: str, email: str) -> dict[str, str]:
    return {
        "GIT_AUTHOR_NAME": name,
        "GIT_AUTHOR_EMAIL": email,
        "GIT_COMMITTER_NAME": name,
        "GIT_COMMITTER_EMAIL": email,
    }


def push(cwd: str | Path, url: str, branch: str, token: str | None = None) -> str:
    """Push HEAD to ``branch`` on ``url``."""
    return run_git(
        auth_config_args(url, token) + ["push", url, f"HEAD:refs/heads/{branch}"], cwd=cwd
    )


def pull_rebase(
    cwd: str | Path,
    url: str,
    branch: str,
    token: str | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Rebase local commits onto ``branch`` from ``url``."""
    return run_git(
        auth_config_args(url, token) + ["pull", "--rebase", url, branch], cwd=cwd, env=env
    )


def rebase_abort(cwd: str | Path) -> str:
    return run_git(["rebase", "--abort"], cwd=cwd)


def is_ancestor(cwd: str | Path, ancestor: str, descendant: str) -> bool:
    """Whether every commit of ``ancestor`` is already in ``descendant``."""
    try:
        run_git(["merge-base", "--is-ancestor", ancestor, descendant], cwd=cwd)
        return True
    except GitError:
        return False


def merge_ff_only(cwd: str | Path, ref: str) -> str:
    return run_git(["merge", "--ff-only", ref], cwd=cwd)
