"""GitHub REST client for pull requests, comments and reactions."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0


class GitHubError(Exception):
    """Raised when the GitHub API returns an error response."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class PullRequest:
    number: int
    html_url: str
    title: str = ""
    author: str = ""
    head: str = ""
    base: str = ""


@dataclass
class ReviewComment:
    """A top-level comment, inline review comment, or review summary on a PR."""

    id: int
    kind: str  # "comment" | "inline" | "review"
    user: str
    body: str
    created_at: datetime | None
    path: str | None = None
    line: int | None = None
    state: str | None = None

    @property
    def can_react(self) -> bool:
        return self.kind in ("comment", "inline")

    def describe(self) -> str:
        if self.kind == "review":
            return f"[Review by {self.user} — {self.state}]: {self.body}"
        if self.kind == "inline":
            location = ""
            if self.path:
                location = f" ({self.path}{f':{self.line}' if self.line else ''})"
            return f"[Inline comment by {self.user}{location}]: {self.body}"
        return f"[Comment by {self.user}]: {self.body}"


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse GitHub's ISO-8601 timestamps (``...Z``) into aware datetimes."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _pull_request(data: dict) -> PullRequest:
    return PullRequest(
        number=data["number"],
        html_url=data["html_url"],
        title=data.get("title") or "",
        author=(data.get("user") or {}).get("login") or "",
        head=(data.get("head") or {}).get("ref") or "",
        base=(data.get("base") or {}).get("ref") or "",
    )


class GitHubClient:
    """Thin synchronous wrapper over the GitHub REST API for one owner."""

    def __init__(
        self,
        token: str | None,
        owner: str,
        bot_logins: list[str] | None = None,
        base_url: str = API_BASE,
        transport: httpx.BaseTransport | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.owner = owner
        self.bot_logins = {b.lower() for b in bot_logins or []}
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "issue-orchestrator",
        }
        if token:
            headers["Authorization"] = f"token {token}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise GitHubError(f"GitHub API request failed: {exc}") from exc
        if not response.is_success:
            raise GitHubError(
                f"GitHub API {response.status_code}: {response.text}", response.status_code
            )
        if not response.content:
            return None
        return response.json()

    def _paginate(self, path: str) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            batch = self._request("GET", path, params={"per_page": 100, "page": page})
            if not batch:
                break
            items.extend(batch)
            if len(batch) < 100:
                break
            page += 1
        return items

    # ── Pull requests ───────────────────────────────────────────────────────

    def create_pull_request(
        self, repo: str, title: str, body: str, head: str, base: str
    ) -> PullRequest:
        data = self._request(
            "POST",
            f"/repos/{self.owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        pr = _pull_request(data)
        logger.info("Created PR #%s on %s/%s", pr.number, self.owner, repo)
        return pr

    def fetch_pull_request(self, repo: str, number: int) -> PullRequest:
        return _pull_request(self._request("GET", f"/repos/{self.owner}/{repo}/pulls/{number}"))

    def fetch_pr_commits(self, repo: str, number: int) -> list[dict]:
        return self._paginate(f"/repos/{self.owner}/{repo}/pulls/{number}/commits")

    def last_commit_time(self, repo: str, number: int) -> datetime | None:
        """Committer timestamp of the newest commit on the PR, if any."""
        latest = None
        for commit in self.fetch_pr_commits(repo, number):
            info = commit.get("commit") or {}
            stamp = parse_timestamp(
                (info.get("committer") or {}).get("date")
                or (info.get("author") or {}).get("date")
            )
            if stamp and (latest is None or stamp > latest):
                latest = stamp
        return latest

    # ── Comments ────────────────────────────────────────────────────────────

    def add_comment(self, repo: str, number: int, body: str) -> None:
        self._request(
            "POST", f"/repos/{self.owner}/{repo}/issues/{number}/comments", json={"body": body}
        )

    def add_reaction(self, repo: str, comment: ReviewComment, content: str = "+1") -> None:
        if comment.kind == "inline":
            path = f"/repos/{self.owner}/{repo}/pulls/comments/{comment.id}/reactions"
        elif comment.kind == "comment":
            path = f"/repos/{self.owner}/{repo}/issues/comments/{comment.id}/reactions"
        else:
            raise GitHubError(f"Cannot react to a {comment.kind}")
        self._request("POST", path, json={"content": content})

    def list_review_comments(self, repo: str, number: int) -> list[ReviewComment]:
        """Reviews, inline review comments and conversation comments on a PR."""
        prefix = f"/repos/{self.owner}/{repo}"
        comments = []
        for review in self._paginate(f"{prefix}/pulls/{number}/reviews"):
            if not review.get("body"):
                continue
            comments.append(
                ReviewComment(
                    id=review["id"],
                    kind="review",
                    user=(review.get("user") or {}).get("login") or "",
                    body=review["body"],
                    created_at=parse_timestamp(review.get("submitted_at")),
                    state=review.get("state"),
                )
            )
        for item in self._paginate(f"{prefix}/pulls/{number}/comments"):
            comments.append(
                ReviewComment(
                    id=item["id"],
                    kind="inline",
                    user=(item.get("user") or {}).get("login") or "",
                    body=item.get("body") or "",
                    created_at=parse_timestamp(item.get("created_at")),
                    path=item.get("path"),
                    line=item.get("line"),
                )
            )
        for item in self._paginate(f"{prefix}/issues/{number}/comments"):
            comments.append(
                ReviewComment(
                    id=item["id"],
                    kind="comment",
                    user=(item.get("user") or {}).get("login") or "",
                    body=item.get("body") or "",
                    created_at=parse_timestamp(item.get("created_at")),
                )
            )
        return comments

    def is_bot_user(self, login: str) -> bool:
        login = login.lower()
        return login.endswith("[bot]") or login in self.bot_logins

    def comments_since(
        self,
        comments: list[ReviewComment],
        since: datetime | None,
        until: datetime | None = None,
        exclude: tuple[str, ...] = (),
    ) -> list[ReviewComment]:
        """Human comments created after ``since`` (and not after ``until``)."""
        if since is None:
            return []
        excluded = {e.lower() for e in exclude}
        selected = []
        for comment in comments:
            if not comment.created_at or comment.created_at <= since:
                continue
            if until is not None and comment.created_at > until:
                continue
            if self.is_bot_user(comment.user) or comment.user.lower() in excluded:
                continue
            selected.append(comment)
        return selected


def format_new_comments(comments: list[ReviewComment]) -> str | None:
    """Prompt context listing comments made since the last commit."""
    if not comments:
        return None
    return "\n\n".join(c.describe() for c in comments)
