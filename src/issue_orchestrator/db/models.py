"""Data models for the issue orchestrator."""

from dataclasses import dataclass, field

# Task lifecycle statuses
INITIALIZING = "initializing"
WORKTREE_CREATED = "worktree_created"
DEPENDENCIES_INSTALLED = "dependencies_installed"
PLANNING = "planning"
PLAN_COMPLETE = "plan_complete"
IMPLEMENTING = "implementing"
IMPLEMENTATION_COMPLETE = "implementation_complete"
PUSHING = "pushing"
PR_CREATED = "pr_created"
FEEDBACK_IMPLEMENTING = "feedback_implementing"
COMPLETE = "complete"
ERROR = "error"
CANCELLED = "cancelled"

IMPLEMENT_FLOW = (
    INITIALIZING,
    WORKTREE_CREATED,
    DEPENDENCIES_INSTALLED,
    IMPLEMENTING,
    IMPLEMENTATION_COMPLETE,
    PUSHING,
    PR_CREATED,
    COMPLETE,
)

PLAN_FLOW = (
    INITIALIZING,
    WORKTREE_CREATED,
    DEPENDENCIES_INSTALLED,
    PLANNING,
    PLAN_COMPLETE,
)

FEEDBACK_FLOW = (WORKTREE_CREATED, FEEDBACK_IMPLEMENTING, PUSHING, COMPLETE)

TERMINAL_STATUSES = (COMPLETE, ERROR, CANCELLED)

STATUS_LABELS = {
    INITIALIZING: "Initializing",
    WORKTREE_CREATED: "Worktree Created",
    DEPENDENCIES_INSTALLED: "Dependencies Installed",
    PLANNING: "Planning",
    PLAN_COMPLETE: "Plan Complete",
    IMPLEMENTING: "Implementing",
    IMPLEMENTATION_COMPLETE: "Implementation Complete",
    PUSHING: "Pushing",
    PR_CREATED: "PR Created",
    FEEDBACK_IMPLEMENTING: "Implementing Feedback",
    COMPLETE: "Complete",
    ERROR: "Error",
    CANCELLED: "Cancelled",
}

# Persisted camelCase key for each TaskRecord attribute
_RECORD_KEYS = {
    "task_id": "taskId",
    "issue_key": "issueKey",
    "issue_summary": "issueSummary",
    "issue_url": "issueUrl",
    "repo_name": "repoName",
    "branch_name": "branchName",
    "worktree_path": "worktreePath",
    "base_branch": "baseBranch",
    "status": "status",
    "claude_session_id": "claudeSessionId",
    "pr_url": "prUrl",
    "pr_number": "prNumber",
    "error": "error",
    "cost_usd": "costUsd",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "progress_log": "progressLog",
}

_OPTIONAL_RECORD_FIELDS = ("claude_session_id", "pr_url", "pr_number", "error", "cost_usd")


@dataclass
class TaskRecord:
    task_id: str
    issue_key: str
    issue_summary: str
    issue_url: str
    repo_name: str
    branch_name: str
    worktree_path: str
    base_branch: str
    status: str = INITIALIZING
    claude_session_id: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    error: str | None = None
    cost_usd: float | None = None
    created_at: int = 0
    updated_at: int = 0
    progress_log: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {}
        for attr, key in _RECORD_KEYS.items():
            value = getattr(self, attr)
            if value is None and attr in _OPTIONAL_RECORD_FIELDS:
                continue
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TaskRecord":
        """Build a record from its persisted shape. Raises on missing keys."""
        kwargs = {}
        for attr, key in _RECORD_KEYS.items():
            if key in data:
                kwargs[attr] = data[key]
            elif attr not in _OPTIONAL_RECORD_FIELDS:
                raise KeyError(key)
        if not isinstance(kwargs["progress_log"], list):
            raise TypeError("progressLog must be a list")
        return cls(**kwargs)


@dataclass
class IssueComment:
    author: str
    body: str
    created_at: str = ""

    def to_dict(self) -> dict:
        return {"author": self.author, "body": self.body, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: dict) -> "IssueComment":
        return cls(
            author=data.get("author") or "Unknown",
            body=data["body"],
            created_at=data.get("createdAt") or "",
        )


@dataclass
class IssueSnapshot:
    """Point-in-time copy of an issue, enough to build prompts offline."""

    key: str
    title: str
    description: str = ""
    url: str = ""
    state: str = ""
    priority_label: str = ""
    comments: list[IssueComment] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "state": self.state,
            "priorityLabel": self.priority_label,
            "comments": [c.to_dict() for c in self.comments],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IssueSnapshot":
        return cls(
            key=data["key"],
            title=data["title"],
            description=data.get("description") or "",
            url=data.get("url") or "",
            state=data.get("state") or "",
            priority_label=data.get("priorityLabel") or "",
            comments=[IssueComment.from_dict(c) for c in data.get("comments") or []],
        )


@dataclass
class RunParams:
    """Parameters for a plan or implement run."""

    mode: str
    issue: IssueSnapshot
    repo_name: str
    branch_name: str
    base_branch: str
    user_instructions: str = ""
    update_existing_plan: bool = False

    @property
    def issue_key(self) -> str:
        return self.issue.key

    def as_implement(self) -> "RunParams":
        """The follow-up implement run handed off after a plan completes."""
        return RunParams(
            mode="implement",
            issue=self.issue,
            repo_name=self.repo_name,
            branch_name=self.branch_name,
            base_branch=self.base_branch,
            user_instructions=self.user_instructions,
        )

    def to_dict(self) -> dict:
        data = {
            "mode": self.mode,
            "issue": self.issue.to_dict(),
            "repoName": self.repo_name,
            "branchName": self.branch_name,
            "baseBranch": self.base_branch,
            "userInstructions": self.user_instructions,
        }
        if self.update_existing_plan:
            data["updateExistingPlan"] = True
        return data


@dataclass
class FeedbackParams:
    """Parameters for a feedback run against an existing pull request."""

    issue_key: str
    repo_name: str
    feedback_text: str
    post_as_comment: bool = True
    new_comments_context: str | None = None
    mode: str = "feedback"

    def to_dict(self) -> dict:
        data = {
            "mode": self.mode,
            "issueKey": self.issue_key,
            "repoName": self.repo_name,
            "feedbackText": self.feedback_text,
            "postAsComment": self.post_as_comment,
        }
        if self.new_comments_context:
            data["newCommentsContext"] = self.new_comments_context
        return data


def params_from_dict(data: dict) -> RunParams | FeedbackParams:
    """Parse a persisted params payload. Raises on malformed input."""
    mode = data["mode"]
    if mode in ("plan", "implement"):
        return RunParams(
            mode=mode,
            issue=IssueSnapshot.from_dict(data["issue"]),
            repo_name=data["repoName"],
            branch_name=data["branchName"],
            base_branch=data["baseBranch"],
            user_instructions=data.get("userInstructions") or "",
            update_existing_plan=bool(data.get("updateExistingPlan", False)),
        )
    if mode == "feedback":
        return FeedbackParams(
            issue_key=data["issueKey"],
            repo_name=data["repoName"],
            feedback_text=data.get("feedbackText") or "",
            post_as_comment=bool(data.get("postAsComment", False)),
            new_comments_context=data.get("newCommentsContext") or None,
        )
    raise ValueError(f"Unknown orchestration mode: {mode}")
