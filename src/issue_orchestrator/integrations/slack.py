"""Slack Web API integration."""

import logging
from dataclasses import dataclass

from issue_orchestrator.db.models import (
    CANCELLED,
    COMPLETE,
    ERROR,
    PLAN_COMPLETE,
    STATUS_LABELS,
    TaskRecord,
)

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


_STATUS_EMOJI = {
    COMPLETE: ":white_check_mark:",
    PLAN_COMPLETE: ":memo:",
    ERROR: ":x:",
    CANCELLED: ":no_entry_sign:",
}


def format_task_notification(task: TaskRecord) -> list[dict]:
    """Format a task outcome as Slack blocks."""
    emoji = _STATUS_EMOJI.get(task.status, ":grey_question:")
    label = STATUS_LABELS.get(task.status, task.status)
    text = (
        f"{emoji} *{task.issue_key}*: {task.issue_summary}\n"
        f"Status: *{label}* | Repo: {task.repo_name} | Branch: `{task.branch_name}`"
    )
    if task.pr_url:
        text += f"\n<{task.pr_url}|View Pull Request>"
    if task.error:
        text += f"\nError: {task.error[:300]}"
    if task.cost_usd:
        text += f"\nCost: ${task.cost_usd:.2f}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackNotifier:
    """Posts task outcomes to one channel. Unconfigured notifiers do nothing."""

    def __init__(self, token: str | None, channel: str | None):
        self.token = token
        self.channel = channel

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def notify(self, task: TaskRecord) -> SlackMessage | None:
        if not self.enabled:
            return None
        label = STATUS_LABELS.get(task.status, task.status)
        return send_message(
            self.token,
            self.channel,
            f"{task.issue_key}: {label}",
            blocks=format_task_notification(task),
        )
