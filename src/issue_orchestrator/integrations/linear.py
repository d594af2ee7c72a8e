"""Linear GraphQL client: fetch issues, comment, move between workflow states."""

import logging
from typing import Any

import httpx

from issue_orchestrator.db.models import IssueComment, IssueSnapshot

logger = logging.getLogger(__name__)

GRAPHQL_ENDPOINT = "https://api.linear.app/graphql"

ISSUE_FIELDS = """
  id
  identifier
  title
  description
  url
  priorityLabel
  state { name }
  comments { nodes { body createdAt user { name } } }
"""


class LinearError(Exception):
    """Raised when the Linear API rejects a request or returns errors."""


class LinearClient:
    def __init__(
        self,
        api_key: str | None,
        endpoint: str = GRAPHQL_ENDPOINT,
        transport: httpx.BaseTransport | None = None,
        timeout_seconds: float = 30.0,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = api_key
        self.endpoint = endpoint
        self._client = httpx.Client(
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _query(self, query: str, variables: dict | None = None) -> dict[str, Any]:
        try:
            response = self._client.post(
                self.endpoint, json={"query": query, "variables": variables or {}}
            )
        except httpx.HTTPError as exc:
            raise LinearError(f"Linear API request failed: {exc}") from exc
        if not response.is_success:
            raise LinearError(f"Linear API {response.status_code}: {response.text}")
        payload = response.json()
        if payload.get("errors"):
            raise LinearError(f"Linear API: {payload['errors'][0].get('message')}")
        if not payload.get("data"):
            raise LinearError("Linear API: no data returned")
        return payload["data"]

    def fetch_issue(self, identifier: str) -> IssueSnapshot:
        """Fetch an issue by identifier (e.g. ``ENG-123``)."""
        data = self._query(
            f"query($id: String!) {{ issue(id: $id) {{ {ISSUE_FIELDS} }} }}",
            {"id": identifier},
        )
        issue = data.get("issue")
        if not issue:
            raise LinearError(f"Issue not found: {identifier}")
        comments = [
            IssueComment(
                author=(c.get("user") or {}).get("name") or "Unknown",
                body=c.get("body") or "",
                created_at=c.get("createdAt") or "",
            )
            for c in (issue.get("comments") or {}).get("nodes") or []
        ]
        return IssueSnapshot(
            key=issue["identifier"],
            title=issue["title"],
            description=issue.get("description") or "",
            url=issue.get("url") or "",
            state=(issue.get("state") or {}).get("name") or "",
            priority_label=issue.get("priorityLabel") or "",
            comments=comments,
        )

    def add_comment(self, issue_key: str, body: str) -> None:
        self._query(
            """mutation($issueId: String!, $body: String!) {
                 commentCreate(input: { issueId: $issueId, body: $body }) { success }
               }""",
            {"issueId": issue_key, "body": body},
        )

    def transition_issue(self, issue_key: str, state_name: str) -> bool:
        """Move an issue to the team workflow state named ``state_name``.

        Returns False (and changes nothing) if the team has no such state.
        """
        data = self._query(
            "query($id: String!) { issue(id: $id) { team { id } } }", {"id": issue_key}
        )
        issue = data.get("issue")
        if not issue:
            raise LinearError(f"Issue not found: {issue_key}")
        states = self._query(
            """query($teamId: ID) {
                 workflowStates(filter: { team: { id: { eq: $teamId } } }) {
                   nodes { id name }
                 }
               }""",
            {"teamId": issue["team"]["id"]},
        )
        target = None
        for state in states["workflowStates"]["nodes"]:
            if state["name"].lower() == state_name.lower():
                target = state
                break
        if target is None:
            logger.info("No workflow state named %r for %s", state_name, issue_key)
            return False
        self._query(
            """mutation($id: String!, $stateId: String!) {
                 issueUpdate(id: $id, input: { stateId: $stateId }) { success }
               }""",
            {"id": issue_key, "stateId": target["id"]},
        )
        return True
