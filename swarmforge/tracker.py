"""
Issue Tracker Integration
=========================

The orchestrator talks to the issue tracker through two calls:

    fetch_items(ids) -> list[Item]
    update_item_status(id, status_name) -> bool

Both degrade instead of raising: an unreachable tracker yields ``[]`` or
``False`` and a logged warning, and the run continues without it.

Implementations:
- LinearTracker: Linear GraphQL API over httpx
- JsonFileTracker: items kept in a local JSON document (offline use, tests)
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from swarmforge.jsonl import RecordParseError, read_json, write_json
from swarmforge.models import Item


logger = logging.getLogger(__name__)

LINEAR_API_URL = "https://api.linear.app/graphql"

_ISSUE_FIELDS = """
    id
    identifier
    title
    description
    priority
    state { name }
    labels { nodes { name } }
    assignee { id name }
"""

ISSUE_QUERY = f"""
query GetIssue($identifier: String!) {{
  issue(id: $identifier) {{ {_ISSUE_FIELDS} }}
}}
"""

BACKLOG_QUERY = f"""
query Backlog($first: Int!, $filter: IssueFilter) {{
  issues(first: $first, filter: $filter) {{
    nodes {{ {_ISSUE_FIELDS} }}
  }}
}}
"""

ISSUE_STATES_QUERY = """
query GetIssueStates($identifier: String!) {
  issue(id: $identifier) {
    id
    identifier
    team { id states { nodes { id name } } }
  }
}
"""

UPDATE_STATE_MUTATION = """
mutation UpdateIssue($issueId: String!, $stateId: String!) {
  issueUpdate(id: $issueId, input: { stateId: $stateId }) {
    success
    issue { id identifier state { name } }
  }
}
"""


class IssueTracker(Protocol):
    """What the orchestrator needs from an issue tracker."""

    def fetch_items(self, ids: list[str]) -> list[Item]:
        ...

    def fetch_backlog(self, limit: int = 50) -> list[Item]:
        ...

    def update_item_status(self, item_id: str, status_name: str) -> bool:
        ...


def _item_from_linear(node: dict) -> Item:
    assignee = node.get("assignee") or {}
    return Item(
        id=node.get("identifier") or node["id"],
        title=node.get("title") or "",
        description=node.get("description") or "",
        priority=int(node.get("priority") or 0),
        labels=[l["name"] for l in (node.get("labels") or {}).get("nodes", [])],
        state=(node.get("state") or {}).get("name"),
        assignee_id=assignee.get("id"),
        assignee_name=assignee.get("name"),
    )


class LinearTracker:
    """
    Linear GraphQL client.

    Without an API key every call is skipped with a warning.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        team_id: Optional[str] = None,
        api_url: str = LINEAR_API_URL,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.team_id = team_id
        self.api_url = api_url
        self._client = client or httpx.Client(timeout=30.0)

    @classmethod
    def from_env(cls) -> "LinearTracker":
        return cls(
            api_key=os.environ.get("LINEAR_API_KEY"),
            team_id=os.environ.get("LINEAR_TEAM_ID"),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def close(self) -> None:
        self._client.close()

    def query(self, query: str, variables: Optional[dict[str, Any]] = None) -> Optional[dict]:
        """
        Run a GraphQL operation.

        Returns:
            The ``data`` payload, or None on any transport or GraphQL error
        """
        if not self.enabled:
            logger.warning("LINEAR_API_KEY not set - Linear operations will be skipped")
            return None

        try:
            response = self._client.post(
                self.api_url,
                json={"query": query, "variables": variables or {}},
                headers={"Authorization": self.api_key, "Content-Type": "application/json"},
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as e:
            logger.warning("Linear API request failed: %s", e)
            return None
        except json.JSONDecodeError as e:
            logger.warning("Linear API returned invalid JSON: %s", e)
            return None

        if not isinstance(result, dict):
            logger.warning("Linear API returned an unexpected body: %r", result)
            return None
        if result.get("errors"):
            logger.warning("Linear API error: %s", result["errors"])
            return None
        data = result.get("data")
        return data if isinstance(data, dict) else None

    def fetch_items(self, ids: list[str]) -> list[Item]:
        items = []
        for identifier in ids:
            data = self.query(ISSUE_QUERY, {"identifier": identifier})
            node = (data or {}).get("issue")
            if node:
                items.append(_item_from_linear(node))
            else:
                logger.warning("Could not fetch Linear issue %s", identifier)
        return items

    def fetch_backlog(self, limit: int = 50) -> list[Item]:
        """Unstarted and backlog issues, optionally limited to one team."""
        issue_filter: dict[str, Any] = {"state": {"type": {"in": ["backlog", "unstarted"]}}}
        if self.team_id:
            issue_filter["team"] = {"id": {"eq": self.team_id}}

        data = self.query(BACKLOG_QUERY, {"first": limit, "filter": issue_filter})
        if not data:
            return []
        return [_item_from_linear(node) for node in (data.get("issues") or {}).get("nodes") or []]

    def update_item_status(self, item_id: str, status_name: str) -> bool:
        data = self.query(ISSUE_STATES_QUERY, {"identifier": item_id})
        issue = (data or {}).get("issue")
        if not issue:
            logger.warning("Could not find Linear issue: %s", item_id)
            return False

        team = issue.get("team") or {}
        states = (team.get("states") or {}).get("nodes") or []
        if not states:
            logger.warning("Linear issue %s has no workflow states", item_id)
            return False

        target = next((s for s in states if s["name"] == status_name), None)
        if target is None:
            logger.warning('Could not find status "%s" for issue %s', status_name, item_id)
            return False

        result = self.query(UPDATE_STATE_MUTATION, {"issueId": issue["id"], "stateId": target["id"]})
        return bool(result and (result.get("issueUpdate") or {}).get("success"))


class JsonFileTracker:
    """
    Items read from a local JSON file: a list of items or ``{"items": [...]}``.

    Status updates are written back to the same file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> list[dict]:
        try:
            data = read_json(self.path)
        except RecordParseError as e:
            logger.warning("Could not read items file: %s", e)
            return []
        if data is None:
            logger.warning("Items file %s not found", self.path)
            return []
        return data.get("items", []) if isinstance(data, dict) else list(data)

    def fetch_items(self, ids: list[str]) -> list[Item]:
        by_id = {raw["id"]: raw for raw in self._load() if "id" in raw}
        items = []
        for item_id in ids:
            if item_id in by_id:
                items.append(Item.from_dict(by_id[item_id]))
            else:
                logger.warning("Item %s not found in %s", item_id, self.path)
        return items

    def fetch_backlog(self, limit: int = 50) -> list[Item]:
        return [Item.from_dict(raw) for raw in self._load() if "id" in raw][:limit]

    def update_item_status(self, item_id: str, status_name: str) -> bool:
        try:
            data = read_json(self.path)
        except RecordParseError as e:
            logger.warning("Could not read items file: %s", e)
            return False
        records = data.get("items", []) if isinstance(data, dict) else data
        if not records:
            return False
        for raw in records:
            if raw.get("id") == item_id:
                raw["state"] = status_name
                write_json(self.path, data)
                return True
        return False
