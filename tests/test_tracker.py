"""
Tests for issue tracker clients.
"""

import json
import tempfile
from pathlib import Path

import httpx
import pytest

from swarmforge.tracker import JsonFileTracker, LinearTracker


ISSUE_NODE = {
    "id": "uuid-1",
    "identifier": "ENG-101",
    "title": "Fix login button",
    "description": "The button is misaligned",
    "priority": 2,
    "state": {"name": "Todo"},
    "labels": {"nodes": [{"name": "bug"}]},
    "assignee": {"id": "user-1", "name": "Sam"},
}


def linear_with(handler) -> LinearTracker:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return LinearTracker(api_key="lin_test", client=client)


class TestLinearTracker:
    """Tests for the Linear client."""

    def test_fetch_items(self):
        """Test fetching issues by identifier."""
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            body = json.loads(request.content)
            if body["variables"]["identifier"] == "ENG-101":
                return httpx.Response(200, json={"data": {"issue": ISSUE_NODE}})
            return httpx.Response(200, json={"data": {"issue": None}})

        items = linear_with(handler).fetch_items(["ENG-101", "ENG-404"])

        assert len(items) == 1
        item = items[0]
        assert item.id == "ENG-101"
        assert item.labels == ["bug"]
        assert item.assignee_name == "Sam"
        assert seen == ["lin_test", "lin_test"]

    def test_graphql_errors(self):
        """Test that GraphQL errors yield no items."""
        def handler(request):
            return httpx.Response(200, json={"errors": [{"message": "nope"}]})

        assert linear_with(handler).fetch_items(["ENG-101"]) == []

    def test_http_failure(self):
        """Test that an HTTP error yields an empty backlog."""
        def handler(request):
            return httpx.Response(500, text="down")

        assert linear_with(handler).fetch_backlog() == []

    def test_without_api_key(self):
        """Test that no requests are made without an API key."""
        def handler(request):
            raise AssertionError("no request expected")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        tracker = LinearTracker(api_key=None, client=client)

        assert tracker.fetch_items(["ENG-101"]) == []
        assert tracker.update_item_status("ENG-101", "In Review") is False

    def test_update_item_status(self):
        """Test moving an issue to a named workflow state."""
        mutations = []

        def handler(request):
            body = json.loads(request.content)
            if "issueUpdate" in body["query"]:
                mutations.append(body["variables"])
                return httpx.Response(200, json={"data": {"issueUpdate": {"success": True}}})
            return httpx.Response(200, json={"data": {"issue": {
                "id": "uuid-1",
                "identifier": "ENG-101",
                "team": {"id": "team-1", "states": {"nodes": [
                    {"id": "state-todo", "name": "Todo"},
                    {"id": "state-review", "name": "In Review"},
                ]}},
            }}})

        tracker = linear_with(handler)

        assert tracker.update_item_status("ENG-101", "In Review") is True
        assert mutations == [{"issueId": "uuid-1", "stateId": "state-review"}]
        assert tracker.update_item_status("ENG-101", "Shipped") is False

    def test_issue_without_team(self):
        """Test that an issue with a null team cannot be moved."""
        def handler(request):
            return httpx.Response(200, json={"data": {"issue": {
                "id": "uuid-1",
                "identifier": "ENG-101",
                "team": None,
            }}})

        assert linear_with(handler).update_item_status("ENG-101", "In Review") is False

    def test_non_object_body(self):
        """Test that a JSON body that is not an object is treated as a failure."""
        def handler(request):
            return httpx.Response(200, json=["unexpected"])

        tracker = linear_with(handler)

        assert tracker.fetch_items(["ENG-101"]) == []
        assert tracker.fetch_backlog() == []
        assert tracker.update_item_status("ENG-101", "In Review") is False


class TestJsonFileTracker:
    """Tests for the JSON file tracker."""

    @pytest.fixture
    def items_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "items.json"
            path.write_text(json.dumps({"items": [
                {"id": "ENG-1", "title": "Fix login button", "priority": 1},
                {"id": "ENG-2", "title": "Add api endpoint"},
            ]}))
            yield path

    def test_fetch_items(self, items_file):
        """Test fetching items by id."""
        items = JsonFileTracker(items_file).fetch_items(["ENG-2", "ENG-9"])

        assert [i.id for i in items] == ["ENG-2"]
        assert items[0].title == "Add api endpoint"

    def test_plain_list(self, items_file):
        """Test a file holding a plain list."""
        items_file.write_text(json.dumps([{"id": "ENG-3", "title": "Refactor"}]))

        assert JsonFileTracker(items_file).fetch_backlog()[0].id == "ENG-3"

    def test_update_written_back(self, items_file):
        """Test that status updates are written back."""
        tracker = JsonFileTracker(items_file)

        assert tracker.update_item_status("ENG-1", "In Review") is True
        assert tracker.fetch_items(["ENG-1"])[0].state == "In Review"
        assert tracker.update_item_status("ENG-9", "In Review") is False

    def test_missing_file(self, items_file):
        """Test a missing items file."""
        items_file.unlink()

        assert JsonFileTracker(items_file).fetch_items(["ENG-1"]) == []
        assert JsonFileTracker(items_file).update_item_status("ENG-1", "Done") is False
