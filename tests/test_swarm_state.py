"""
Tests for state.json persistence.
"""

import tempfile
from pathlib import Path

import pytest

from swarmforge.jsonl import RecordParseError
from swarmforge.swarm_state import (
    IssueFilePrediction,
    OverlapAnalysis,
    OverlapCell,
    SwarmPhase,
    SwarmStateStore,
    WorkerResult,
    WorkerState,
    WorkerStatus,
    create_swarm_state,
)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield SwarmStateStore(Path(tmpdir) / "state.json")


def make_worker(n: int, issue_id: str) -> WorkerState:
    return WorkerState(
        id=f"worker-{n}-1700000000000",
        worker_id=n,
        issue_id=issue_id,
        pattern_id=f"pattern-{n}",
        branch=f"swarm/{issue_id.lower()}",
        worktree_path=f"/tmp/worker-{n}",
    )


class TestSwarmState:
    """Tests for the swarm state document."""

    def test_create(self):
        """Test a freshly created state."""
        state = create_swarm_state("main", ["ENG-1", "ENG-2"])

        assert state.id.startswith("swarm-")
        assert state.phase == SwarmPhase.INITIALIZING.value
        assert state.started_at == state.updated_at
        assert state.workers == []

    def test_round_trip(self, store):
        """Test saving and loading nested records."""
        state = create_swarm_state("main", ["ENG-1"])
        worker = make_worker(1, "ENG-1")
        worker.result = WorkerResult(success=True, summary="done", files_changed=["a.ts"])
        state.workers.append(worker)
        state.overlap_analysis = OverlapAnalysis(
            issues=[IssueFilePrediction(id="ENG-1", predicted_files=["a.ts"], confidence=0.3)],
            overlap_matrix={"ENG-1": {"ENG-2": OverlapCell(["a.ts"], "low")}},
        )
        store.save(state)

        loaded = store.load()

        assert loaded.workers[0].result.files_changed == ["a.ts"]
        assert loaded.workers[0].progress.current_step == "Waiting to start"
        assert loaded.overlap_analysis.overlap_matrix["ENG-1"]["ENG-2"].risk_level == "low"
        assert loaded.get_worker(1).issue_id == "ENG-1"
        assert loaded.get_worker(9) is None

    def test_load_without_state(self, store):
        """Test loading when no state exists."""
        assert store.load() is None

    def test_corrupt_state(self, store):
        """Test that a state missing fields raises."""
        store.state_file.write_text('{"phase": "executing"}')

        with pytest.raises(RecordParseError):
            store.load()

    def test_invalid_json(self, store):
        """Test that invalid JSON raises."""
        store.state_file.write_text("{")

        with pytest.raises(RecordParseError):
            store.load()


class TestUpdateWorker:
    """Tests for read-modify-write of one worker."""

    def test_mutates_one_worker(self, store):
        """Test that only the targeted worker changes."""
        state = create_swarm_state("main", ["ENG-1", "ENG-2"])
        state.workers = [make_worker(1, "ENG-1"), make_worker(2, "ENG-2")]
        store.save(state)

        def mark_done(worker):
            worker.status = WorkerStatus.COMPLETED.value

        updated = store.update_worker(2, mark_done)

        assert updated.is_terminal
        loaded = store.load()
        assert loaded.get_worker(1).status == WorkerStatus.PENDING.value
        assert loaded.get_worker(2).status == WorkerStatus.COMPLETED.value

    def test_unknown_worker(self, store):
        """Test updating a worker id that is not present."""
        store.save(create_swarm_state("main", []))
        assert store.update_worker(3, lambda w: None) is None

    def test_no_state(self, store):
        """Test updating without any state."""
        assert store.update_worker(1, lambda w: None) is None
