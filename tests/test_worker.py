"""
Tests for the worker protocol.
"""

import tempfile
from pathlib import Path

import pytest

from swarmforge.knowledge_base import KnowledgeBase
from swarmforge.models import create_empty_pattern
from swarmforge.swarm_state import (
    SwarmStateStore,
    WorkerResult,
    WorkerState,
    WorkerStatus,
    create_swarm_state,
)
from swarmforge.worker import SwarmWorker, WorkerConfig, default_guidance


OLD_HEARTBEAT = "2020-01-01T00:00:00+00:00"


@pytest.fixture
def swarm():
    """An orchestrator dir with one worker entry and its worktree."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        swarm_dir = root / ".swarm"
        worktree = root / "worker-1"
        worktree.mkdir()

        kb = KnowledgeBase(swarm_dir / "kb")
        pattern = create_empty_pattern("ENG-1", "Fix login button")
        kb.add_pattern(pattern)

        state = create_swarm_state("main", ["ENG-1"])
        state.workers.append(WorkerState(
            id="worker-1-1700000000000",
            worker_id=1,
            issue_id="ENG-1",
            pattern_id=pattern.id,
            branch="swarm/eng-1",
            worktree_path=str(worktree),
        ))
        store = SwarmStateStore(swarm_dir / "state.json")
        store.save(state)

        WorkerConfig(
            worker_id=1,
            issue_id="ENG-1",
            pattern_id=pattern.id,
            branch="swarm/eng-1",
            swarm_id=state.id,
            orchestrator_dir=str(swarm_dir),
            heartbeat_interval_ms=60_000,
            guidance=default_guidance("ENG-1"),
        ).save(worktree)

        yield worktree, store, pattern


def current(store: SwarmStateStore) -> WorkerState:
    return store.load().get_worker(1)


class TestOutsideSwarm:
    """Tests for a worker outside any swarm."""

    def test_no_config_is_noop(self):
        """Test that every call is a no-op without worker.json."""
        with tempfile.TemporaryDirectory() as tmpdir:
            worker = SwarmWorker(Path(tmpdir))

            assert not worker.is_in_swarm()
            worker.start()
            worker.report_progress("step", 1, 2)
            worker.complete(WorkerResult(success=True))
            worker.fail("boom")
            assert worker.heartbeat() is False
            assert worker.get_assigned_pattern() is None
            assert not worker.heartbeat_running


class TestLifecycle:
    """Tests for status reporting through the lifecycle."""

    def test_config_loaded(self, swarm):
        """Test that worker.json is loaded."""
        worktree, _, _ = swarm
        worker = SwarmWorker(worktree)

        assert worker.is_in_swarm()
        assert worker.get_config().branch == "swarm/eng-1"
        assert "[ENG-1]" in worker.get_config().guidance.workflow[4]

    def test_start_executing(self, swarm):
        """Test the executing status and heartbeat thread."""
        worktree, store, _ = swarm
        worker = SwarmWorker(worktree)

        worker.start_executing(total_steps=3)
        try:
            entry = current(store)
            assert entry.status == WorkerStatus.EXECUTING.value
            assert entry.started_at is not None
            assert entry.progress.total_steps == 3
            assert worker.heartbeat_running
        finally:
            worker.stop_heartbeat()

        assert not worker.heartbeat_running

    def test_progress_keeps_start_time(self, swarm):
        """Test that progress keeps the first start time."""
        worktree, store, _ = swarm
        worker = SwarmWorker(worktree)
        worker.report_progress("Write code", 1, 3)
        started = current(store).started_at

        worker.report_progress("Write tests", 2, 3)

        entry = current(store)
        assert entry.started_at == started
        assert entry.progress.current_step == "Write tests"
        assert entry.progress.completed_steps == 2

    def test_complete(self, swarm):
        """Test completing with a result."""
        worktree, store, _ = swarm
        worker = SwarmWorker(worktree)
        worker.start_executing(total_steps=1)

        worker.complete(WorkerResult(success=True, summary="Fixed", files_changed=["src/Button.tsx"]))

        entry = current(store)
        assert entry.status == WorkerStatus.COMPLETED.value
        assert entry.completed_at is not None
        assert entry.result.summary == "Fixed"
        assert entry.result.tracker_status == "In Review"
        assert not worker.heartbeat_running

    def test_fail(self, swarm):
        """Test failing with an error."""
        worktree, store, _ = swarm
        worker = SwarmWorker(worktree)

        worker.fail("tests broke")

        entry = current(store)
        assert entry.status == WorkerStatus.FAILED.value
        assert entry.error == "tests broke"
        assert entry.is_terminal

    def test_missing_state(self, swarm):
        """Test a status update when state.json is gone."""
        worktree, store, _ = swarm
        store.clear()

        assert SwarmWorker(worktree).update_status(WorkerStatus.PLANNING, "Plan", 0, 0) is None


class TestHeartbeat:
    """Tests for heartbeats."""

    def set_heartbeat(self, store, status):
        def mutate(worker):
            worker.status = status
            worker.last_heartbeat = OLD_HEARTBEAT
        store.update_worker(1, mutate)

    def test_refreshes_while_executing(self, swarm):
        """Test that a heartbeat refreshes an executing worker."""
        worktree, store, _ = swarm
        self.set_heartbeat(store, WorkerStatus.EXECUTING.value)

        assert SwarmWorker(worktree).heartbeat() is True
        assert current(store).last_heartbeat != OLD_HEARTBEAT

    def test_ignored_when_not_executing(self, swarm):
        """Test that a heartbeat leaves a finished worker alone."""
        worktree, store, _ = swarm
        self.set_heartbeat(store, WorkerStatus.COMPLETED.value)

        assert SwarmWorker(worktree).heartbeat() is False
        assert current(store).last_heartbeat == OLD_HEARTBEAT


class TestKnowledgeAndLogging:
    """Tests for the assigned pattern and the worker log."""

    def test_assigned_pattern(self, swarm):
        """Test reading the assigned pattern."""
        worktree, _, pattern = swarm

        assigned = SwarmWorker(worktree).get_assigned_pattern()
        assert assigned.id == pattern.id
        assert assigned.input.title == "Fix login button"

    def test_log_lines(self, swarm):
        """Test log lines written by status changes."""
        worktree, _, _ = swarm
        worker = SwarmWorker(worktree)

        worker.start_planning()
        worker.fail("stopped")

        lines = worker.log_file.read_text().splitlines()
        assert lines[0].endswith("Planning")
        assert lines[1].endswith("Worker failed: stopped")
        assert worker.log_file.name == "worker-1.log"
