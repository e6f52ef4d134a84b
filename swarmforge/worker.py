"""
Swarm Worker Protocol
=====================

Client used inside a worker's worktree to report back to the orchestrator.

The orchestrator writes ``.swarm/worker.json`` into every worktree it
creates. A SwarmWorker loads it (absent file means "not in a swarm" and every
call becomes a no-op), then updates this worker's entry in the shared
state.json with read-modify-write. A background heartbeat thread refreshes
``last_heartbeat`` while the worker is executing.

Usage:
    worker = SwarmWorker()
    if worker.is_in_swarm():
        worker.start()
        worker.start_executing(total_steps=3)
        worker.report_progress("Writing tests", 1, 3)
        worker.complete(WorkerResult(success=True, summary="Done"))
"""

import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from swarmforge.config import ensure_swarm_dir
from swarmforge.jsonl import read_json, read_jsonl, write_json
from swarmforge.models import IssuePattern, utc_now
from swarmforge.swarm_state import (
    SwarmStateStore,
    WorkerResult,
    WorkerState,
    WorkerStatus,
)


logger = logging.getLogger(__name__)

WORKER_CONFIG_PATH = Path(".swarm") / "worker.json"
DEFAULT_HEARTBEAT_INTERVAL_MS = 30_000


@dataclass
class WorkerGuidance:
    workflow: list[str] = field(default_factory=list)
    tips: list[str] = field(default_factory=list)


@dataclass
class WorkerConfig:
    """Static configuration written into each worktree during preparation."""
    worker_id: int
    issue_id: str
    pattern_id: str
    branch: str
    swarm_id: str
    orchestrator_dir: str
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    guidance: WorkerGuidance = field(default_factory=WorkerGuidance)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkerConfig":
        data = dict(data)
        guidance = WorkerGuidance(**(data.pop("guidance", None) or {}))
        return cls(guidance=guidance, **data)

    def save(self, worktree_dir: Path) -> Path:
        path = Path(worktree_dir) / WORKER_CONFIG_PATH
        ensure_swarm_dir(path.parent)
        write_json(path, self.to_dict())
        return path


def default_guidance(item_id: str) -> WorkerGuidance:
    return WorkerGuidance(
        workflow=[
            "1. Read this config and understand the item",
            "2. Plan the implementation (swarm worker plan)",
            "3. Implement the change, reporting progress (swarm worker progress)",
            "4. Run the project's test suite",
            f"5. Commit changes with the item reference [{item_id}]",
            "6. Mark the worker as complete (swarm worker complete --summary ...)",
        ],
        tips=[
            "Stay within the files predicted for this item where possible",
            "Keep commits on this worktree's branch only",
        ],
    )


class SwarmWorker:
    """Reports status, progress and heartbeats for one worker."""

    def __init__(self, worktree_dir: Optional[Path] = None):
        """
        Args:
            worktree_dir: Worktree root holding ``.swarm/worker.json``;
                defaults to the current directory
        """
        self.worktree_dir = Path(worktree_dir) if worktree_dir else Path.cwd()
        data = read_json(self.worktree_dir / WORKER_CONFIG_PATH)
        self.config: Optional[WorkerConfig] = WorkerConfig.from_dict(data) if data else None

        self._heartbeat_thread: Optional[threading.Thread] = None
        self._stop_heartbeat = threading.Event()

    def is_in_swarm(self) -> bool:
        return self.config is not None

    def get_config(self) -> Optional[WorkerConfig]:
        return self.config

    @property
    def orchestrator_dir(self) -> Optional[Path]:
        return Path(self.config.orchestrator_dir) if self.config else None

    @property
    def store(self) -> Optional[SwarmStateStore]:
        if not self.config:
            return None
        return SwarmStateStore(self.orchestrator_dir / "state.json")

    @property
    def log_file(self) -> Optional[Path]:
        if not self.config:
            return None
        return self.orchestrator_dir / "logs" / f"worker-{self.config.worker_id}.log"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Announce the worker and start the heartbeat."""
        if not self.config:
            logger.info("Not running in a swarm context")
            return

        self.log(
            f"Worker {self.config.worker_id} started on {self.config.issue_id} "
            f"(branch {self.config.branch}, swarm {self.config.swarm_id})"
        )
        self.update_status(WorkerStatus.INITIALIZING, "Starting worker", 0, 0)
        self.start_heartbeat()

    def update_status(
        self,
        status: WorkerStatus,
        current_step: str,
        completed_steps: int,
        total_steps: int,
        error: Optional[str] = None,
        result: Optional[WorkerResult] = None,
    ) -> Optional[WorkerState]:
        """
        Overwrite this worker's entry in state.json.

        Returns:
            The updated entry, or None if state or entry could not be found
        """
        if not self.config:
            return None

        def mutate(worker: WorkerState) -> None:
            now = utc_now()
            worker.status = status.value
            worker.last_heartbeat = now
            worker.progress.current_step = current_step
            worker.progress.completed_steps = completed_steps
            worker.progress.total_steps = total_steps
            if status == WorkerStatus.EXECUTING and not worker.started_at:
                worker.started_at = now
            if status in (WorkerStatus.COMPLETED, WorkerStatus.FAILED):
                worker.completed_at = now
            if error:
                worker.error = error
            if result is not None:
                worker.result = result

        if not self.store.exists():
            logger.error("Orchestrator state not found at %s", self.store.state_file)
            return None

        updated = self.store.update_worker(self.config.worker_id, mutate)
        if updated is None:
            logger.error("Worker %s not found in state", self.config.worker_id)
        return updated

    def report_progress(self, step: str, completed: int, total: int) -> None:
        self.update_status(WorkerStatus.EXECUTING, step, completed, total)
        self.log(f"Progress {completed}/{total}: {step}")

    def start_planning(self) -> None:
        self.update_status(WorkerStatus.PLANNING, "Creating implementation plan", 0, 0)
        self.log("Planning")

    def start_executing(self, total_steps: int) -> None:
        self.update_status(WorkerStatus.EXECUTING, "Starting execution", 0, total_steps)
        self.log(f"Executing ({total_steps} steps)")
        self.start_heartbeat()

    def complete(self, result: Optional[WorkerResult] = None) -> None:
        """Mark the worker completed; the result's tracker status defaults to In Review."""
        if not self.config:
            return
        self.update_status(WorkerStatus.COMPLETED, "Done", 1, 1, result=result)
        self.stop_heartbeat()
        self.log(f"Worker completed{': ' + result.summary if result and result.summary else ''}")

    def fail(self, error: str) -> None:
        if not self.config:
            return
        self.update_status(WorkerStatus.FAILED, "Failed", 0, 0, error=error)
        self.stop_heartbeat()
        self.log(f"Worker failed: {error}")

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    def heartbeat(self) -> bool:
        """
        Refresh ``last_heartbeat`` if this worker is executing.

        Returns:
            True if state.json was updated
        """
        if not self.config or not self.store.exists():
            return False
        state = self.store.load()
        worker = state.get_worker(self.config.worker_id) if state else None
        if worker is None or worker.status != WorkerStatus.EXECUTING.value:
            return False
        worker.last_heartbeat = utc_now()
        self.store.save(state)
        return True

    def _heartbeat_loop(self, interval: float) -> None:
        while not self._stop_heartbeat.wait(interval):
            try:
                self.heartbeat()
            except (OSError, ValueError) as e:
                logger.warning("Heartbeat failed: %s", e)

    def start_heartbeat(self) -> None:
        if not self.config or (self._heartbeat_thread and self._heartbeat_thread.is_alive()):
            return
        self._stop_heartbeat.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(self.config.heartbeat_interval_ms / 1000,),
            name=f"swarm-heartbeat-{self.config.worker_id}",
            daemon=True,
        )
        self._heartbeat_thread.start()

    def stop_heartbeat(self) -> None:
        self._stop_heartbeat.set()
        if self._heartbeat_thread and self._heartbeat_thread is not threading.current_thread():
            self._heartbeat_thread.join(timeout=2.0)
        self._heartbeat_thread = None

    @property
    def heartbeat_running(self) -> bool:
        return bool(self._heartbeat_thread and self._heartbeat_thread.is_alive())

    # -------------------------------------------------------------------------
    # Knowledge & logging
    # -------------------------------------------------------------------------

    def get_assigned_pattern(self) -> Optional[IssuePattern]:
        """This worker's pattern from the shared pattern log."""
        if not self.config:
            return None
        for record in read_jsonl(self.orchestrator_dir / "kb" / "patterns.jsonl"):
            if record.get("id") == self.config.pattern_id:
                return IssuePattern.from_dict(record)
        return None

    def log(self, message: str) -> None:
        """Append a timestamped line to this worker's log file."""
        if not self.config:
            return
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(f"[{datetime.now().astimezone().isoformat()}] {message}\n")
