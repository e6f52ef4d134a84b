"""
Swarm State Persistence
=======================

The shared ``state.json`` document for one orchestration run.

The orchestrator and every worker process read and rewrite this file. There
is no locking: two workers updating at the same moment race and the later
write wins. Monitoring tolerates this because every worker write also
refreshes its heartbeat.

Lifecycle:
    initializing -> analyzing -> planning -> preparing -> executing
        -> merging -> completed | failed
"""

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from swarmforge.jsonl import RecordParseError, read_json, write_json
from swarmforge.models import utc_now


class SwarmPhase(Enum):
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    PREPARING = "preparing"
    EXECUTING = "executing"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStatus(Enum):
    PENDING = "pending"
    INITIALIZING = "initializing"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


# Statuses merge() accepts as finished
TERMINAL_STATUSES = (WorkerStatus.COMPLETED.value, WorkerStatus.FAILED.value)

DEFAULT_REVIEW_STATUS = "In Review"


@dataclass
class WorkerProgress:
    current_step: str = "Waiting to start"
    completed_steps: int = 0
    total_steps: int = 0


@dataclass
class WorkerResult:
    success: bool
    summary: str = ""
    files_changed: list[str] = field(default_factory=list)
    tracker_status: str = DEFAULT_REVIEW_STATUS


@dataclass
class WorkerState:
    """One worker (one item) within a run."""
    id: str
    worker_id: int
    issue_id: str
    pattern_id: str
    branch: str
    worktree_path: str
    status: str = WorkerStatus.PENDING.value
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_heartbeat: Optional[str] = None
    merged_at: Optional[str] = None         # set once merged into the base branch
    progress: WorkerProgress = field(default_factory=WorkerProgress)
    result: Optional[WorkerResult] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: dict) -> "WorkerState":
        data = dict(data)
        progress = WorkerProgress(**(data.pop("progress", None) or {}))
        raw_result = data.pop("result", None)
        result = WorkerResult(**raw_result) if raw_result else None
        return cls(progress=progress, result=result, **data)


@dataclass
class OverlapCell:
    shared_files: list[str] = field(default_factory=list)
    risk_level: str = "none"


@dataclass
class IssueFilePrediction:
    id: str
    predicted_files: list[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class OverlapAnalysis:
    """Pairwise shared-file matrix for the items in a run."""
    issues: list[IssueFilePrediction] = field(default_factory=list)
    overlap_matrix: dict[str, dict[str, OverlapCell]] = field(default_factory=dict)
    recommendation: str = "proceed"
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "OverlapAnalysis":
        return cls(
            issues=[IssueFilePrediction(**i) for i in data.get("issues", [])],
            overlap_matrix={
                a: {b: OverlapCell(**cell) for b, cell in row.items()}
                for a, row in data.get("overlap_matrix", {}).items()
            },
            recommendation=data.get("recommendation", "proceed"),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class SwarmState:
    """One orchestration run, retained after completion for audit."""
    id: str
    phase: str
    started_at: str
    updated_at: str
    base_branch: str
    issues: list[str] = field(default_factory=list)
    workers: list[WorkerState] = field(default_factory=list)
    overlap_analysis: Optional[OverlapAnalysis] = None
    merge_order: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def get_worker(self, worker_id: int) -> Optional[WorkerState]:
        for worker in self.workers:
            if worker.worker_id == worker_id:
                return worker
        return None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SwarmState":
        overlap = data.get("overlap_analysis")
        return cls(
            id=data["id"],
            phase=data["phase"],
            started_at=data["started_at"],
            updated_at=data.get("updated_at") or data["started_at"],
            base_branch=data["base_branch"],
            issues=list(data.get("issues", [])),
            workers=[WorkerState.from_dict(w) for w in data.get("workers", [])],
            overlap_analysis=OverlapAnalysis.from_dict(overlap) if overlap else None,
            merge_order=list(data.get("merge_order", [])),
            error=data.get("error"),
        )


def new_swarm_id() -> str:
    return f"swarm-{uuid.uuid4().hex[:8]}"


def create_swarm_state(base_branch: str, issues: list[str]) -> SwarmState:
    now = utc_now()
    return SwarmState(
        id=new_swarm_id(),
        phase=SwarmPhase.INITIALIZING.value,
        started_at=now,
        updated_at=now,
        base_branch=base_branch,
        issues=list(issues),
    )


class SwarmStateStore:
    """
    Reads and writes state.json.

    Every save stamps ``updated_at`` and overwrites the whole document.
    """

    def __init__(self, state_file: Path):
        self.state_file = Path(state_file)

    def exists(self) -> bool:
        return self.state_file.exists()

    def load(self) -> Optional[SwarmState]:
        """
        Returns:
            The current state, or None if no run has been started

        Raises:
            RecordParseError: If state.json is corrupt
        """
        data = read_json(self.state_file)
        if data is None:
            return None
        try:
            return SwarmState.from_dict(data)
        except (KeyError, TypeError) as e:
            raise RecordParseError(self.state_file, f"invalid swarm state ({e})") from e

    def save(self, state: SwarmState) -> None:
        state.updated_at = utc_now()
        write_json(self.state_file, state.to_dict())

    def clear(self) -> None:
        if self.state_file.exists():
            self.state_file.unlink()

    def update_worker(
        self,
        worker_id: int,
        mutate: Callable[[WorkerState], None],
    ) -> Optional[WorkerState]:
        """
        Read-modify-write a single worker entry.

        Returns:
            The updated worker, or None if there is no state or no such worker
        """
        state = self.load()
        if state is None:
            return None
        worker = state.get_worker(worker_id)
        if worker is None:
            return None
        mutate(worker)
        self.save(state)
        return worker
