"""
Knowledge Records
=================

Dataclasses shared by the knowledge base, the compatibility engine and the
orchestrator. Every record converts to and from the plain dicts stored in the
JSON-lines logs.

Required keys are read with ``data[...]`` so a truncated record fails loudly;
optional keys fall back to their defaults for older logs.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class Complexity(Enum):
    """Coarse effort tier for a work item."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Confidence(Enum):
    """How much historical support backed a prediction."""
    COLD_START = "cold_start"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def utc_now() -> str:
    """Current UTC time as an ISO string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_pattern_id() -> str:
    return f"pattern-{uuid.uuid4().hex[:12]}"


# =============================================================================
# Work Items
# =============================================================================

@dataclass
class Item:
    """A unit of work fetched from the issue tracker."""
    id: str
    title: str
    description: str = ""
    priority: int = 0                       # 0 none, 1 urgent ... 4 low
    labels: list[str] = field(default_factory=list)
    state: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None

    @property
    def text(self) -> str:
        return f"{self.title} {self.description or ''}"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Item":
        return cls(
            id=data["id"],
            title=data.get("title") or data["id"],
            description=data.get("description") or "",
            priority=int(data.get("priority") or 0),
            labels=list(data.get("labels") or []),
            state=data.get("state"),
            assignee_id=data.get("assignee_id"),
            assignee_name=data.get("assignee_name"),
        )


# =============================================================================
# Issue Patterns
# =============================================================================

@dataclass
class ScopeSignals:
    is_new_feature: bool = False
    is_bug_fix: bool = False
    is_refactor: bool = False
    affected_layers: list[str] = field(default_factory=list)


@dataclass
class PatternInput:
    item_id: str
    title: str
    description: str = ""
    labels: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    file_hints: list[str] = field(default_factory=list)
    scope_signals: ScopeSignals = field(default_factory=ScopeSignals)


@dataclass
class PatternPredictions:
    files: list[str] = field(default_factory=list)
    time_minutes: int = 0
    complexity: str = Complexity.MEDIUM.value
    conflict_risk: float = 0.0
    confidence: str = Confidence.COLD_START.value


@dataclass
class PatternOutcomes:
    files_actual: list[str] = field(default_factory=list)
    time_actual_minutes: int = 0
    conflicts: list[str] = field(default_factory=list)
    success: bool = False
    rollback_reason: Optional[str] = None
    recorded_at: Optional[str] = None       # set once outcomes are captured


@dataclass
class PatternScores:
    file_precision: float = 0.0
    file_recall: float = 0.0
    time_accuracy: float = 0.0
    conflict_prediction_hit: bool = False


@dataclass
class IssuePattern:
    """
    One historical work item: what was predicted and what actually happened.

    Created at planning time with predictions only, then updated once at
    merge time with outcomes and scores.
    """
    id: str
    timestamp: str
    input: PatternInput
    predictions: PatternPredictions = field(default_factory=PatternPredictions)
    outcomes: PatternOutcomes = field(default_factory=PatternOutcomes)
    scores: PatternScores = field(default_factory=PatternScores)
    swarm_id: Optional[str] = None

    @property
    def has_outcome(self) -> bool:
        return self.outcomes.recorded_at is not None

    @property
    def is_cold_start(self) -> bool:
        return self.predictions.confidence == Confidence.COLD_START.value

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "IssuePattern":
        raw_input = dict(data["input"])
        signals = ScopeSignals(**raw_input.pop("scope_signals", {}) or {})
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            input=PatternInput(scope_signals=signals, **raw_input),
            predictions=PatternPredictions(**data.get("predictions", {})),
            outcomes=PatternOutcomes(**data.get("outcomes", {})),
            scores=PatternScores(**data.get("scores", {})),
            swarm_id=data.get("swarm_id"),
        )


def create_empty_pattern(item_id: str, title: str) -> IssuePattern:
    """Create a pattern with default predictions and no outcomes."""
    return IssuePattern(
        id=new_pattern_id(),
        timestamp=utc_now(),
        input=PatternInput(item_id=item_id, title=title),
    )


# =============================================================================
# Associations & Conflicts
# =============================================================================

@dataclass
class FileAssociationEntry:
    path: str
    frequency: int
    last_seen: str


@dataclass
class FileAssociation:
    """Files observed alongside a keyword."""
    keyword: str
    files: list[FileAssociationEntry] = field(default_factory=list)

    def find(self, path: str) -> Optional[FileAssociationEntry]:
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "FileAssociation":
        return cls(
            keyword=data["keyword"],
            files=[FileAssociationEntry(**f) for f in data.get("files", [])],
        )


def pair_key(file_a: str, file_b: str) -> str:
    """Order-independent key for a pair of files."""
    first, second = sorted((file_a, file_b))
    return f"{first}::{second}"


@dataclass
class ConflictPair:
    """Co-modification and merge-conflict counts for an unordered file pair."""
    file_a: str
    file_b: str
    conflict_count: int = 0
    co_modification_count: int = 0
    conflict_rate: float = 0.0

    def __post_init__(self):
        # Stored sorted so (A, B) and (B, A) serialize identically
        if self.file_b < self.file_a:
            self.file_a, self.file_b = self.file_b, self.file_a

    @property
    def key(self) -> str:
        return pair_key(self.file_a, self.file_b)

    def recompute_rate(self) -> None:
        if self.co_modification_count == 0:
            self.conflict_rate = 0.0
        else:
            self.conflict_rate = min(1.0, self.conflict_count / self.co_modification_count)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ConflictPair":
        return cls(
            file_a=data["file_a"],
            file_b=data["file_b"],
            conflict_count=int(data.get("conflict_count", 0)),
            co_modification_count=int(data.get("co_modification_count", 0)),
            conflict_rate=float(data.get("conflict_rate", 0.0)),
        )


# =============================================================================
# Derived Caches
# =============================================================================

@dataclass
class InvertedIndex:
    """keyword -> pattern ids, file -> pattern ids."""
    keywords: dict[str, list[str]] = field(default_factory=dict)
    files: dict[str, list[str]] = field(default_factory=dict)
    last_updated: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "InvertedIndex":
        return cls(
            keywords={k: list(v) for k, v in data.get("keywords", {}).items()},
            files={k: list(v) for k, v in data.get("files", {}).items()},
            last_updated=data.get("last_updated") or utc_now(),
        )


@dataclass
class AccuracyPair:
    file_precision: float = 0.0
    file_recall: float = 0.0


@dataclass
class AccuracySnapshot:
    date: str
    file_precision: float
    file_recall: float
    time_accuracy: float
    conflict_prediction_accuracy: float


@dataclass
class LearningMetrics:
    total_patterns: int = 0
    total_swarm_runs: int = 0
    accuracy: list[AccuracySnapshot] = field(default_factory=list)
    cold_start_accuracy: AccuracyPair = field(default_factory=AccuracyPair)
    learned_accuracy: AccuracyPair = field(default_factory=AccuracyPair)
    improvement_rate: float = 0.0
    last_updated: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LearningMetrics":
        return cls(
            total_patterns=data.get("total_patterns", 0),
            total_swarm_runs=data.get("total_swarm_runs", 0),
            accuracy=[AccuracySnapshot(**a) for a in data.get("accuracy", [])],
            cold_start_accuracy=AccuracyPair(**data.get("cold_start_accuracy", {})),
            learned_accuracy=AccuracyPair(**data.get("learned_accuracy", {})),
            improvement_rate=data.get("improvement_rate", 0.0),
            last_updated=data.get("last_updated"),
        )
