"""
Batch Compatibility Engine
==========================

Turns a candidate set of work items into ranked batches that can run in
parallel with little risk of merge collisions.

Per pair of items five sub-scores, each in [0, 1], are combined:

    file        0.40   1 - |shared predicted files| / |union|
    layer       0.25   1 - |shared layers| / max(|layers|)
    complexity  0.15   1 - |low=1/medium=5/high=10 difference| / 10
    priority    0.10   1 - |priority difference| / 4
    history     0.10   1 - mean recorded conflict risk across file pairs

Every sub-score is symmetric, so the pairwise score is too.

Usage:
    engine = CompatibilityEngine(kb, current_user_id="user-1")
    batches = engine.suggest_batches(items, SuggestOptions(max_batch_size=3))
"""

from dataclasses import dataclass, field
from typing import Optional

from swarmforge.heuristics import COMPLEXITY_WEIGHTS, DEFAULT_LAYER, priority_label
from swarmforge.knowledge_base import KnowledgeBase
from swarmforge.models import Confidence, Item
from swarmforge.output import (
    console,
    create_table,
    icon,
    print_panel,
    print_warning,
    risk_text,
)


WEIGHTS = {
    "file": 0.40,
    "layer": 0.25,
    "complexity": 0.15,
    "priority": 0.10,
    "history": 0.10,
}

MAX_PREDICTED_FILES = 10
HIGH_RISK_WARNING = 0.3

ASSIGNEE_MINE = 1.0
ASSIGNEE_UNASSIGNED = 0.9
ASSIGNEE_OTHER = 0.3


@dataclass
class IssuePrediction:
    """Predicted footprint of a single item."""
    item: Item
    predicted_files: list[str]
    predicted_layers: list[str]
    complexity: str
    estimated_minutes: int
    confidence: float


@dataclass
class ScoreBreakdown:
    file_score: float
    layer_score: float
    complexity_score: float
    priority_score: float
    history_score: float


@dataclass
class CompatibilityScore:
    total: float
    breakdown: ScoreBreakdown
    risk: str
    shared_files: list[str] = field(default_factory=list)
    shared_layers: list[str] = field(default_factory=list)


@dataclass
class SwarmBatch:
    """A group of items proposed to run in parallel."""
    id: str
    predictions: list[IssuePrediction]
    score: float
    estimated_time_minutes: int
    parallel_time_minutes: int
    risk_level: str
    reasoning: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def items(self) -> list[Item]:
        return [p.item for p in self.predictions]

    @property
    def item_ids(self) -> list[str]:
        return [p.item.id for p in self.predictions]


@dataclass
class SuggestOptions:
    max_batch_size: int = 5
    num_batches: int = 3
    min_compatibility: float = 0.6


@dataclass
class ItemPredictionReport:
    """Single-item prediction as shown by ``swarm predict``."""
    confidence: str
    complexity: str
    time_minutes: int
    conflict_risk: float
    predicted_files: list[str]
    warnings: list[str] = field(default_factory=list)


CompatibilityMatrix = dict[str, dict[str, CompatibilityScore]]


# =============================================================================
# Assignee Affinity
# =============================================================================

def get_assignee_score(item: Item, current_user_id: Optional[str] = None) -> float:
    """Items assigned to me come first, unassigned next, others last."""
    if not item.assignee_id:
        return ASSIGNEE_UNASSIGNED
    if current_user_id and item.assignee_id == current_user_id:
        return ASSIGNEE_MINE
    return ASSIGNEE_OTHER


def get_assignee_label(item: Item, current_user_id: Optional[str] = None) -> str:
    if not item.assignee_id:
        return "Unassigned"
    if current_user_id and item.assignee_id == current_user_id:
        return "Mine"
    return item.assignee_name or "Other"


def _risk_bucket(total: float) -> str:
    if total >= 0.7:
        return "low"
    if total >= 0.5:
        return "medium"
    return "high"


def _mean_pairwise_risk(kb: KnowledgeBase, files: list[str]) -> float:
    risks = [
        kb.get_conflict_risk(files[i], files[j])
        for i in range(len(files))
        for j in range(i + 1, len(files))
    ]
    return sum(risks) / len(risks) if risks else 0.0


class CompatibilityEngine:
    """Predicts item footprints and assembles compatible batches."""

    def __init__(self, kb: KnowledgeBase, current_user_id: Optional[str] = None):
        self.kb = kb
        self.heuristics = kb.heuristics
        self.current_user_id = current_user_id

    # -------------------------------------------------------------------------
    # Per-item predictions
    # -------------------------------------------------------------------------

    def predict_files(self, item: Item) -> list[str]:
        """Learned associations first, cold-start globs when nothing is learned."""
        keywords = self.kb.extract_keywords(item.text)
        learned = self.kb.predict_files_from_keywords(keywords)
        if learned:
            return learned[:MAX_PREDICTED_FILES]

        globs: dict[str, None] = {}
        for keyword in keywords:
            for glob in self.heuristics.globs_for(keyword):
                globs[glob] = None
        return list(globs)[:MAX_PREDICTED_FILES]

    def detect_layers(self, item: Item) -> list[str]:
        text = item.text.lower()
        layers = [
            layer for layer, keywords in self.heuristics.layer_keywords.items()
            if any(kw in text for kw in keywords)
        ]
        return layers or [DEFAULT_LAYER]

    def estimate_complexity(self, item: Item) -> tuple[str, int]:
        """Urgent items count as high; otherwise the first matching signal tier wins."""
        if item.priority == 1:
            return "high", self.heuristics.minutes_for("high")

        text = item.text.lower()
        for level, signals in self.heuristics.complexity_signals.items():
            if any(signal in text for signal in signals):
                return level, self.heuristics.minutes_for(level)
        return "medium", self.heuristics.minutes_for("medium")

    def generate_predictions(self, items: list[Item]) -> list[IssuePrediction]:
        predictions = []
        for item in items:
            complexity, minutes = self.estimate_complexity(item)
            similar = self.kb.find_similar_patterns(item.title, item.description)
            if len(similar) >= 5:
                confidence = 0.8
            elif len(similar) >= 2:
                confidence = 0.5
            else:
                confidence = 0.3
            predictions.append(IssuePrediction(
                item=item,
                predicted_files=self.predict_files(item),
                predicted_layers=self.detect_layers(item),
                complexity=complexity,
                estimated_minutes=minutes,
                confidence=confidence,
            ))
        return predictions

    def predict_item(self, item: Item) -> ItemPredictionReport:
        similar = self.kb.find_similar_patterns(item.title, item.description)
        if len(similar) >= 5:
            confidence = Confidence.HIGH.value
        elif len(similar) >= 2:
            confidence = Confidence.MEDIUM.value
        elif similar:
            confidence = Confidence.LOW.value
        else:
            confidence = Confidence.COLD_START.value

        files = self.predict_files(item)
        complexity, minutes = self.estimate_complexity(item)
        risk = _mean_pairwise_risk(self.kb, files)

        warnings = []
        if confidence == Confidence.COLD_START.value:
            warnings.append("No historical patterns found - predictions may be inaccurate")
        if risk > HIGH_RISK_WARNING:
            warnings.append(f"High conflict risk detected ({risk * 100:.0f}%)")
        if complexity == "high":
            warnings.append("High complexity issue - consider breaking into smaller tasks")

        return ItemPredictionReport(
            confidence=confidence,
            complexity=complexity,
            time_minutes=minutes,
            conflict_risk=risk,
            predicted_files=files,
            warnings=warnings,
        )

    # -------------------------------------------------------------------------
    # Pairwise scoring
    # -------------------------------------------------------------------------

    def calculate_compatibility(
        self,
        item_a: Item,
        item_b: Item,
        pred_a: IssuePrediction,
        pred_b: IssuePrediction,
    ) -> CompatibilityScore:
        files_a, files_b = set(pred_a.predicted_files), set(pred_b.predicted_files)
        shared_files = sorted(files_a & files_b)
        union = files_a | files_b
        file_score = 1 - (len(shared_files) / len(union)) if union else 1.0

        layers_a, layers_b = set(pred_a.predicted_layers), set(pred_b.predicted_layers)
        shared_layers = sorted(layers_a & layers_b)
        layer_score = 1 - len(shared_layers) / max(len(layers_a), len(layers_b), 1)

        complexity_diff = abs(COMPLEXITY_WEIGHTS[pred_a.complexity] - COMPLEXITY_WEIGHTS[pred_b.complexity])
        complexity_score = 1 - complexity_diff / 10

        priority_score = 1 - abs(item_a.priority - item_b.priority) / 4

        # Cross pairs are sorted so both argument orders sum identical floats
        recorded = sorted(
            risk for risk in (
                self.kb.get_conflict_risk(a, b) for a in files_a for b in files_b
            ) if risk > 0
        )
        history_score = 1 - sum(recorded) / len(recorded) if recorded else 1.0

        total = (
            file_score * WEIGHTS["file"]
            + layer_score * WEIGHTS["layer"]
            + complexity_score * WEIGHTS["complexity"]
            + priority_score * WEIGHTS["priority"]
            + history_score * WEIGHTS["history"]
        )

        return CompatibilityScore(
            total=total,
            breakdown=ScoreBreakdown(
                file_score=file_score,
                layer_score=layer_score,
                complexity_score=complexity_score,
                priority_score=priority_score,
                history_score=history_score,
            ),
            risk=_risk_bucket(total),
            shared_files=shared_files,
            shared_layers=shared_layers,
        )

    def build_compatibility_matrix(self, predictions: list[IssuePrediction]) -> CompatibilityMatrix:
        matrix: CompatibilityMatrix = {}
        for pred_a in predictions:
            row = matrix.setdefault(pred_a.item.id, {})
            for pred_b in predictions:
                if pred_a.item.id != pred_b.item.id:
                    row[pred_b.item.id] = self.calculate_compatibility(
                        pred_a.item, pred_b.item, pred_a, pred_b
                    )
        return matrix

    # -------------------------------------------------------------------------
    # Batch assembly
    # -------------------------------------------------------------------------

    def greedy_batch_selection(
        self,
        predictions: list[IssuePrediction],
        matrix: CompatibilityMatrix,
        max_size: int,
        min_compatibility: float,
        exclude_ids: Optional[set[str]] = None,
    ) -> list[IssuePrediction]:
        """
        Seed with the most preferred item, then grow by best average compatibility.

        A candidate joins only if its mean score against every current member
        is at least ``min_compatibility``.
        """
        exclude_ids = exclude_ids or set()
        available = [p for p in predictions if p.item.id not in exclude_ids]
        if not available or max_size < 1:
            return []

        remaining = sorted(
            available,
            key=lambda p: (-get_assignee_score(p.item, self.current_user_id), p.item.priority),
        )
        batch = [remaining.pop(0)]

        while len(batch) < max_size and remaining:
            best, best_avg = None, -1.0
            for candidate in remaining:
                scores = [
                    matrix[member.item.id][candidate.item.id].total
                    for member in batch
                    if candidate.item.id in matrix.get(member.item.id, {})
                ]
                avg = sum(scores) / len(scores) if scores else 0.0
                if avg > best_avg and avg >= min_compatibility:
                    best, best_avg = candidate, avg

            if best is None:
                break
            batch.append(best)
            remaining.remove(best)

        return batch

    @staticmethod
    def calculate_batch_score(batch: list[IssuePrediction], matrix: CompatibilityMatrix) -> float:
        if len(batch) <= 1:
            return 1.0
        scores = [
            matrix[batch[i].item.id][batch[j].item.id].total
            for i in range(len(batch))
            for j in range(i + 1, len(batch))
            if batch[j].item.id in matrix.get(batch[i].item.id, {})
        ]
        return sum(scores) / len(scores) if scores else 0.0

    @staticmethod
    def generate_reasoning(batch: list[IssuePrediction]) -> tuple[list[str], list[str]]:
        """Human readable notes on why a batch works and what could go wrong."""
        reasoning, warnings = [], []

        seen: set[str] = set()
        shared: dict[str, None] = {}
        for pred in batch:
            for file in pred.predicted_files:
                if file in seen:
                    shared[file] = None
                seen.add(file)

        if not shared:
            reasoning.append("Zero predicted file overlap")
        elif len(shared) <= 2:
            warnings.append(f"Low overlap: {len(shared)} shared file(s): {', '.join(list(shared)[:2])}")
        else:
            warnings.append(f"High overlap risk: {len(shared)} shared files")

        layers: dict[str, None] = {}
        for pred in batch:
            layers.update(dict.fromkeys(pred.predicted_layers))
        if len(layers) >= len(batch):
            reasoning.append(f"Different layers: {', '.join(layers)}")

        complexities = {p.complexity for p in batch}
        if len(complexities) == 1:
            reasoning.append(f"Similar complexity (all {batch[0].complexity})")

        priorities = [p.item.priority for p in batch]
        spread = max(priorities) - min(priorities)
        if spread <= 1:
            reasoning.append(f"Aligned priorities (P{min(priorities)}-P{max(priorities)})")
        elif spread >= 3:
            warnings.append(f"Wide priority spread (P{min(priorities)} to P{max(priorities)})")

        return reasoning, warnings

    def create_batch(
        self,
        predictions: list[IssuePrediction],
        matrix: CompatibilityMatrix,
        batch_id: str,
    ) -> SwarmBatch:
        score = self.calculate_batch_score(predictions, matrix)
        reasoning, warnings = self.generate_reasoning(predictions)

        if score >= 0.7 and not warnings:
            risk_level = "low"
        elif score >= 0.5 or len(warnings) <= 1:
            risk_level = "medium"
        else:
            risk_level = "high"

        return SwarmBatch(
            id=batch_id,
            predictions=predictions,
            score=score,
            estimated_time_minutes=sum(p.estimated_minutes for p in predictions),
            parallel_time_minutes=max(p.estimated_minutes for p in predictions),
            risk_level=risk_level,
            reasoning=reasoning,
            warnings=warnings,
        )

    def suggest_batches(
        self,
        items: list[Item],
        options: Optional[SuggestOptions] = None,
    ) -> list[SwarmBatch]:
        """
        Propose up to ``num_batches`` batches, best mean pairwise score first.

        The first batch may draw from every item; later ones skip items
        already placed. Batches with fewer than two members are dropped,
        except that a single input item yields a single one-item batch.
        """
        options = options or SuggestOptions()
        if not items:
            return []

        predictions = self.generate_predictions(items)
        if len(items) == 1:
            return [self.create_batch(predictions, {}, "batch-1")]

        matrix = self.build_compatibility_matrix(predictions)
        batches: list[SwarmBatch] = []
        used: set[str] = set()

        for i in range(options.num_batches):
            selected = self.greedy_batch_selection(
                predictions,
                matrix,
                options.max_batch_size,
                options.min_compatibility,
                set() if i == 0 else used,
            )
            if len(selected) >= 2:
                batches.append(self.create_batch(selected, matrix, f"batch-{i + 1}"))
                used.update(p.item.id for p in selected)

        return sorted(batches, key=lambda b: -b.score)


# =============================================================================
# Rendering
# =============================================================================

def print_batches(batches: list[SwarmBatch], current_user_id: Optional[str] = None) -> None:
    """Render suggested batches as panels followed by ready-to-run commands."""
    if not batches:
        print_warning("No compatible batches found. Items may have too much overlap.")
        return

    for i, batch in enumerate(batches):
        title = f"Batch {i + 1}" + (" (Recommended)" if i == 0 else "")
        table = create_table(columns=["Item", "Title", "Assignee", "Priority", "Complexity"])
        for pred in batch.predictions:
            item = pred.item
            table.add_row(
                item.id,
                item.title if len(item.title) <= 40 else item.title[:37] + "...",
                get_assignee_label(item, current_user_id),
                f"P{item.priority} {priority_label(item.priority)}",
                pred.complexity,
            )

        notes = [f"[sw.ok]{icon('check')}[/] {reason}" for reason in batch.reasoning]
        notes += [f"[sw.warn]{icon('warning')}[/] {warning}" for warning in batch.warnings]
        summary = (
            f"Score: [sw.number]{batch.score * 100:.0f}%[/]   "
            f"Risk: {risk_text(batch.risk_level)}   "
            f"Est: {batch.estimated_time_minutes}min total {icon('arrow_right')} "
            f"{batch.parallel_time_minutes}min parallel"
        )
        print_panel("\n".join([summary, *notes]), title=title)
        console.print(table)

    console.print()
    console.print("[sw.accent]Commands:[/]")
    for i, batch in enumerate(batches, 1):
        console.print(f"  [{i}] swarm start {' '.join(batch.item_ids)}")
