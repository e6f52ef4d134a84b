"""
Swarm Orchestrator
==================

Drives one swarm run end to end:

    initializing -> analyzing -> planning -> preparing -> executing
        -> (merging) -> completed | failed

- Analysis: per-item file predictions (learned or cold start) and the
  pairwise overlap matrix
- Planning: one IssuePattern per item, stored in the knowledge base
- Preparation: one git worktree and branch per item, worker.json inside
- Execution: done by external agents through the worker protocol
- Merge: branches merged one at a time in order; the first conflict is
  written to pending-conflicts.json and halts the phase until the operator
  resolves it and runs merge again

Git failures while creating or removing worktrees are warnings. During
merge a failing ``git merge`` is the conflict signal.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from swarmforge.config import SwarmConfig, SwarmPaths, ensure_swarm_dir, load_config
from swarmforge.conflicts import ConflictStore, PendingConflicts, analyze_conflict_file
from swarmforge.git_ops import (
    GitError,
    GitRepo,
    InvalidIdentifierError,
    validate_branch_name,
    validate_item_id,
)
from swarmforge.knowledge_base import KnowledgeBase
from swarmforge.models import (
    Confidence,
    IssuePattern,
    Item,
    PatternInput,
    PatternOutcomes,
    PatternPredictions,
    PatternScores,
    ScopeSignals,
    new_pattern_id,
    parse_timestamp,
    utc_now,
)
from swarmforge.output import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_list,
    print_muted,
    print_panel,
    print_success,
    print_warning,
    progress_bar,
    status_text,
)
from swarmforge.swarm_state import (
    DEFAULT_REVIEW_STATUS,
    IssueFilePrediction,
    OverlapAnalysis,
    OverlapCell,
    SwarmPhase,
    SwarmState,
    SwarmStateStore,
    WorkerState,
    WorkerStatus,
    create_swarm_state,
)
from swarmforge.tracker import IssueTracker
from swarmforge.worker import WorkerConfig, default_guidance


logger = logging.getLogger(__name__)

MAX_PREDICTED_FILES = 10
MIN_SHARED_OCCURRENCES = 2


class OrchestratorError(RuntimeError):
    """A precondition for a swarm operation does not hold."""


@dataclass
class MergeReport:
    """What a merge() call did."""
    status: str                                  # incomplete | conflict | completed
    merged: list[str] = field(default_factory=list)
    pending_workers: list[str] = field(default_factory=list)
    conflict: Optional[PendingConflicts] = None
    conflicts_file: Optional[Path] = None


# =============================================================================
# Analysis helpers
# =============================================================================

def overlap_risk_level(shared_count: int) -> str:
    if shared_count > 5:
        return "high"
    if shared_count > 2:
        return "medium"
    if shared_count > 0:
        return "low"
    return "none"


def analyze_overlap(item_ids: list[str], predictions: dict[str, list[str]]) -> OverlapAnalysis:
    """
    Build the pairwise shared-file matrix for a run.

    More than two high-risk pairs recommend ``sequential``, one or two
    ``reorder``, none ``proceed``. Each unordered pair is counted once.
    """
    analysis = OverlapAnalysis()
    for item_id in item_ids:
        files = predictions.get(item_id, [])
        analysis.issues.append(IssueFilePrediction(
            id=item_id,
            predicted_files=list(files),
            confidence=0.7 if files else 0.3,
        ))

    for i, item_a in enumerate(item_ids):
        row = analysis.overlap_matrix.setdefault(item_a, {})
        files_a = predictions.get(item_a, [])
        for j, item_b in enumerate(item_ids):
            if i == j:
                continue
            files_b = set(predictions.get(item_b, []))
            shared = [f for f in files_a if f in files_b]
            level = overlap_risk_level(len(shared))
            row[item_b] = OverlapCell(shared_files=shared, risk_level=level)
            if level == "high" and i < j:
                analysis.warnings.append(
                    f"High overlap risk between {item_a} and {item_b}: {len(shared)} shared files"
                )

    if len(analysis.warnings) > 2:
        analysis.recommendation = "sequential"
    elif analysis.warnings:
        analysis.recommendation = "reorder"
    return analysis


def detect_scope_signals(title: str, layers: list[str]) -> ScopeSignals:
    lower = title.lower()
    return ScopeSignals(
        is_new_feature="add" in lower or "feat" in lower,
        is_bug_fix="fix" in lower or "bug" in lower,
        is_refactor="refactor" in lower,
        affected_layers=list(layers),
    )


def score_outcome(
    predicted_files: list[str],
    actual_files: list[str],
    predicted_minutes: int,
    actual_minutes: int,
) -> PatternScores:
    """
    Precision and recall of the file prediction plus time accuracy.

    precision = |predicted & actual| / |predicted|
    recall    = |predicted & actual| / |actual|
    time      = 1 - |predicted - actual| / max(predicted, actual)
    """
    predicted, actual = set(predicted_files), set(actual_files)
    hits = len(predicted & actual)
    time_accuracy = 0.0
    if predicted_minutes > 0:
        time_accuracy = 1 - abs(predicted_minutes - actual_minutes) / max(actual_minutes, predicted_minutes)
    return PatternScores(
        file_precision=hits / len(predicted) if predicted else 0.0,
        file_recall=hits / len(actual) if actual else 0.0,
        time_accuracy=time_accuracy,
    )


def check_worker_heartbeats(state: SwarmState, timeout_ms: int, now: datetime) -> list[WorkerState]:
    """
    Flag executing workers whose heartbeat is older than ``timeout_ms``.

    Returns:
        The workers that were marked ``timeout``
    """
    timed_out = []
    for worker in state.workers:
        if worker.status != WorkerStatus.EXECUTING.value or not worker.last_heartbeat:
            continue
        age_ms = (now - parse_timestamp(worker.last_heartbeat)).total_seconds() * 1000
        if age_ms > timeout_ms:
            worker.status = WorkerStatus.TIMEOUT.value
            worker.error = f"Heartbeat timeout: no heartbeat for {age_ms / 1000:.0f}s"
            timed_out.append(worker)
    return timed_out


# =============================================================================
# Orchestrator
# =============================================================================

class SwarmOrchestrator:
    """
    Coordinates analysis, worktree preparation, monitoring and merging.

    The knowledge base, tracker and repository are passed in, so tests can
    substitute any of them.
    """

    def __init__(
        self,
        paths: SwarmPaths,
        config: SwarmConfig,
        kb: KnowledgeBase,
        tracker: Optional[IssueTracker] = None,
        repo: Optional[GitRepo] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.paths = paths
        self.config = config
        self.kb = kb
        self.tracker = tracker
        self.repo = repo or GitRepo(paths.project_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.store = SwarmStateStore(paths.state_file)
        self.conflict_store = ConflictStore(paths.pending_conflicts_file)
        self.state: Optional[SwarmState] = self.store.load()

    def _save(self) -> None:
        self.store.save(self.state)

    def _set_phase(self, phase: SwarmPhase) -> None:
        self.state.phase = phase.value
        self._save()

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def start(self, item_ids: list[str]) -> SwarmState:
        """
        Validate, then run analysis, planning and preparation.

        Raises:
            OrchestratorError: Too many items, invalid ids, a dirty working
                tree, or a high-risk overlap while ``block_on_high_risk`` is set
        """
        item_ids = list(dict.fromkeys(item_ids))
        if not item_ids:
            raise OrchestratorError("No items given")
        if len(item_ids) > self.config.max_workers:
            raise OrchestratorError(
                f"Too many items ({len(item_ids)}). Max: {self.config.max_workers}"
            )
        try:
            for item_id in item_ids:
                validate_item_id(item_id)
                validate_branch_name(self.branch_for(item_id))
        except InvalidIdentifierError as e:
            raise OrchestratorError(str(e)) from e
        if self.repo.has_uncommitted_changes():
            raise OrchestratorError(
                "Git working directory is not clean. Commit or stash changes first."
            )

        if self.state and self.state.phase not in (SwarmPhase.COMPLETED.value, SwarmPhase.FAILED.value):
            print_warning(f"Replacing unfinished swarm {self.state.id} ({self.state.phase})")

        ensure_swarm_dir(self.paths.swarm_dir)
        base_branch = self.repo.current_branch()
        self.state = create_swarm_state(base_branch, item_ids)
        self._save()

        print_header("SWARM ORCHESTRATOR")
        print_key_value_table({"Swarm": self.state.id, "Base branch": base_branch, "Items": ", ".join(item_ids)})

        items = self.fetch_items(item_ids)
        predictions = self.run_analysis_phase(items)

        if (
            self.config.overlap.block_on_high_risk
            and self.state.overlap_analysis.recommendation == "sequential"
        ):
            self.state.error = "Overlap analysis recommends sequential execution"
            self._set_phase(SwarmPhase.FAILED)
            raise OrchestratorError(
                f"{self.state.error}; run fewer items at once or disable overlap.block_on_high_risk"
            )

        patterns = self.run_planning_phase(items, predictions)
        self.run_preparation_phase(items, patterns)
        self.print_worker_commands()
        return self.state

    def branch_for(self, item_id: str) -> str:
        return f"{self.config.branch_prefix}{item_id.lower()}"

    def fetch_items(self, item_ids: list[str]) -> list[Item]:
        """Items from the tracker, degraded to id-only items where it cannot help."""
        fetched: dict[str, Item] = {}
        if self.tracker is not None:
            fetched = {item.id: item for item in self.tracker.fetch_items(item_ids)}

        items = []
        for item_id in item_ids:
            item = fetched.get(item_id)
            if item is None:
                logger.warning("No tracker data for %s, continuing with its id only", item_id)
                item = Item(id=item_id, title=item_id)
            items.append(item)
        return items

    # -------------------------------------------------------------------------
    # Phase 1: Analysis
    # -------------------------------------------------------------------------

    def predict_files_for(self, item: Item) -> tuple[list[str], bool]:
        """
        Predicted files for an item.

        With enough similar patterns, files that appeared in at least two of
        them (most frequent first); otherwise the cold-start globs.

        Returns:
            (files, learned)
        """
        similar = self.kb.find_similar_patterns(
            item.title, item.description, k=self.config.learning.similar_patterns_to_retrieve
        )
        if self.config.learning.enabled and len(similar) >= self.config.learning.min_patterns_for_prediction:
            counts: dict[str, int] = {}
            for pattern in similar:
                for file in pattern.outcomes.files_actual:
                    counts[file] = counts.get(file, 0) + 1
            ranked = sorted(
                (f for f, c in counts.items() if c >= MIN_SHARED_OCCURRENCES),
                key=lambda f: -counts[f],
            )
            return ranked[:MAX_PREDICTED_FILES], True

        return self.kb.cold_start_prediction(item.title, item.description).files[:MAX_PREDICTED_FILES], False

    def run_analysis_phase(self, items: list[Item]) -> dict[str, list[str]]:
        print_header("PHASE 1: ANALYSIS")
        self._set_phase(SwarmPhase.ANALYZING)

        stats = self.kb.get_stats()
        print_info(
            f"Knowledge base: {stats.total_patterns} patterns, "
            f"precision {stats.avg_precision * 100:.1f}%, recall {stats.avg_recall * 100:.1f}%"
        )

        predictions: dict[str, list[str]] = {}
        for item in items:
            files, learned = self.predict_files_for(item)
            predictions[item.id] = files
            source = "learned patterns" if learned else "cold start heuristics"
            print_muted(f"  {item.id}: {item.title} -> {len(files)} predicted files ({source})")

        self.state.overlap_analysis = analyze_overlap([item.id for item in items], predictions)
        for warning in self.state.overlap_analysis.warnings:
            print_warning(warning)
        print_info(f"Recommendation: {self.state.overlap_analysis.recommendation}")
        self._save()
        return predictions

    # -------------------------------------------------------------------------
    # Phase 2: Planning
    # -------------------------------------------------------------------------

    def _mean_pair_risk(self, files: list[str]) -> float:
        risks = [
            self.kb.get_conflict_risk(files[i], files[j])
            for i in range(len(files))
            for j in range(i + 1, len(files))
        ]
        return sum(risks) / len(risks) if risks else 0.0

    def _detect_layers(self, item: Item) -> list[str]:
        text = item.text.lower()
        return [
            layer for layer, keywords in self.kb.heuristics.layer_keywords.items()
            if any(kw in text for kw in keywords)
        ]

    def run_planning_phase(
        self,
        items: list[Item],
        predictions: Optional[dict[str, list[str]]] = None,
    ) -> dict[str, IssuePattern]:
        """Store one cold-start pattern per item; returns them keyed by item id."""
        print_header("PHASE 2: PLANNING")
        self._set_phase(SwarmPhase.PLANNING)

        patterns = {}
        for item in items:
            cold_start = self.kb.cold_start_prediction(item.title, item.description)
            pattern = IssuePattern(
                id=new_pattern_id(),
                timestamp=utc_now(),
                input=PatternInput(
                    item_id=item.id,
                    title=item.title,
                    description=item.description,
                    labels=list(item.labels),
                    keywords=self.kb.extract_keywords(item.text),
                    file_hints=list((predictions or {}).get(item.id, [])),
                    scope_signals=detect_scope_signals(item.title, self._detect_layers(item)),
                ),
                predictions=PatternPredictions(
                    files=cold_start.files,
                    time_minutes=cold_start.time_minutes,
                    complexity=cold_start.complexity,
                    conflict_risk=self._mean_pair_risk(cold_start.files),
                    confidence=Confidence.COLD_START.value,
                ),
                swarm_id=self.state.id,
            )
            self.kb.add_pattern(pattern)
            patterns[item.id] = pattern
            print_muted(f"  {item.id}: pattern {pattern.id}")

        self._save()
        return patterns

    # -------------------------------------------------------------------------
    # Phase 3: Preparation
    # -------------------------------------------------------------------------

    def _remove_worktree(self, path: Path) -> bool:
        try:
            self.repo.remove_worktree(path)
            return True
        except GitError as e:
            print_warning(f"Could not remove worktree {path}: {e.stderr or e}")
            return False

    def run_preparation_phase(self, items: list[Item], patterns: dict[str, IssuePattern]) -> list[WorkerState]:
        print_header("PHASE 3: PREPARATION")
        self._set_phase(SwarmPhase.PREPARING)

        worktree_base = self.paths.worktree_base(self.config)
        worktree_base.mkdir(parents=True, exist_ok=True)

        for index, item in enumerate(items, 1):
            pattern = patterns.get(item.id)
            if pattern is None:
                print_warning(f"No pattern found for {item.id}, skipping")
                continue

            branch = self.branch_for(item.id)
            worktree_path = worktree_base / f"worker-{index}"

            if worktree_path.exists():
                print_muted(f"  Removing existing worktree {worktree_path}")
                if not self._remove_worktree(worktree_path):
                    shutil.rmtree(worktree_path, ignore_errors=True)
                    self.repo.prune_worktrees()

            try:
                self.repo.add_worktree(worktree_path, branch, self.state.base_branch)
            except GitError as e:
                print_warning(f"Could not create worktree for {item.id}: {e.stderr or e}")
                continue

            WorkerConfig(
                worker_id=index,
                issue_id=item.id,
                pattern_id=pattern.id,
                branch=branch,
                swarm_id=self.state.id,
                orchestrator_dir=str(self.paths.swarm_dir.resolve()),
                heartbeat_interval_ms=self.config.heartbeat_interval_ms,
                guidance=default_guidance(item.id),
            ).save(worktree_path)

            worker = WorkerState(
                id=f"worker-{index}-{int(self._clock().timestamp() * 1000)}",
                worker_id=index,
                issue_id=item.id,
                pattern_id=pattern.id,
                branch=branch,
                worktree_path=str(worktree_path),
            )
            self.state.workers.append(worker)
            print_success(f"{item.id}: {worktree_path} on branch {branch}")

        self.state.merge_order = [w.branch for w in self.state.workers]
        self._set_phase(SwarmPhase.EXECUTING)
        return self.state.workers

    def print_worker_commands(self) -> None:
        print_header("SWARM READY")
        for worker in self.state.workers:
            print_panel(
                f"cd {worker.worktree_path}\n"
                f"swarm worker start\n"
                f"# follow guidance.workflow in .swarm/worker.json",
                title=f"Worker {worker.worker_id} ({worker.issue_id})",
            )
        print_muted("Monitor progress:  swarm monitor")
        print_muted("Merge when done:   swarm merge")

    # -------------------------------------------------------------------------
    # Monitor
    # -------------------------------------------------------------------------

    def monitor(self) -> Optional[SwarmState]:
        """
        Show worker status and flag stalled workers.

        Marking a worker ``timeout`` is persisted; it does not stop the
        worker's process.
        """
        self.state = self.store.load()
        if self.state is None:
            print_info('No active swarm. Run "swarm start" first.')
            return None

        now = self._clock()
        for worker in check_worker_heartbeats(self.state, self.config.heartbeat_timeout_ms, now):
            print_warning(f"Worker {worker.worker_id} ({worker.issue_id}) timed out!")
        self._save()

        print_header("SWARM MONITOR")
        print_key_value_table({
            "ID": self.state.id,
            "Phase": self.state.phase,
            "Started": self.state.started_at,
            "Base branch": self.state.base_branch,
            "Merge order": " -> ".join(self.state.merge_order) or "-",
        })

        table = create_table(columns=["Worker", "Item", "Status", "Progress", "Step", "Heartbeat"])
        for worker in self.state.workers:
            heartbeat = "-"
            if worker.last_heartbeat:
                heartbeat = f"{(now - parse_timestamp(worker.last_heartbeat)).total_seconds():.0f}s ago"
            table.add_row(
                str(worker.worker_id),
                worker.issue_id,
                status_text(worker.status),
                progress_bar(worker.progress.completed_steps, worker.progress.total_steps, width=10),
                worker.progress.current_step,
                heartbeat,
            )
        console.print(table)

        if self.state.overlap_analysis and self.state.overlap_analysis.warnings:
            for warning in self.state.overlap_analysis.warnings:
                print_warning(warning)
        return self.state

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def merge(self) -> MergeReport:
        """
        Merge completed worker branches into the base branch, in order.

        Raises:
            OrchestratorError: No swarm state, or the working tree still
                holds an unresolved merge
        """
        self.state = self.store.load()
        if self.state is None:
            raise OrchestratorError("No active swarm state")

        incomplete = [w for w in self.state.workers if not w.is_terminal]
        if incomplete:
            print_warning("Some workers are not complete:")
            print_list([f"{w.issue_id}: {w.status}" for w in incomplete])
            print_muted("Wait for workers to complete or mark them as failed.")
            return MergeReport(status="incomplete", pending_workers=[w.issue_id for w in incomplete])

        unresolved = self.repo.conflicted_files()
        if unresolved:
            raise OrchestratorError(
                f"Unresolved conflicts in {', '.join(unresolved)}. "
                "Resolve and commit them, then run merge again."
            )

        print_header("SWARM MERGE")
        self._set_phase(SwarmPhase.MERGING)
        self.repo.checkout(self.state.base_branch)

        completed = [w for w in self.state.workers if w.status == WorkerStatus.COMPLETED.value]
        report = MergeReport(status="completed")
        print_info(f"Merging {len(completed)} branches into {self.state.base_branch}")

        for worker in completed:
            if worker.merged_at:
                continue
            actual_files = self.repo.changed_files(self.state.base_branch, worker.branch)
            try:
                self.repo.merge(worker.branch, f"Merge {worker.branch}")
            except GitError as e:
                conflicted = self.repo.conflicted_files()
                if not conflicted:
                    self.state.error = f"Merge of {worker.branch} failed: {e.stderr or e}"
                    self._save()
                    raise OrchestratorError(self.state.error) from e
                return self._handle_conflict(worker, conflicted, report)

            worker.merged_at = utc_now()
            report.merged.append(worker.branch)
            print_success(f"{worker.branch} merged")
            self.capture_outcome(worker, actual_files)
            self._save()

        self._finish_merge(completed)
        return report

    def _handle_conflict(self, worker: WorkerState, conflicted: list[str], report: MergeReport) -> MergeReport:
        infos = [analyze_conflict_file(self.paths.project_dir, f) for f in conflicted]
        pending = PendingConflicts(
            swarm_id=self.state.id,
            branch=worker.branch,
            issue_id=worker.issue_id,
            issue_description=worker.result.summary if worker.result else None,
            conflicts=infos,
        )
        conflicts_file = self.conflict_store.save(pending)

        self.record_conflict_outcome(worker, conflicted)
        self.state.error = f"Merge conflicts in {worker.branch}: {', '.join(conflicted)}"
        self._save()

        print_error(f"{worker.branch} has conflicts:")
        print_list(conflicted)
        print_panel(
            "Conflicts have been saved for resolution.\n\n"
            "  1. Resolve the conflicted files in the working tree\n"
            "  2. Commit the merge\n"
            "  3. Run: swarm merge\n\n"
            f"Conflicts file: {conflicts_file}",
            title="CONFLICT RESOLUTION REQUIRED",
            border_style="sw.err",
        )

        report.status = "conflict"
        report.conflict = pending
        report.conflicts_file = conflicts_file
        return report

    def _finish_merge(self, completed: list[WorkerState]) -> None:
        self.conflict_store.clear()

        print_info("Updating tracker items...")
        for worker in completed:
            status = worker.result.tracker_status if worker.result else DEFAULT_REVIEW_STATUS
            if self.tracker is None or not self.tracker.update_item_status(worker.issue_id, status):
                print_warning(f"Could not update {worker.issue_id} to '{status}'")

        print_info("Cleaning up worktrees...")
        for worker in self.state.workers:
            if Path(worker.worktree_path).exists() and self._remove_worktree(Path(worker.worktree_path)):
                print_muted(f"  Removed {worker.worktree_path}")

        self.kb.update_metrics()
        self.state.error = None
        self._set_phase(SwarmPhase.COMPLETED)
        print_success(f"Swarm merge complete: {len(completed)} branches merged into {self.state.base_branch}")

    # -------------------------------------------------------------------------
    # Learning & Feedback
    # -------------------------------------------------------------------------

    def _elapsed_minutes(self, worker: WorkerState) -> int:
        if not worker.started_at:
            return 0
        end = parse_timestamp(worker.completed_at) if worker.completed_at else self._clock()
        seconds = (end - parse_timestamp(worker.started_at)).total_seconds()
        return max(0, round(seconds / 60))

    def capture_outcome(self, worker: WorkerState, actual_files: list[str]) -> Optional[IssuePattern]:
        """
        Score a merged worker's pattern and feed its files back into the knowledge base.

        Args:
            worker: The merged worker
            actual_files: Files the branch changed, listed before the merge.
                When empty (a branch merged by hand after a conflict), the
                files noted when the conflict was recorded are used.
        """
        pattern = self.kb.get_pattern(worker.pattern_id)
        if pattern is None:
            logger.warning("Pattern %s for %s not found", worker.pattern_id, worker.issue_id)
            return None

        actual_files = list(actual_files) or list(pattern.outcomes.files_actual)
        actual_minutes = self._elapsed_minutes(worker)

        pattern.outcomes = PatternOutcomes(
            files_actual=actual_files,
            time_actual_minutes=actual_minutes,
            conflicts=list(pattern.outcomes.conflicts),
            success=worker.status == WorkerStatus.COMPLETED.value,
            rollback_reason=worker.error,
            recorded_at=utc_now(),
        )
        pattern.scores = score_outcome(
            pattern.predictions.files, actual_files, pattern.predictions.time_minutes, actual_minutes
        )
        pattern.scores.conflict_prediction_hit = (
            pattern.predictions.conflict_risk < self.config.overlap.risk_threshold
            if not pattern.outcomes.conflicts
            else pattern.predictions.conflict_risk >= self.config.overlap.risk_threshold
        )
        self.kb.update_pattern(pattern)

        if pattern.input.keywords and actual_files:
            self.kb.update_file_associations(pattern.input.keywords, actual_files)
        self.kb.record_co_modification(actual_files)

        print_muted(
            f"  Learning captured: precision {pattern.scores.file_precision * 100:.0f}%, "
            f"recall {pattern.scores.file_recall * 100:.0f}%"
        )
        return pattern

    def record_conflict_outcome(self, worker: WorkerState, conflicted: list[str]) -> None:
        """
        Learn from a conflict: count file pairs and mark the pattern.

        Each conflicted file is paired with the other files the branch
        changed; if the branch changed nothing else, with the other
        conflicted files; a lone file is paired with itself.
        """
        try:
            changed = self.repo.changed_files(self.state.base_branch, worker.branch)
        except GitError as e:
            logger.warning("Could not list files changed on %s: %s", worker.branch, e)
            changed = []

        recorded: set[tuple[str, str]] = set()
        for file in conflicted:
            partners = [g for g in changed if g != file and g not in conflicted]
            if not partners:
                partners = [g for g in conflicted if g != file] or [file]
            for partner in partners:
                pair = tuple(sorted((file, partner)))
                if pair not in recorded:
                    recorded.add(pair)
                    self.kb.record_conflict(file, partner)

        pattern = self.kb.get_pattern(worker.pattern_id)
        if pattern is not None:
            pattern.outcomes.conflicts = list(conflicted)
            pattern.outcomes.files_actual = list(changed)
            pattern.scores.conflict_prediction_hit = (
                pattern.predictions.conflict_risk >= self.config.overlap.risk_threshold
            )
            self.kb.update_pattern(pattern)

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def clean(self) -> list[str]:
        """
        Remove run state, pending conflicts and leftover worktrees.

        A merge left half done by a conflict is aborted. The knowledge base
        and config.json are kept.

        Returns:
            Worktree paths that were removed
        """
        if self.repo.merge_in_progress():
            try:
                self.repo.abort_merge()
                print_muted("Aborted the unfinished merge")
            except GitError as e:
                print_warning(f"Could not abort merge: {e.stderr or e}")

        removed = []
        state = self.store.load()
        if state is not None:
            for worker in state.workers:
                path = Path(worker.worktree_path)
                if path.exists() and self._remove_worktree(path):
                    removed.append(str(path))
        try:
            self.repo.prune_worktrees()
        except GitError as e:
            print_warning(f"Could not prune worktrees: {e.stderr or e}")

        self.store.clear()
        self.conflict_store.clear()
        self.state = None
        return removed


def create_orchestrator(
    project_dir: Path,
    tracker: Optional[IssueTracker] = None,
    swarm_dir: Optional[Path] = None,
) -> SwarmOrchestrator:
    """
    Build an orchestrator for a project from its config.json.

    Args:
        project_dir: Repository root
        tracker: Issue tracker, or None to run on item ids alone
        swarm_dir: Override for the ``.swarm`` directory
    """
    paths = SwarmPaths.for_project(project_dir, swarm_dir)
    config = load_config(paths)
    kb = KnowledgeBase(
        paths.kb_dir,
        heuristics=config.heuristics(),
        decay_days=config.learning.decay_days,
    )
    return SwarmOrchestrator(paths, config, kb, tracker=tracker)
