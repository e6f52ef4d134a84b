"""
Swarm Knowledge Base
====================

Learning store behind file predictions and conflict-risk estimates.

Storage layout (all under ``kb_dir``):

    patterns.jsonl           one IssuePattern per line, append-only
    file-associations.jsonl  keyword -> files seen with it
    conflict-pairs.jsonl     file pair -> co-modification / conflict counts
    index.json               inverted index (derived, rebuildable)
    metrics.json             aggregate precision / recall (derived)

Logs are appended when a new record is created and rewritten wholesale when
an existing record changes. Single-writer use is assumed: there is no
cross-process locking.

Usage:
    from swarmforge.knowledge_base import KnowledgeBase

    kb = KnowledgeBase(project_dir / ".swarm" / "kb")
    similar = kb.find_similar_patterns("Fix login button", "")
    files = kb.predict_files_from_keywords(kb.extract_keywords("login button"))
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, TYPE_CHECKING

from swarmforge.heuristics import DEFAULT_HEURISTICS, Heuristics, STOP_WORDS
from swarmforge.jsonl import (
    RecordParseError,
    append_jsonl,
    read_json,
    read_jsonl,
    write_json,
    write_jsonl,
)
from swarmforge.models import (
    AccuracyPair,
    AccuracySnapshot,
    ConflictPair,
    FileAssociation,
    FileAssociationEntry,
    InvertedIndex,
    IssuePattern,
    LearningMetrics,
    pair_key,
    parse_timestamp,
    utc_now,
)

if TYPE_CHECKING:
    from swarmforge.git_ops import GitRepo


logger = logging.getLogger(__name__)

PATTERNS_FILE = "patterns.jsonl"
ASSOCIATIONS_FILE = "file-associations.jsonl"
CONFLICTS_FILE = "conflict-pairs.jsonl"
INDEX_FILE = "index.json"
METRICS_FILE = "metrics.json"

DEFAULT_DECAY_DAYS = 90.0
MIN_PREDICTION_SCORE = 0.5
MIN_KEYWORD_LENGTH = 3
# Snapshots kept in metrics.json, newest last
MAX_ACCURACY_HISTORY = 50

_NON_WORD = re.compile(r"[^a-z0-9\s_-]")
_CAPITALIZED_WORD = re.compile(r"[A-Z][a-z]+")


@dataclass
class ColdStartPrediction:
    """Heuristic prediction made without learned data."""
    files: list[str]
    complexity: str
    time_minutes: int


@dataclass
class KnowledgeStats:
    """Summary of knowledge base contents for reporting."""
    total_patterns: int = 0
    total_swarm_runs: int = 0
    total_file_associations: int = 0
    total_conflict_pairs: int = 0
    avg_precision: float = 0.0
    avg_recall: float = 0.0
    top_keywords: list[tuple[str, int]] = field(default_factory=list)
    accuracy: list[AccuracySnapshot] = field(default_factory=list)
    cold_start_accuracy: Optional[AccuracyPair] = None
    learned_accuracy: Optional[AccuracyPair] = None
    improvement_rate: float = 0.0
    last_updated: Optional[str] = None


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    """
    Match a path against bootstrap exclude patterns.

    ``dir/`` matches by prefix, ``*.ext`` by suffix, anything else exactly.
    """
    for pattern in patterns:
        if pattern.endswith("/"):
            if path.startswith(pattern):
                return True
        elif pattern.startswith("*"):
            if path.endswith(pattern[1:]):
                return True
        elif path == pattern:
            return True
    return False


class KnowledgeBase:
    """
    Persistent pattern store with keyword search and outcome learning.

    Constructed once per run and passed explicitly to the orchestrator and
    the compatibility engine.
    """

    def __init__(
        self,
        kb_dir: Path,
        heuristics: Heuristics = DEFAULT_HEURISTICS,
        decay_days: float = DEFAULT_DECAY_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the knowledge base.

        Args:
            kb_dir: Directory holding the logs and caches (created if missing)
            heuristics: Cold-start tables, possibly extended per project
            decay_days: Time constant of the recency decay for associations
            clock: Returns "now"; injectable for tests
        """
        self.kb_dir = Path(kb_dir)
        self.heuristics = heuristics
        self.decay_days = decay_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.patterns_file = self.kb_dir / PATTERNS_FILE
        self.associations_file = self.kb_dir / ASSOCIATIONS_FILE
        self.conflicts_file = self.kb_dir / CONFLICTS_FILE
        self.index_file = self.kb_dir / INDEX_FILE
        self.metrics_file = self.kb_dir / METRICS_FILE

        self.kb_dir.mkdir(parents=True, exist_ok=True)

        # path -> (stat signature, parsed value)
        self._cache: dict[Path, tuple[tuple[int, int], object]] = {}
        self.index = self._load_index()

    # -------------------------------------------------------------------------
    # Cached log reads
    # -------------------------------------------------------------------------

    def _cached(self, path: Path, loader: Callable[[list[dict]], object]):
        """Parse a JSON-lines log, reusing the last parse while the file is unchanged."""
        if not path.exists():
            self._cache.pop(path, None)
            return loader([])

        stat = path.stat()
        signature = (stat.st_mtime_ns, stat.st_size)
        cached = self._cache.get(path)
        if cached and cached[0] == signature:
            return cached[1]

        records = read_jsonl(path)
        try:
            value = loader(records)
        except (KeyError, TypeError, ValueError) as e:
            raise RecordParseError(path, f"invalid record structure ({e})") from e
        self._cache[path] = (signature, value)
        return value

    def _invalidate(self, path: Path) -> None:
        self._cache.pop(path, None)

    # -------------------------------------------------------------------------
    # Index Management
    # -------------------------------------------------------------------------

    def _load_index(self) -> InvertedIndex:
        data = read_json(self.index_file)
        if data is not None:
            return InvertedIndex.from_dict(data)
        if self.patterns_file.exists():
            # Cache lost but history present: reconstruct it
            return self._build_index(self.get_all_patterns())
        return InvertedIndex()

    def _save_index(self) -> None:
        self.index.last_updated = utc_now()
        write_json(self.index_file, self.index.to_dict())

    @staticmethod
    def _build_index(patterns: list[IssuePattern]) -> InvertedIndex:
        index = InvertedIndex()
        for pattern in patterns:
            for keyword in pattern.input.keywords:
                ids = index.keywords.setdefault(keyword, [])
                if pattern.id not in ids:
                    ids.append(pattern.id)
            for file in pattern.outcomes.files_actual:
                ids = index.files.setdefault(file, [])
                if pattern.id not in ids:
                    ids.append(pattern.id)
        return index

    def rebuild_index(self) -> InvertedIndex:
        """Reconstruct the keyword and file index from the pattern log."""
        self.index = self._build_index(self.get_all_patterns())
        self._save_index()
        logger.info(
            "Index rebuilt: %d keywords, %d files",
            len(self.index.keywords),
            len(self.index.files),
        )
        return self.index

    # -------------------------------------------------------------------------
    # Pattern Operations
    # -------------------------------------------------------------------------

    def get_all_patterns(self) -> list[IssuePattern]:
        return list(self._cached(
            self.patterns_file,
            lambda records: [IssuePattern.from_dict(r) for r in records],
        ))

    def _patterns_by_id(self) -> dict[str, IssuePattern]:
        return {p.id: p for p in self.get_all_patterns()}

    def get_pattern(self, pattern_id: str) -> Optional[IssuePattern]:
        return self._patterns_by_id().get(pattern_id)

    def add_pattern(self, pattern: IssuePattern) -> None:
        """Append a pattern and index its keywords."""
        append_jsonl(self.patterns_file, pattern.to_dict())
        self._invalidate(self.patterns_file)

        for keyword in pattern.input.keywords:
            ids = self.index.keywords.setdefault(keyword, [])
            if pattern.id not in ids:
                ids.append(pattern.id)
        self._save_index()

    def update_pattern(self, pattern: IssuePattern) -> bool:
        """
        Replace a stored pattern in place.

        Returns:
            True if a pattern with the same id existed and was replaced
        """
        patterns = self.get_all_patterns()
        for i, existing in enumerate(patterns):
            if existing.id == pattern.id:
                patterns[i] = pattern
                write_jsonl(self.patterns_file, (p.to_dict() for p in patterns))
                self._invalidate(self.patterns_file)
                return True
        logger.warning("Pattern %s not found, nothing updated", pattern.id)
        return False

    # -------------------------------------------------------------------------
    # Search & Retrieval
    # -------------------------------------------------------------------------

    def score_patterns(self, keywords: Iterable[str], k: int = 5) -> list[tuple[str, int]]:
        """
        Rank pattern ids by how many query keywords they match.

        Ties are broken by insertion order: the earlier pattern wins.

        Returns:
            Up to ``k`` (pattern_id, score) pairs, best first
        """
        scores: dict[str, int] = {}
        for keyword in dict.fromkeys(kw.lower() for kw in keywords):
            for pattern_id in self.index.keywords.get(keyword, []):
                scores[pattern_id] = scores.get(pattern_id, 0) + 1

        if not scores:
            return []

        order = {p.id: i for i, p in enumerate(self.get_all_patterns())}
        ranked = sorted(
            scores.items(),
            key=lambda item: (-item[1], order.get(item[0], len(order))),
        )
        return ranked[:k]

    def search_by_keywords(self, keywords: Iterable[str], k: int = 5) -> list[IssuePattern]:
        """Top-k patterns by number of matched keywords."""
        by_id = self._patterns_by_id()
        return [by_id[pid] for pid, _ in self.score_patterns(keywords, k) if pid in by_id]

    def find_similar_patterns(self, title: str, description: str = "", k: int = 5) -> list[IssuePattern]:
        return self.search_by_keywords(self.extract_keywords(f"{title} {description or ''}"), k)

    # -------------------------------------------------------------------------
    # File Associations
    # -------------------------------------------------------------------------

    def _associations(self) -> dict[str, FileAssociation]:
        return self._cached(
            self.associations_file,
            lambda records: {a.keyword: a for a in map(FileAssociation.from_dict, records)},
        )

    def get_file_associations(self) -> list[FileAssociation]:
        return list(self._associations().values())

    def update_file_association(self, keyword: str, file: str, seen_at: Optional[str] = None) -> None:
        """Count one more sighting of ``file`` under ``keyword``."""
        self.update_file_associations([keyword], [file], seen_at=seen_at)

    def update_file_associations(
        self,
        keywords: Iterable[str],
        files: Iterable[str],
        seen_at: Optional[str] = None,
    ) -> None:
        """Associate every keyword with every file in a single log rewrite."""
        files = list(files)
        associations = dict(self._associations())
        timestamp = seen_at or self._clock().isoformat()

        for keyword in keywords:
            assoc = associations.get(keyword)
            if assoc is None:
                assoc = FileAssociation(keyword=keyword)
                associations[keyword] = assoc
            for file in files:
                entry = assoc.find(file)
                if entry is None:
                    assoc.files.append(FileAssociationEntry(path=file, frequency=1, last_seen=timestamp))
                else:
                    entry.frequency += 1
                    entry.last_seen = timestamp

        write_jsonl(self.associations_file, (a.to_dict() for a in associations.values()))
        self._invalidate(self.associations_file)

    def predict_files_from_keywords(self, keywords: Iterable[str]) -> list[str]:
        """
        Predict files from learned keyword associations.

        Each (keyword, file) sighting contributes
        ``frequency * exp(-days_since_last_seen / decay_days)``; files whose
        summed score exceeds 0.5 are returned, highest score first.
        """
        associations = self._associations()
        now = self._clock()
        scores: dict[str, float] = {}

        for keyword in dict.fromkeys(kw.lower() for kw in keywords):
            assoc = associations.get(keyword)
            if assoc is None:
                continue
            for entry in assoc.files:
                age = now - parse_timestamp(entry.last_seen)
                days_since = max(age.total_seconds(), 0.0) / 86400
                weight = math.exp(-days_since / self.decay_days)
                scores[entry.path] = scores.get(entry.path, 0.0) + entry.frequency * weight

        ranked = sorted(
            ((path, score) for path, score in scores.items() if score > MIN_PREDICTION_SCORE),
            key=lambda item: -item[1],
        )
        return [path for path, _ in ranked]

    # -------------------------------------------------------------------------
    # Conflict Pairs
    # -------------------------------------------------------------------------

    def _pairs(self) -> dict[str, ConflictPair]:
        return self._cached(
            self.conflicts_file,
            lambda records: {p.key: p for p in map(ConflictPair.from_dict, records)},
        )

    def get_conflict_pairs(self) -> list[ConflictPair]:
        return list(self._pairs().values())

    def _save_pairs(self, pairs: dict[str, ConflictPair]) -> None:
        write_jsonl(self.conflicts_file, (p.to_dict() for p in pairs.values()))
        self._invalidate(self.conflicts_file)

    def record_conflict(self, file_a: str, file_b: str) -> None:
        """Count a merge conflict between two files."""
        pairs = dict(self._pairs())
        key = pair_key(file_a, file_b)
        pair = pairs.get(key)
        if pair is None:
            pair = ConflictPair(file_a=file_a, file_b=file_b)
            pairs[key] = pair
        pair.conflict_count += 1
        pair.recompute_rate()
        self._save_pairs(pairs)

    def record_co_modification(self, files: Iterable[str]) -> None:
        """Count one co-modification for every unordered pair in ``files``."""
        files = list(dict.fromkeys(files))
        if len(files) < 2:
            return

        pairs = dict(self._pairs())
        for i in range(len(files)):
            for j in range(i + 1, len(files)):
                key = pair_key(files[i], files[j])
                pair = pairs.get(key)
                if pair is None:
                    pair = ConflictPair(file_a=files[i], file_b=files[j])
                    pairs[key] = pair
                pair.co_modification_count += 1
                pair.recompute_rate()
        self._save_pairs(pairs)

    def get_conflict_risk(self, file_a: str, file_b: str) -> float:
        pair = self._pairs().get(pair_key(file_a, file_b))
        return pair.conflict_rate if pair else 0.0

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def get_metrics(self) -> LearningMetrics:
        data = read_json(self.metrics_file)
        return LearningMetrics.from_dict(data) if data else LearningMetrics()

    def update_metrics(self) -> LearningMetrics:
        """Recompute aggregate accuracy from the pattern log."""
        patterns = self.get_all_patterns()
        scored = [p for p in patterns if p.has_outcome]
        cold = [p for p in scored if p.is_cold_start]
        learned = [p for p in scored if not p.is_cold_start]

        previous = self.get_metrics()

        cold_precision = _mean([p.scores.file_precision for p in cold])
        learned_precision = _mean([p.scores.file_precision for p in learned])
        improvement = 0.0
        if cold and learned and cold_precision > 0:
            improvement = (learned_precision - cold_precision) / cold_precision

        swarm_ids = {p.swarm_id for p in patterns if p.swarm_id}
        total_runs = len(swarm_ids) if swarm_ids else math.ceil(len(patterns) / 3)

        accuracy = list(previous.accuracy)
        if scored:
            accuracy.append(AccuracySnapshot(
                date=utc_now(),
                file_precision=_mean([p.scores.file_precision for p in scored]),
                file_recall=_mean([p.scores.file_recall for p in scored]),
                time_accuracy=_mean([p.scores.time_accuracy for p in scored]),
                conflict_prediction_accuracy=_mean(
                    [1.0 if p.scores.conflict_prediction_hit else 0.0 for p in scored]
                ),
            ))
        accuracy = accuracy[-MAX_ACCURACY_HISTORY:]

        metrics = LearningMetrics(
            total_patterns=len(patterns),
            total_swarm_runs=total_runs,
            accuracy=accuracy,
            cold_start_accuracy=AccuracyPair(
                file_precision=cold_precision,
                file_recall=_mean([p.scores.file_recall for p in cold]),
            ),
            learned_accuracy=AccuracyPair(
                file_precision=learned_precision,
                file_recall=_mean([p.scores.file_recall for p in learned]),
            ),
            improvement_rate=improvement,
            last_updated=utc_now(),
        )
        write_json(self.metrics_file, metrics.to_dict())
        return metrics

    def get_stats(self) -> KnowledgeStats:
        patterns = self.get_all_patterns()
        scored = [p for p in patterns if p.has_outcome]
        metrics = self.get_metrics()

        keyword_counts: dict[str, int] = {}
        for pattern in patterns:
            for keyword in pattern.input.keywords:
                keyword_counts[keyword] = keyword_counts.get(keyword, 0) + 1
        top_keywords = sorted(keyword_counts.items(), key=lambda item: -item[1])[:10]

        return KnowledgeStats(
            total_patterns=len(patterns),
            total_swarm_runs=metrics.total_swarm_runs,
            total_file_associations=len(self._associations()),
            total_conflict_pairs=len(self._pairs()),
            avg_precision=_mean([p.scores.file_precision for p in scored]),
            avg_recall=_mean([p.scores.file_recall for p in scored]),
            top_keywords=top_keywords,
            accuracy=metrics.accuracy,
            cold_start_accuracy=metrics.cold_start_accuracy if metrics.cold_start_accuracy.file_precision > 0 else None,
            learned_accuracy=metrics.learned_accuracy if metrics.learned_accuracy.file_precision > 0 else None,
            improvement_rate=metrics.improvement_rate,
            last_updated=metrics.last_updated,
        )

    # -------------------------------------------------------------------------
    # Keyword Extraction
    # -------------------------------------------------------------------------

    @staticmethod
    def extract_keywords(text: str) -> list[str]:
        """
        Extract search keywords from free text.

        Lowercases, strips punctuation (keeping ``-`` and ``_``), drops stop
        words and tokens of two characters or fewer, and adds the lowercase
        parts of capitalized words inside identifiers (``LoginButton`` adds
        ``login`` and ``button``).

        Returns:
            Unique keywords in first-seen order
        """
        words = _NON_WORD.sub(" ", text.lower()).split()
        capitalized = [w.lower() for w in _CAPITALIZED_WORD.findall(text)]

        keywords: dict[str, None] = {}
        for word in words + capitalized:
            if len(word) >= MIN_KEYWORD_LENGTH and word not in STOP_WORDS:
                keywords[word] = None
        return list(keywords)

    # -------------------------------------------------------------------------
    # Cold Start Predictions
    # -------------------------------------------------------------------------

    def estimate_complexity_from_title(self, title: str) -> str:
        lower_title = title.lower()
        for level, signals in self.heuristics.complexity_signals.items():
            if any(signal in lower_title for signal in signals):
                return level
        return "medium"

    def cold_start_prediction(self, title: str, description: str = "") -> ColdStartPrediction:
        """
        Heuristic prediction for an item with no learned support.

        Files are glob patterns from the keyword table, not concrete paths.
        Complexity comes from title signals only.
        """
        files: dict[str, None] = {}
        for keyword in self.extract_keywords(f"{title} {description or ''}"):
            for glob in self.heuristics.globs_for(keyword):
                files[glob] = None

        complexity = self.estimate_complexity_from_title(title)
        return ColdStartPrediction(
            files=list(files),
            complexity=complexity,
            time_minutes=self.heuristics.minutes_for(complexity),
        )

    # -------------------------------------------------------------------------
    # Cold Start Bootstrap from Git History
    # -------------------------------------------------------------------------

    def cold_start_from_git_history(
        self,
        repo: "GitRepo",
        max_commits: int = 200,
        min_files_changed: int = 1,
        exclude_patterns: Optional[list[str]] = None,
    ) -> int:
        """
        Seed associations and co-modification counts from recent commits.

        Args:
            repo: Repository whose history is read
            max_commits: How many commits back to look
            min_files_changed: Commits touching fewer surviving files are skipped
            exclude_patterns: Paths to ignore (see ``is_excluded``)

        Returns:
            Number of commits learned from
        """
        exclude_patterns = exclude_patterns or []
        logger.info("Analyzing last %d commits...", max_commits)

        learned = 0
        for commit in repo.commit_history(max_commits):
            if len(commit.files) < min_files_changed:
                continue
            files = [f for f in commit.files if not is_excluded(f, exclude_patterns)]
            if len(files) < min_files_changed:
                continue

            keywords = self.extract_keywords(commit.message)
            if keywords:
                self.update_file_associations(keywords, files)
            self.record_co_modification(files)
            learned += 1

        logger.info("Processed %d commits into knowledge base", learned)
        self.rebuild_index()
        self.update_metrics()
        return learned

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def compact(self) -> dict[str, int]:
        """
        Rewrite the logs keeping only the latest record per key.

        Returns:
            Number of records dropped per log
        """
        dropped = {}

        raw_patterns = read_jsonl(self.patterns_file)
        latest: dict[str, dict] = {}
        for record in raw_patterns:
            latest[record["id"]] = record
        write_jsonl(self.patterns_file, latest.values())
        dropped[PATTERNS_FILE] = len(raw_patterns) - len(latest)

        raw_assocs = read_jsonl(self.associations_file)
        assocs = {r["keyword"]: r for r in raw_assocs}
        write_jsonl(self.associations_file, assocs.values())
        dropped[ASSOCIATIONS_FILE] = len(raw_assocs) - len(assocs)

        raw_pairs = read_jsonl(self.conflicts_file)
        pairs = {pair_key(r["file_a"], r["file_b"]): r for r in raw_pairs}
        write_jsonl(self.conflicts_file, pairs.values())
        dropped[CONFLICTS_FILE] = len(raw_pairs) - len(pairs)

        for path in (self.patterns_file, self.associations_file, self.conflicts_file):
            self._invalidate(path)
        self.rebuild_index()
        return dropped
