"""
Tests for the knowledge base module.
"""

import json
import subprocess
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from swarmforge.git_ops import GitRepo
from swarmforge.jsonl import RecordParseError
from swarmforge.knowledge_base import (
    KnowledgeBase,
    MAX_ACCURACY_HISTORY,
    PATTERNS_FILE,
    is_excluded,
)
from swarmforge.models import Confidence, PatternScores, create_empty_pattern


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def kb_dir():
    """Create a temporary knowledge base directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "kb"


@pytest.fixture
def kb(kb_dir):
    return KnowledgeBase(kb_dir, clock=lambda: NOW)


def make_pattern(item_id, title, keywords, files_actual=None, **kwargs):
    pattern = create_empty_pattern(item_id, title)
    pattern.input.keywords = list(keywords)
    if files_actual is not None:
        pattern.outcomes.files_actual = list(files_actual)
    for key, value in kwargs.items():
        setattr(pattern, key, value)
    return pattern


class TestExtractKeywords:
    """Tests for keyword extraction."""

    def test_fix_login_button(self):
        """Test keywords for a simple title."""
        keywords = KnowledgeBase.extract_keywords("Fix the login Button bug")

        for expected in ("fix", "login", "button", "bug"):
            assert expected in keywords
        assert "the" not in keywords

    def test_deterministic(self):
        """Test that extraction is deterministic."""
        text = "Refactor UserProfile settings page"
        assert KnowledgeBase.extract_keywords(text) == KnowledgeBase.extract_keywords(text)

    def test_splits_capitalized_identifiers(self):
        """Test that CamelCase identifiers are split."""
        keywords = KnowledgeBase.extract_keywords("Update LoginButton styles")

        assert "loginbutton" in keywords
        assert "login" in keywords
        assert "button" in keywords

    def test_drops_short_tokens_and_punctuation(self):
        """Test that short tokens and punctuation are dropped."""
        keywords = KnowledgeBase.extract_keywords("UI: add an api-client (v2)!")

        assert "ui" not in keywords
        assert "v2" not in keywords
        assert "api-client" in keywords
        assert "add" in keywords

    def test_no_duplicates(self):
        """Test that repeated words appear once."""
        keywords = KnowledgeBase.extract_keywords("login Login LOGIN")
        assert keywords == ["login"]

    def test_empty_text(self):
        """Test extraction from empty text."""
        assert KnowledgeBase.extract_keywords("") == []


class TestPatterns:
    """Tests for pattern storage and lookup."""

    def test_empty_knowledge_base(self, kb):
        """Test an empty knowledge base."""
        assert kb.get_all_patterns() == []
        assert kb.search_by_keywords(["login"]) == []
        assert kb.get_pattern("missing") is None

    def test_add_and_get(self, kb):
        """Test adding and reading back a pattern."""
        pattern = make_pattern("ENG-1", "Fix login", ["fix", "login"])
        kb.add_pattern(pattern)

        loaded = kb.get_pattern(pattern.id)
        assert loaded is not None
        assert loaded.input.item_id == "ENG-1"
        assert kb.index.keywords["login"] == [pattern.id]

    def test_persists_across_instances(self, kb_dir):
        """Test that patterns survive a new instance."""
        first = KnowledgeBase(kb_dir)
        pattern = make_pattern("ENG-1", "Fix login", ["login"])
        first.add_pattern(pattern)

        second = KnowledgeBase(kb_dir)
        assert [p.id for p in second.get_all_patterns()] == [pattern.id]
        assert second.search_by_keywords(["login"])[0].id == pattern.id

    def test_update_pattern(self, kb):
        """Test that an update supersedes the earlier record."""
        pattern = make_pattern("ENG-1", "Fix login", ["login"])
        kb.add_pattern(pattern)

        pattern.outcomes.files_actual = ["src/login.ts"]
        assert kb.update_pattern(pattern) is True

        assert kb.get_pattern(pattern.id).outcomes.files_actual == ["src/login.ts"]
        assert len(kb.get_all_patterns()) == 1

    def test_update_missing_pattern(self, kb):
        """Test updating a pattern that does not exist."""
        assert kb.update_pattern(make_pattern("ENG-9", "Nothing", [])) is False

    def test_malformed_log_raises(self, kb_dir):
        """Test that a malformed log line raises."""
        kb_dir.mkdir(parents=True)
        (kb_dir / PATTERNS_FILE).write_text('{"id": "p1"\n')

        with pytest.raises(RecordParseError) as exc_info:
            KnowledgeBase(kb_dir)
        assert exc_info.value.line == 1

    def test_structurally_invalid_record_raises(self, kb_dir):
        """Test that a record with missing fields raises."""
        kb_dir.mkdir(parents=True)
        (kb_dir / PATTERNS_FILE).write_text(json.dumps({"id": "p1"}) + "\n")
        (kb_dir / "index.json").write_text("{}")

        kb = KnowledgeBase(kb_dir)
        with pytest.raises(RecordParseError):
            kb.get_all_patterns()


class TestSearch:
    """Tests for keyword search and the inverted index."""

    def test_ranked_by_matches(self, kb):
        """Test that search ranks by keyword matches."""
        one = make_pattern("ENG-1", "Login", ["login"])
        two = make_pattern("ENG-2", "Login button", ["login", "button"])
        kb.add_pattern(one)
        kb.add_pattern(two)

        results = kb.score_patterns(["login", "button"])
        assert results == [(two.id, 2), (one.id, 1)]

    def test_ties_keep_insertion_order(self, kb):
        """Test that ties keep insertion order."""
        patterns = [make_pattern(f"ENG-{i}", "Login", ["login"]) for i in range(4)]
        for pattern in patterns:
            kb.add_pattern(pattern)

        results = kb.search_by_keywords(["login"], k=3)
        assert [p.id for p in results] == [p.id for p in patterns[:3]]

    def test_rebuild_matches_incremental_index(self, kb):
        """Test that a rebuilt index equals the incremental one."""
        specs = [
            ("ENG-1", ["login", "button"]),
            ("ENG-2", ["api", "login"]),
            ("ENG-3", ["button", "modal", "api"]),
            ("ENG-4", ["settings"]),
        ]
        for item_id, keywords in specs:
            kb.add_pattern(make_pattern(item_id, item_id, keywords))

        queries = [["login"], ["button", "api"], ["modal", "login", "settings"]]
        before = [kb.score_patterns(q, k=10) for q in queries]
        incremental_keywords = dict(kb.index.keywords)

        kb.rebuild_index()

        assert kb.index.keywords == incremental_keywords
        assert [kb.score_patterns(q, k=10) for q in queries] == before

    def test_rebuild_indexes_actual_files(self, kb):
        """Test that a rebuild indexes actual files."""
        pattern = make_pattern("ENG-1", "Login", ["login"], files_actual=["src/login.ts"])
        kb.add_pattern(pattern)
        assert kb.index.files == {}

        kb.rebuild_index()
        assert kb.index.files == {"src/login.ts": [pattern.id]}

    def test_index_rebuilt_when_missing(self, kb_dir):
        """Test that a missing index is rebuilt on load."""
        kb = KnowledgeBase(kb_dir)
        pattern = make_pattern("ENG-1", "Login", ["login"])
        kb.add_pattern(pattern)
        kb.index_file.unlink()

        reopened = KnowledgeBase(kb_dir)
        assert reopened.index.keywords["login"] == [pattern.id]

    def test_find_similar_patterns(self, kb):
        """Test similar pattern lookup by title."""
        pattern = make_pattern("ENG-1", "Fix login button", ["fix", "login", "button"])
        kb.add_pattern(pattern)

        similar = kb.find_similar_patterns("Login button is misaligned")
        assert [p.id for p in similar] == [pattern.id]


class TestFileAssociations:
    """Tests for learned keyword -> file associations."""

    def test_update_creates_and_increments(self, kb):
        """Test creating and incrementing an association."""
        kb.update_file_association("login", "src/login.ts")
        kb.update_file_association("login", "src/login.ts")

        assoc = kb.get_file_associations()[0]
        assert assoc.keyword == "login"
        assert assoc.files[0].frequency == 2
        assert assoc.files[0].last_seen == NOW.isoformat()

    def test_recency_decay_orders_predictions(self, kb):
        """Test that recent associations rank higher."""
        recent = (NOW - timedelta(days=5)).isoformat()
        old = (NOW - timedelta(days=200)).isoformat()
        for _ in range(10):
            kb.update_file_association("login", "src/old.ts", seen_at=old)
            kb.update_file_association("login", "src/recent.ts", seen_at=recent)

        assert kb.predict_files_from_keywords(["login"]) == ["src/recent.ts", "src/old.ts"]

    def test_threshold_drops_weak_files(self, kb):
        """Test that weak associations are dropped."""
        ancient = (NOW - timedelta(days=900)).isoformat()
        kb.update_file_association("login", "src/ancient.ts", seen_at=ancient)
        kb.update_file_association("login", "src/fresh.ts")

        assert kb.predict_files_from_keywords(["login"]) == ["src/fresh.ts"]

    def test_scores_sum_across_keywords(self, kb):
        """Test that scores add up across keywords."""
        kb.update_file_associations(["login"], ["src/a.ts", "src/b.ts"])
        kb.update_file_associations(["button"], ["src/b.ts"])

        assert kb.predict_files_from_keywords(["login", "button"])[0] == "src/b.ts"

    def test_unknown_keyword(self, kb):
        """Test prediction for an unknown keyword."""
        assert kb.predict_files_from_keywords(["nothing"]) == []


class TestConflictPairs:
    """Tests for co-modification and conflict tracking."""

    def test_conflict_risk_one_third(self, kb):
        """Test conflict risk after three co-modifications and one conflict."""
        for _ in range(3):
            kb.record_co_modification(["a.ts", "b.ts"])
        kb.record_conflict("a.ts", "b.ts")

        assert kb.get_conflict_risk("a.ts", "b.ts") == pytest.approx(1 / 3)
        assert kb.get_conflict_risk("b.ts", "a.ts") == kb.get_conflict_risk("a.ts", "b.ts")

    def test_unobserved_pair(self, kb):
        """Test risk for a pair never seen."""
        assert kb.get_conflict_risk("x.ts", "y.ts") == 0.0

    def test_conflict_without_co_modification(self, kb):
        """Test a conflict recorded without co-modifications."""
        kb.record_conflict("b.ts", "a.ts")

        pair = kb.get_conflict_pairs()[0]
        assert (pair.file_a, pair.file_b) == ("a.ts", "b.ts")
        assert pair.conflict_count == 1
        assert kb.get_conflict_risk("a.ts", "b.ts") == 0.0

    def test_co_modification_covers_every_pair(self, kb):
        """Test that every pair of a change set is counted."""
        kb.record_co_modification(["a.ts", "b.ts", "c.ts"])

        keys = {(p.file_a, p.file_b) for p in kb.get_conflict_pairs()}
        assert keys == {("a.ts", "b.ts"), ("a.ts", "c.ts"), ("b.ts", "c.ts")}

    def test_single_file_is_ignored(self, kb):
        """Test that a single file records no pair."""
        kb.record_co_modification(["a.ts"])
        assert kb.get_conflict_pairs() == []


class TestColdStart:
    """Tests for heuristic predictions."""

    def test_fix_login_button(self, kb):
        """Test cold-start globs for a simple title."""
        prediction = kb.cold_start_prediction("Fix login button", "")

        assert "**/components/**/*Button*" in prediction.files
        assert prediction.complexity == "low"
        assert prediction.time_minutes == 30

    def test_high_complexity_signal_wins(self, kb):
        """Test that a high complexity signal wins."""
        assert kb.estimate_complexity_from_title("Refactor and fix auth") == "high"

    def test_default_medium(self, kb):
        """Test the medium complexity default."""
        prediction = kb.cold_start_prediction("Dark mode", "")
        assert prediction.complexity == "medium"
        assert prediction.time_minutes == 120
        assert prediction.files == []


class TestMetrics:
    """Tests for learning metrics and stats."""

    def _scored(self, item_id, precision, recall, confidence, swarm_id="swarm-1"):
        pattern = make_pattern(item_id, item_id, [item_id.lower()], swarm_id=swarm_id)
        pattern.predictions.confidence = confidence
        pattern.outcomes.recorded_at = NOW.isoformat()
        pattern.scores = PatternScores(
            file_precision=precision,
            file_recall=recall,
            time_accuracy=0.5,
            conflict_prediction_hit=True,
        )
        return pattern

    def test_empty_metrics(self, kb):
        """Test metrics with no patterns."""
        metrics = kb.update_metrics()

        assert metrics.total_patterns == 0
        assert metrics.accuracy == []
        assert metrics.improvement_rate == 0.0

    def test_split_by_confidence(self, kb):
        """Test cold-start and learned accuracy split by confidence."""
        kb.add_pattern(self._scored("ENG-1", 0.4, 0.5, Confidence.COLD_START.value))
        kb.add_pattern(self._scored("ENG-2", 0.6, 0.7, Confidence.MEDIUM.value))
        kb.add_pattern(make_pattern("ENG-3", "Unscored", ["unscored"], swarm_id="swarm-2"))

        metrics = kb.update_metrics()

        assert metrics.total_patterns == 3
        assert metrics.total_swarm_runs == 2
        assert metrics.cold_start_accuracy.file_precision == pytest.approx(0.4)
        assert metrics.learned_accuracy.file_precision == pytest.approx(0.6)
        assert metrics.improvement_rate == pytest.approx(0.5)
        assert metrics.accuracy[-1].file_precision == pytest.approx(0.5)
        assert metrics.accuracy[-1].conflict_prediction_accuracy == pytest.approx(1.0)

    def test_accuracy_history_accumulates(self, kb):
        """Test that each update appends a snapshot."""
        kb.add_pattern(self._scored("ENG-1", 0.4, 0.5, Confidence.COLD_START.value))
        kb.update_metrics()
        kb.update_metrics()

        assert len(kb.get_metrics().accuracy) == 2

    def test_accuracy_history_is_capped(self, kb):
        """Test that only the newest snapshots are kept."""
        kb.add_pattern(self._scored("ENG-1", 0.4, 0.5, Confidence.COLD_START.value))
        for _ in range(MAX_ACCURACY_HISTORY + 5):
            metrics = kb.update_metrics()

        assert len(metrics.accuracy) == MAX_ACCURACY_HISTORY
        assert len(kb.get_metrics().accuracy) == MAX_ACCURACY_HISTORY

    def test_stats(self, kb):
        """Test knowledge base statistics."""
        kb.add_pattern(self._scored("ENG-1", 0.5, 1.0, Confidence.COLD_START.value))
        kb.update_file_association("login", "src/login.ts")
        kb.record_co_modification(["a.ts", "b.ts"])
        kb.update_metrics()

        stats = kb.get_stats()
        assert stats.total_patterns == 1
        assert stats.total_file_associations == 1
        assert stats.total_conflict_pairs == 1
        assert stats.avg_precision == pytest.approx(0.5)
        assert stats.avg_recall == pytest.approx(1.0)
        assert stats.top_keywords == [("eng-1", 1)]


class TestCompact:
    """Tests for log compaction."""

    def test_drops_superseded_records(self, kb):
        """Test that compaction keeps only the latest records."""
        pattern = make_pattern("ENG-1", "Login", ["login"])
        kb.add_pattern(pattern)
        # simulate a second writer appending a newer copy of the same record
        with open(kb.patterns_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(pattern.to_dict()) + "\n")

        dropped = kb.compact()

        assert dropped[PATTERNS_FILE] == 1
        assert len(kb.get_all_patterns()) == 1


class TestGitBootstrap:
    """Tests for seeding the knowledge base from git history."""

    @pytest.fixture
    def repo_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            repo_dir = Path(tmpdir)
            subprocess.run(["git", "init"], cwd=repo_dir, capture_output=True)
            subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=repo_dir, capture_output=True)
            subprocess.run(["git", "config", "user.name", "Test User"], cwd=repo_dir, capture_output=True)

            commits = [
                ("Add login button", {"src/LoginButton.tsx": "a", "src/login.ts": "a"}),
                ("Update lockfile", {"package-lock.json": "{}"}),
                ("Fix login redirect", {"src/login.ts": "b", "src/router.ts": "b"}),
            ]
            for message, files in commits:
                for name, content in files.items():
                    path = repo_dir / name
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_text(content)
                subprocess.run(["git", "add", "."], cwd=repo_dir, capture_output=True)
                subprocess.run(["git", "commit", "-m", message], cwd=repo_dir, capture_output=True)
            yield repo_dir

    def test_learns_associations_and_pairs(self, kb, repo_dir):
        """Test associations and pairs learned from commits."""
        learned = kb.cold_start_from_git_history(
            GitRepo(repo_dir),
            max_commits=10,
            exclude_patterns=["package-lock.json"],
        )

        assert learned == 2
        assert kb.predict_files_from_keywords(["login"])[0] == "src/login.ts"
        pairs = {(p.file_a, p.file_b): p.co_modification_count for p in kb.get_conflict_pairs()}
        assert pairs[("src/LoginButton.tsx", "src/login.ts")] == 1
        assert pairs[("src/login.ts", "src/router.ts")] == 1
        assert kb.metrics_file.exists()

    def test_min_files_changed(self, kb, repo_dir):
        """Test that small commits are skipped."""
        learned = kb.cold_start_from_git_history(GitRepo(repo_dir), max_commits=10, min_files_changed=2)
        assert learned == 2


class TestIsExcluded:
    """Tests for excluded paths."""

    def test_patterns(self):
        """Test the exclusion patterns."""
        patterns = ["dist/", "*.lock", "package-lock.json"]
        assert is_excluded("dist/index.js", patterns)
        assert is_excluded("yarn.lock", patterns)
        assert is_excluded("package-lock.json", patterns)
        assert not is_excluded("src/dist.ts", patterns)
