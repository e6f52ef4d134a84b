"""
Cold Start Heuristics
=====================

Fixed lookup tables used when the knowledge base has nothing learned yet.

- Stop words dropped during keyword extraction
- Keyword -> file glob hints
- Title signals -> complexity tier, tier -> minutes
- Layer keywords used for parallel-safety scoring

Projects can extend ``KEYWORD_TO_GLOB`` and ``LAYER_KEYWORDS`` through
``custom_heuristics`` in config.json (see ``merge_custom_heuristics``).
"""

from typing import Optional


STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "shall", "can", "need",
    "this", "that", "these", "those", "it", "its", "i", "we", "you", "he",
    "she", "they", "them", "their", "our", "your", "my", "me", "him", "her",
    "when", "where", "why", "how", "what", "which", "who", "whom", "whose",
    "if", "then", "else", "so", "because", "although", "while", "since",
    "until", "unless", "not", "no", "yes", "all", "any", "both", "each",
    "few", "more", "most", "other", "some", "such", "only", "own", "same",
})

KEYWORD_TO_GLOB: dict[str, list[str]] = {
    # UI / components
    "button": ["**/components/**/*Button*", "**/ui/**/*Button*"],
    "modal": ["**/components/**/*Modal*", "**/components/**/*Dialog*"],
    "form": ["**/components/**/*Form*", "**/components/forms/**"],
    "table": ["**/components/**/*Table*", "**/components/**/*Grid*"],
    "card": ["**/components/**/*Card*"],
    "chart": ["**/components/**/*Chart*", "**/components/charts/**"],
    "dashboard": ["**/pages/Dashboard*", "**/components/dashboard/**"],

    # Features
    "auth": ["**/auth/**", "**/login/**", "**/hooks/useAuth*"],
    "user": ["**/user/**", "**/users/**", "**/profile/**"],
    "settings": ["**/settings/**", "**/preferences/**"],
    "notification": ["**/notification*/**", "**/hooks/useNotif*"],

    # Technical
    "api": ["**/api/**", "**/services/**", "**/lib/api*"],
    "hook": ["**/hooks/**"],
    "util": ["**/utils/**", "**/lib/**", "**/helpers/**"],
    "type": ["**/types/**", "**/*.d.ts"],
    "test": ["**/*.test.*", "**/*.spec.*", "**/tests/**"],
    "style": ["**/*.css", "**/*.scss", "**/styles/**"],
    "config": ["**/config/**", "**/*.config.*"],

    # Pages / routes
    "page": ["**/pages/**", "**/app/**"],
    "route": ["**/routes/**", "**/router/**"],

    # Database
    "migration": ["**/migrations/**", "**/supabase/migrations/**"],
    "schema": ["**/schema/**", "**/database/**"],
}

# Checked in this order; the first tier with a matching signal wins.
COMPLEXITY_SIGNALS: dict[str, list[str]] = {
    "high": ["refactor", "migrate", "rewrite", "architecture", "breaking", "overhaul", "redesign"],
    "medium": ["feature", "add", "implement", "update", "improve", "enhance", "extend"],
    "low": ["fix", "typo", "docs", "style", "minor", "tweak", "adjust", "rename"],
}

TIME_ESTIMATES: dict[str, int] = {
    "low": 30,
    "medium": 120,
    "high": 480,
}

LAYER_KEYWORDS: dict[str, list[str]] = {
    "ui": ["button", "modal", "form", "table", "card", "chart", "component", "page", "style", "css"],
    "hooks": ["hook", "use", "state", "effect", "context"],
    "api": ["api", "service", "fetch", "request", "endpoint"],
    "database": ["migration", "schema", "table", "column", "index", "trigger"],
    "test": ["test", "spec", "mock", "fixture", "e2e"],
}

DEFAULT_LAYER = "general"

# Numeric encoding used by complexity balance scoring
COMPLEXITY_WEIGHTS: dict[str, int] = {"low": 1, "medium": 5, "high": 10}

PRIORITY_LABELS: dict[int, str] = {
    0: "None",
    1: "Urgent",
    2: "High",
    3: "Medium",
    4: "Low",
}

# Paths skipped when bootstrapping associations from git history
DEFAULT_BOOTSTRAP_EXCLUDES = [
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "*.lock",
    "dist/",
    "build/",
    ".next/",
]


class Heuristics:
    """Bundle of heuristic tables, optionally extended per project."""

    def __init__(
        self,
        keyword_to_glob: Optional[dict[str, list[str]]] = None,
        layer_keywords: Optional[dict[str, list[str]]] = None,
    ):
        self.keyword_to_glob = dict(keyword_to_glob or KEYWORD_TO_GLOB)
        self.layer_keywords = dict(layer_keywords or LAYER_KEYWORDS)
        self.complexity_signals = COMPLEXITY_SIGNALS
        self.time_estimates = TIME_ESTIMATES

    def globs_for(self, keyword: str) -> list[str]:
        return self.keyword_to_glob.get(keyword.lower(), [])

    def minutes_for(self, complexity: str) -> int:
        return self.time_estimates[complexity]


def merge_custom_heuristics(custom: Optional[dict]) -> Heuristics:
    """
    Build a Heuristics instance with project overrides merged on top.

    Args:
        custom: The ``custom_heuristics`` section of config.json, may be None.
            Keys present in the custom tables replace the default entries.
    """
    if not custom:
        return Heuristics()

    keyword_to_glob = dict(KEYWORD_TO_GLOB)
    keyword_to_glob.update(custom.get("keyword_to_glob") or {})

    layer_keywords = dict(LAYER_KEYWORDS)
    layer_keywords.update(custom.get("layer_keywords") or {})

    return Heuristics(keyword_to_glob=keyword_to_glob, layer_keywords=layer_keywords)


DEFAULT_HEURISTICS = Heuristics()


def priority_label(priority: int) -> str:
    """Human readable priority name (P0-P4)."""
    return PRIORITY_LABELS.get(priority, f"P{priority}")
