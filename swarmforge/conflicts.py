"""
Merge Conflict Capture
======================

Extracts conflict blocks from files left with git conflict markers and
packages them into ``pending-conflicts.json`` so they can be resolved
outside the orchestrator.

    <<<<<<< HEAD
    ours
    =======
    theirs
    >>>>>>> swarm/eng-102

Line numbers are 1-based and span the marker lines.
"""

import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from swarmforge.jsonl import read_json, write_json
from swarmforge.models import utc_now


logger = logging.getLogger(__name__)

OURS_MARKER = "<<<<<<<"
SEPARATOR_MARKER = "======="
THEIRS_MARKER = ">>>>>>>"


@dataclass
class ConflictBlock:
    ours: str
    theirs: str
    start_line: int
    end_line: int


@dataclass
class ConflictInfo:
    """All conflict blocks found in one file."""
    file: str
    content: str
    ours_label: str = "HEAD"
    theirs_label: str = "incoming"
    conflict_blocks: list[ConflictBlock] = field(default_factory=list)


@dataclass
class PendingConflicts:
    """The unresolved merge that halted the merge phase."""
    swarm_id: str
    branch: str
    issue_id: str
    issue_description: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)
    conflicts: list[ConflictInfo] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingConflicts":
        conflicts = []
        for raw in data.get("conflicts", []):
            raw = dict(raw)
            blocks = [ConflictBlock(**b) for b in raw.pop("conflict_blocks", [])]
            conflicts.append(ConflictInfo(conflict_blocks=blocks, **raw))
        return cls(
            swarm_id=data["swarm_id"],
            branch=data["branch"],
            issue_id=data["issue_id"],
            issue_description=data.get("issue_description"),
            timestamp=data.get("timestamp") or utc_now(),
            conflicts=conflicts,
        )

    @property
    def files(self) -> list[str]:
        return [c.file for c in self.conflicts]


def parse_conflict_markers(file: str, content: str) -> Optional[ConflictInfo]:
    """
    Split text containing conflict markers into ours/theirs blocks.

    Returns:
        ConflictInfo, or None if the text holds no complete conflict block
    """
    blocks = []
    ours_label, theirs_label = "HEAD", "incoming"
    in_conflict = in_ours = False
    ours: list[str] = []
    theirs: list[str] = []
    start_line = 0

    for line_no, line in enumerate(content.split("\n"), 1):
        if line.startswith(OURS_MARKER):
            in_conflict = in_ours = True
            ours_label = line[len(OURS_MARKER):].strip() or "HEAD"
            ours, theirs = [], []
            start_line = line_no
        elif line.startswith(SEPARATOR_MARKER) and in_conflict:
            in_ours = False
        elif line.startswith(THEIRS_MARKER) and in_conflict:
            theirs_label = line[len(THEIRS_MARKER):].strip() or "incoming"
            blocks.append(ConflictBlock(
                ours="\n".join(ours),
                theirs="\n".join(theirs),
                start_line=start_line,
                end_line=line_no,
            ))
            in_conflict = False
        elif in_conflict:
            (ours if in_ours else theirs).append(line)

    if not blocks:
        return None

    return ConflictInfo(
        file=file,
        content=content,
        ours_label=ours_label,
        theirs_label=theirs_label,
        conflict_blocks=blocks,
    )


def analyze_conflict_file(repo_dir: Path, file: str) -> ConflictInfo:
    """
    Read a conflicted file from the working tree and parse its markers.

    Unmerged paths without markers (modify/delete, binary files) still get an
    entry with no blocks and whatever content the working tree holds.
    """
    path = Path(repo_dir) / file
    content = ""
    if path.exists():
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read conflicted file %s: %s", file, e)
    return parse_conflict_markers(file, content) or ConflictInfo(file=file, content=content)


class ConflictStore:
    """Reads and writes the pending-conflicts document."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, pending: PendingConflicts) -> Path:
        write_json(self.path, pending.to_dict())
        return self.path

    def load(self) -> Optional[PendingConflicts]:
        data = read_json(self.path)
        return PendingConflicts.from_dict(data) if data else None

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
