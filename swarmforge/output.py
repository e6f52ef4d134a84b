"""
Rich Output Utilities
=====================

Terminal output for the swarm CLI using the Rich library.
Provides the themed console, message helpers, tables, panels and the
renderers for workers, batches and conflicts.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class SwarmColors:
    """Swarm color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    hive: str = "#F59E0B"      # warm accent
    cell: str = "#22D3EE"      # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"
    warn: str = "#FBBF24"
    err: str = "#EF4444"


def swarm_theme(colors: SwarmColors = SwarmColors()) -> Theme:
    """
    Rich Theme for the swarm CLI.

    Style names are semantic:
      console.print("...", style="sw.ok")
    """
    return Theme(
        {
            "sw.border": f"{colors.cell}",
            "sw.accent": f"bold {colors.hive}",
            "sw.muted": f"{colors.dim}",
            "sw.text": f"{colors.ink}",

            "sw.ok": f"bold {colors.ok}",
            "sw.warn": f"bold {colors.warn}",
            "sw.err": f"bold {colors.err}",
            "sw.info": f"{colors.cell}",

            "sw.key": f"{colors.steel}",
            "sw.value": f"{colors.ink}",
            "sw.number": f"bold {colors.hive}",

            "sw.table.header": f"bold {colors.cell}",

            # Worker / risk indicators
            "sw.status.completed": f"bold {colors.ok}",
            "sw.status.failed": f"bold {colors.err}",
            "sw.status.timeout": f"bold {colors.err}",
            "sw.status.executing": f"bold {colors.hive}",
            "sw.status.pending": f"{colors.warn}",
            "sw.risk.low": f"{colors.ok}",
            "sw.risk.medium": f"{colors.warn}",
            "sw.risk.high": f"{colors.err}",
            "sw.risk.none": f"{colors.dim}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "bar_filled": "█",
    "bar_empty": "░",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "*",
    "arrow_right": "->",
    "bar_filled": "#",
    "bar_empty": "-",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=swarm_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[sw.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[sw.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    console.print(f"[sw.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[sw.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[sw.muted]{message}[/]")


# =============================================================================
# Headers & Data Display
# =============================================================================

def print_header(title: str, style: str = "sw.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "sw.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="sw.key")
    table.add_column("Value", style="sw.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def print_list(
    items: Sequence[str],
    *,
    numbered: bool = False,
    style: str = "sw.text",
    bullet_style: str = "sw.accent",
) -> None:
    """Print a bulleted or numbered list."""
    for i, item in enumerate(items, 1):
        if numbered:
            console.print(f"  [{bullet_style}]{i}.[/] [{style}]{item}[/]")
        else:
            console.print(f"  [{bullet_style}]{icon('bullet')}[/] [{style}]{item}[/]")


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "sw.border",
    header_style: str = "sw.table.header",
) -> Table:
    """Create a styled Rich Table with the swarm theme."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="sw.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    console.print(table)


def print_panel(
    content: Union[str, Text],
    *,
    title: Optional[str] = None,
    subtitle: Optional[str] = None,
    border_style: str = "sw.border",
    padding: tuple = (1, 2),
) -> None:
    """Print content in a styled panel."""
    console.print(Panel(
        content,
        title=f"[bold]{title}[/]" if title else None,
        subtitle=f"[sw.muted]{subtitle}[/]" if subtitle else None,
        border_style=border_style,
        padding=padding,
    ))


def progress_bar(completed: int, total: int, width: int = 20) -> str:
    """Inline progress bar markup for table cells."""
    if total <= 0:
        return "[sw.muted]-[/]"
    filled = int(width * min(completed, total) / total)
    return (
        f"[sw.ok]{icon('bar_filled') * filled}[/]"
        f"[sw.muted]{icon('bar_empty') * (width - filled)}[/] "
        f"[sw.number]{completed}[/][sw.muted]/{total}[/]"
    )


def risk_text(level: str) -> str:
    """Colorize a none/low/medium/high risk label."""
    return f"[sw.risk.{level}]{level}[/]"


def status_text(status: str) -> str:
    """Colorize a worker status."""
    style = f"sw.status.{status}" if status in (
        "completed", "failed", "timeout", "executing", "pending"
    ) else "sw.info"
    return f"[{style}]{status}[/]"


# =============================================================================
# Progress & Spinners
# =============================================================================

@contextmanager
def spinner(message: str, *, style: str = "sw.accent") -> Iterator[Status]:
    """
    Context manager for showing a spinner during long operations.

    Usage:
        with spinner("Analyzing commits..."):
            kb.cold_start_from_git_history(repo)
    """
    with console.status(f"[{style}]{message}[/]", spinner="dots") as status:
        yield status


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging(logging.DEBUG)
        logging.getLogger(__name__).info("Index rebuilt")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
