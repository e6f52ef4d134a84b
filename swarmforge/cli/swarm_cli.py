#!/usr/bin/env python3
"""
Swarm CLI
=========

Command-line interface for planning, running and merging agent swarms.

Usage:
    swarm init
    swarm bootstrap [--max-commits N]
    swarm suggest [--items-file PATH] [--max-batch-size N] [--num-batches N]
    swarm predict ITEM_ID [--title TEXT]
    swarm start ITEM_ID [ITEM_ID ...] [--items-file PATH]
    swarm monitor | swarm status
    swarm merge
    swarm stats
    swarm clean
    swarm worker {start,plan,execute,progress,complete,fail}

Items come from Linear when LINEAR_API_KEY is set, or from a local JSON file
passed with --items-file. Settings in a .env file are loaded on startup.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.markup import escape

from swarmforge.compatibility import CompatibilityEngine, SuggestOptions, print_batches
from swarmforge.config import ConfigError, SwarmConfig, SwarmPaths, ensure_swarm_dir, load_config, save_config
from swarmforge.git_ops import GitError, GitRepo, InvalidIdentifierError
from swarmforge.heuristics import DEFAULT_BOOTSTRAP_EXCLUDES
from swarmforge.jsonl import RecordParseError
from swarmforge.knowledge_base import KnowledgeBase
from swarmforge.models import Item
from swarmforge.orchestrator import OrchestratorError, create_orchestrator
from swarmforge.output import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_list,
    print_muted,
    print_success,
    print_table,
    print_warning,
    risk_text,
    setup_rich_logging,
    spinner,
)
from swarmforge.swarm_state import DEFAULT_REVIEW_STATUS, WorkerResult
from swarmforge.tracker import JsonFileTracker, LinearTracker
from swarmforge.worker import SwarmWorker


def get_paths(args) -> SwarmPaths:
    """Project and swarm directories from args."""
    return SwarmPaths.for_project(args.project_dir, args.swarm_dir)


def get_tracker(args):
    """The items file if one was given, else Linear when configured, else None."""
    items_file = getattr(args, "items_file", None)
    if items_file:
        return JsonFileTracker(Path(items_file))
    if os.environ.get("LINEAR_API_KEY"):
        return LinearTracker.from_env()
    return None


def get_knowledge_base(paths: SwarmPaths, config: SwarmConfig) -> KnowledgeBase:
    return KnowledgeBase(
        paths.kb_dir,
        heuristics=config.heuristics(),
        decay_days=config.learning.decay_days,
    )


# =============================================================================
# Setup
# =============================================================================

def cmd_init(args):
    """Write the default config and create the swarm directories."""
    paths = get_paths(args)
    if not GitRepo(paths.project_dir).is_repo():
        print_error(f"{paths.project_dir} is not a git repository")
        return 1

    if paths.config_file.exists() and not args.force:
        print_warning(f"Config already exists: {paths.config_file} (use --force to overwrite)")
    else:
        save_config(paths, SwarmConfig())
        print_success(f"Wrote {paths.config_file}")

    ensure_swarm_dir(paths.swarm_dir)
    for directory in (paths.kb_dir, paths.logs_dir):
        directory.mkdir(parents=True, exist_ok=True)

    print_muted("Next: swarm bootstrap   (learn from git history)")
    return 0


def cmd_bootstrap(args):
    """Seed the knowledge base from git history."""
    paths = get_paths(args)
    config = load_config(paths)
    if not config.cold_start.bootstrap_from_git:
        print_warning("Git bootstrap is disabled (cold_start.bootstrap_from_git = false)")
        return 0

    kb = get_knowledge_base(paths, config)
    max_commits = args.max_commits or config.cold_start.max_commits_to_analyze
    with spinner(f"Analyzing last {max_commits} commits..."):
        learned = kb.cold_start_from_git_history(
            GitRepo(paths.project_dir),
            max_commits=max_commits,
            exclude_patterns=DEFAULT_BOOTSTRAP_EXCLUDES,
        )

    stats = kb.get_stats()
    print_success(f"Learned from {learned} commits")
    print_key_value_table({
        "File associations": stats.total_file_associations,
        "Conflict pairs": stats.total_conflict_pairs,
    })
    return 0


# =============================================================================
# Planning
# =============================================================================

def cmd_suggest(args):
    """Suggest compatible batches from the backlog."""
    paths = get_paths(args)
    config = load_config(paths)
    tracker = get_tracker(args)
    if tracker is None:
        print_error("No items source: set LINEAR_API_KEY or pass --items-file")
        return 1

    with spinner("Fetching backlog..."):
        items = tracker.fetch_backlog(limit=args.limit)
    if not items:
        print_warning("No backlog items found")
        return 0

    engine = CompatibilityEngine(
        get_knowledge_base(paths, config),
        current_user_id=os.environ.get("LINEAR_USER_ID"),
    )
    options = SuggestOptions(
        max_batch_size=args.max_batch_size,
        num_batches=args.num_batches,
        min_compatibility=args.min_compatibility,
    )
    batches = engine.suggest_batches(items, options)

    print_header(f"SUGGESTED BATCHES ({len(items)} items)")
    print_batches(batches, engine.current_user_id)
    return 0


def cmd_predict(args):
    """Predict files, complexity and risk for one item."""
    paths = get_paths(args)
    config = load_config(paths)

    item = None
    tracker = get_tracker(args)
    if tracker is not None:
        fetched = tracker.fetch_items([args.item_id])
        item = fetched[0] if fetched else None
    if item is None:
        item = Item(id=args.item_id, title=args.title or args.item_id, description=args.description or "")

    report = CompatibilityEngine(get_knowledge_base(paths, config)).predict_item(item)

    print_header(f"PREDICTION: {item.id}")
    print_key_value_table({
        "Title": item.title,
        "Confidence": report.confidence,
        "Complexity": report.complexity,
        "Estimated time": f"{report.time_minutes} min",
        "Conflict risk": f"{report.conflict_risk * 100:.0f}%",
    })
    if report.predicted_files:
        console.print("[sw.accent]Predicted files:[/]")
        print_list(report.predicted_files)
    for warning in report.warnings:
        print_warning(warning)
    return 0


# =============================================================================
# Swarm run
# =============================================================================

def cmd_start(args):
    """Analyze, plan and prepare worktrees for the given items."""
    orchestrator = create_orchestrator(args.project_dir, tracker=get_tracker(args), swarm_dir=args.swarm_dir)
    state = orchestrator.start(args.item_ids)
    if not state.workers:
        print_error("No worker could be prepared")
        return 1
    return 0


def cmd_monitor(args):
    """Show worker status and mark stalled workers."""
    orchestrator = create_orchestrator(args.project_dir, swarm_dir=args.swarm_dir)
    orchestrator.monitor()
    return 0


def cmd_merge(args):
    """Merge completed worker branches."""
    orchestrator = create_orchestrator(args.project_dir, tracker=get_tracker(args), swarm_dir=args.swarm_dir)
    report = orchestrator.merge()
    return 0 if report.status == "completed" else 1


def cmd_clean(args):
    """Remove run state, pending conflicts and worktrees."""
    orchestrator = create_orchestrator(args.project_dir, swarm_dir=args.swarm_dir)
    removed = orchestrator.clean()
    for path in removed:
        print_muted(f"  Removed {path}")
    print_success("Swarm state cleaned (knowledge base and config kept)")
    return 0


def cmd_stats(args):
    """Show knowledge base statistics."""
    paths = get_paths(args)
    kb = get_knowledge_base(paths, load_config(paths))
    stats = kb.get_stats()

    print_header("KNOWLEDGE BASE")
    print_key_value_table({
        "Patterns": stats.total_patterns,
        "Swarm runs": stats.total_swarm_runs,
        "File associations": stats.total_file_associations,
        "Conflict pairs": stats.total_conflict_pairs,
        "Avg precision": f"{stats.avg_precision * 100:.1f}%",
        "Avg recall": f"{stats.avg_recall * 100:.1f}%",
        "Improvement": f"{stats.improvement_rate * 100:+.1f}%",
        "Last updated": stats.last_updated or "-",
    })

    if stats.top_keywords:
        table = create_table(title="Top keywords", columns=["Keyword", "Patterns"])
        for keyword, count in stats.top_keywords:
            table.add_row(keyword, str(count))
        print_table(table)

    if stats.accuracy:
        table = create_table(title="Accuracy history", columns=["Date", "Precision", "Recall", "Time", "Conflicts"])
        for snapshot in stats.accuracy[-10:]:
            table.add_row(
                snapshot.date[:19],
                f"{snapshot.file_precision * 100:.0f}%",
                f"{snapshot.file_recall * 100:.0f}%",
                f"{snapshot.time_accuracy * 100:.0f}%",
                f"{snapshot.conflict_prediction_accuracy * 100:.0f}%",
            )
        print_table(table)

    risky = sorted(kb.get_conflict_pairs(), key=lambda p: -p.conflict_rate)[:5]
    risky = [p for p in risky if p.conflict_rate > 0]
    if risky:
        table = create_table(title="Riskiest file pairs", columns=["File A", "File B", "Conflicts", "Risk"])
        for pair in risky:
            level = "high" if pair.conflict_rate > 0.5 else "medium" if pair.conflict_rate > 0.2 else "low"
            table.add_row(pair.file_a, pair.file_b, str(pair.conflict_count), risk_text(level))
        print_table(table)
    return 0


# =============================================================================
# Worker protocol
# =============================================================================

def cmd_worker(args):
    """Report worker status from inside a worktree."""
    worker = SwarmWorker(args.worktree)
    if not worker.is_in_swarm():
        print_error("Not in a swarm worktree (.swarm/worker.json not found)")
        return 1

    action = args.worker_command
    if action == "start":
        worker.start()
        # the CLI process exits right away, so no heartbeat thread outlives it
        worker.stop_heartbeat()
        config = worker.get_config()
        print_success(f"Worker {config.worker_id} started on {config.issue_id} ({config.branch})")
        print_list([escape(step) for step in config.guidance.workflow])
    elif action == "plan":
        worker.start_planning()
        print_info("Status: planning")
    elif action == "execute":
        worker.start_executing(total_steps=args.steps)
        worker.stop_heartbeat()
        print_info(f"Status: executing ({args.steps} steps)")
    elif action == "progress":
        worker.report_progress(args.step, args.completed, args.total)
        print_info(f"Progress {args.completed}/{args.total}: {args.step}")
    elif action == "complete":
        worker.complete(WorkerResult(
            success=True,
            summary=args.summary or "",
            files_changed=list(args.files or []),
            tracker_status=args.status,
        ))
        print_success("Worker marked complete")
    elif action == "fail":
        worker.fail(args.error)
        print_warning(f"Worker marked failed: {args.error}")
    else:
        print_error(f"Unknown worker command: {action}")
        return 1
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="swarm",
        description="Plan, run and merge parallel agent work on one repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Repository root (default: current dir)",
    )
    parser.add_argument(
        "--swarm-dir",
        type=Path,
        default=None,
        help="Swarm state directory (default: <project>/.swarm)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    init_parser = subparsers.add_parser("init", help="Create config and directories")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing config")

    bootstrap_parser = subparsers.add_parser("bootstrap", help="Learn from git history")
    bootstrap_parser.add_argument("--max-commits", type=int, default=None, help="Commits to analyze")

    suggest_parser = subparsers.add_parser("suggest", help="Suggest compatible batches")
    suggest_parser.add_argument("--items-file", help="JSON file with items instead of Linear")
    suggest_parser.add_argument("--limit", type=int, default=50, help="Backlog items to consider")
    suggest_parser.add_argument("--max-batch-size", type=int, default=5)
    suggest_parser.add_argument("--num-batches", type=int, default=3)
    suggest_parser.add_argument("--min-compatibility", type=float, default=0.6)

    predict_parser = subparsers.add_parser("predict", help="Predict one item's footprint")
    predict_parser.add_argument("item_id", help="Item id")
    predict_parser.add_argument("--items-file", help="JSON file with items instead of Linear")
    predict_parser.add_argument("--title", help="Title to use when the item cannot be fetched")
    predict_parser.add_argument("--description", help="Description to use when the item cannot be fetched")

    start_parser = subparsers.add_parser("start", help="Start a swarm for the given items")
    start_parser.add_argument("item_ids", nargs="+", help="Item ids")
    start_parser.add_argument("--items-file", help="JSON file with items instead of Linear")

    subparsers.add_parser("monitor", help="Show swarm status")
    subparsers.add_parser("status", help="Alias for monitor")

    merge_parser = subparsers.add_parser("merge", help="Merge completed workers")
    merge_parser.add_argument("--items-file", help="JSON file whose item states are updated")

    subparsers.add_parser("stats", help="Show knowledge base statistics")
    subparsers.add_parser("clean", help="Remove swarm state and worktrees")

    worker_parser = subparsers.add_parser("worker", help="Worker protocol commands")
    worker_parser.add_argument("--worktree", type=Path, default=None, help="Worktree root (default: current dir)")
    worker_sub = worker_parser.add_subparsers(dest="worker_command", help="Worker action")
    worker_sub.add_parser("start", help="Announce the worker")
    worker_sub.add_parser("plan", help="Mark the worker as planning")
    execute_parser = worker_sub.add_parser("execute", help="Mark the worker as executing")
    execute_parser.add_argument("--steps", type=int, default=1, help="Planned steps")
    progress_parser = worker_sub.add_parser("progress", help="Report progress")
    progress_parser.add_argument("step", help="Current step description")
    progress_parser.add_argument("--completed", type=int, required=True)
    progress_parser.add_argument("--total", type=int, required=True)
    complete_parser = worker_sub.add_parser("complete", help="Mark the worker complete")
    complete_parser.add_argument("--summary", "-m", help="What was done")
    complete_parser.add_argument("--files", nargs="*", help="Files changed")
    complete_parser.add_argument("--status", default=DEFAULT_REVIEW_STATUS, help="Tracker status after merge")
    fail_parser = worker_sub.add_parser("fail", help="Mark the worker failed")
    fail_parser.add_argument("error", help="Failure reason")

    return parser


def main(argv=None):
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return 1
    if args.command == "worker" and not args.worker_command:
        print_error("Missing worker action (start, plan, execute, progress, complete, fail)")
        return 1

    commands = {
        "init": cmd_init,
        "bootstrap": cmd_bootstrap,
        "suggest": cmd_suggest,
        "predict": cmd_predict,
        "start": cmd_start,
        "monitor": cmd_monitor,
        "status": cmd_monitor,
        "merge": cmd_merge,
        "stats": cmd_stats,
        "clean": cmd_clean,
        "worker": cmd_worker,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except (OrchestratorError, ConfigError, RecordParseError, InvalidIdentifierError, GitError) as e:
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
