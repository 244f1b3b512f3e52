"""Command line interface for the affinity ledger."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from .bootstrap import bootstrap_pipeline
from .services.pipeline import PipelineResult


def _context(args):
    return bootstrap_pipeline(
        Path(args.base_dir) if args.base_dir else None, start_background=False
    )


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _emit(ctx, result: PipelineResult) -> int:
    _print(result.payload if result.ok else {"error": result.error, "code": result.code})
    ctx.shutdown()
    return 0 if result.ok else 1


def cmd_runserver(args):
    from .app import create_app

    app = create_app()
    app.run(host=args.host, port=args.port)
    return 0


def cmd_append_event(args):
    ctx = _context(args)
    try:
        metadata = json.loads(args.metadata) if args.metadata else {}
    except json.JSONDecodeError as exc:
        ctx.shutdown()
        _print({"error": f"metadata is not valid JSON: {exc}"})
        return 1
    payload = {
        "user_id": args.user,
        "event_type": args.type,
        "metadata": metadata,
        "timestamp": args.timestamp,
        "source": args.source,
        "recency_factor": args.recency,
        "dedupe_key": args.dedupe_key,
    }
    return _emit(ctx, ctx.pipeline.append_event(payload))


def cmd_run_batch(args):
    ctx = _context(args)
    return _emit(ctx, ctx.pipeline.run_batch(args.max_events))


def cmd_profile(args):
    ctx = _context(args)
    return _emit(ctx, ctx.pipeline.get_profile(args.user))


def cmd_leaderboard(args):
    ctx = _context(args)
    return _emit(ctx, ctx.pipeline.get_leaderboard(args.category, args.window, args.limit))


def cmd_strength(args):
    ctx = _context(args)
    if args.breakdown:
        result = ctx.pipeline.get_mutation_breakdown(
            args.entity, category=args.category, window_days=args.window_days
        )
    else:
        result = ctx.pipeline.get_domain_strength(args.entity, args.category or "engagement")
    return _emit(ctx, result)


def cmd_stats(args):
    ctx = _context(args)
    return _emit(ctx, ctx.pipeline.stats())


def cmd_rebuild(args):
    ctx = _context(args)
    return _emit(ctx, ctx.pipeline.rebuild_aggregates())


def cmd_reset_failed(args):
    ctx = _context(args)
    return _emit(ctx, ctx.pipeline.reset_failed())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Affinity ledger CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    runserver = sub.add_parser("runserver", help="Start HTTP server")
    runserver.add_argument("--host", default="0.0.0.0")
    runserver.add_argument("--port", type=int, default=8060)
    runserver.set_defaults(func=cmd_runserver)

    append = sub.add_parser("append-event", help="Append an interaction event")
    append.add_argument("--user", required=True)
    append.add_argument("--type", required=True)
    append.add_argument("--metadata", help="JSON object with event metadata")
    append.add_argument("--timestamp")
    append.add_argument("--source", default="api")
    append.add_argument("--recency", type=float)
    append.add_argument("--dedupe-key")
    append.add_argument("--base-dir")
    append.set_defaults(func=cmd_append_event)

    run = sub.add_parser("run-batch", help="Process pending events once")
    run.add_argument("--max-events", type=int)
    run.add_argument("--base-dir")
    run.set_defaults(func=cmd_run_batch)

    profile = sub.add_parser("profile", help="Show a user's affinity profile")
    profile.add_argument("--user", required=True)
    profile.add_argument("--base-dir")
    profile.set_defaults(func=cmd_profile)

    board = sub.add_parser("leaderboard", help="Show a leaderboard")
    board.add_argument("--category", required=True)
    board.add_argument("--window", default="alltime")
    board.add_argument("--limit", type=int, default=10)
    board.add_argument("--base-dir")
    board.set_defaults(func=cmd_leaderboard)

    strength = sub.add_parser("strength", help="Show an entity's domain strength")
    strength.add_argument("--entity", required=True)
    strength.add_argument("--category")
    strength.add_argument("--breakdown", action="store_true")
    strength.add_argument("--window-days", type=float)
    strength.add_argument("--base-dir")
    strength.set_defaults(func=cmd_strength)

    stats = sub.add_parser("stats", help="Show processing stats")
    stats.add_argument("--base-dir")
    stats.set_defaults(func=cmd_stats)

    rebuild = sub.add_parser("rebuild", help="Recompute all aggregates from the ledger")
    rebuild.add_argument("--base-dir")
    rebuild.set_defaults(func=cmd_rebuild)

    reset = sub.add_parser("reset-failed", help="Re-queue permanently failed events")
    reset.add_argument("--base-dir")
    reset.set_defaults(func=cmd_reset_failed)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
