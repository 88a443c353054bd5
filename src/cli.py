from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from src.config.project import ProjectContext
from src.config.settings import Settings, get_settings
from src.decisions.store import DecisionStore
from src.events.store import EventStore
from src.infra.clock import utc_now
from src.infra.errors import LanekeeperError
from src.infra.logging import setup_logging
from src.lock.advisory import AdvisoryLock
from src.orchestrator.runner import Orchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lanekeeper",
        description="Knowledge event log, advisory lock and orchestration state machine",
    )
    parser.add_argument(
        "--project-root",
        help="Project root directory. Defaults to LANEKEEPER_PROJECT_ROOT or the current directory",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOG_LEVEL",
    )
    parser.add_argument(
        "--console-logs",
        action="store_true",
        help="Human-readable logs on stderr instead of JSON",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    orchestrate_parser = subparsers.add_parser("orchestrate", help="Run one locked orchestrator pass")
    orchestrate_parser.add_argument("--limit", type=int, help="Cap next_action.target_repos")
    orchestrate_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the next action without writing state or follow-ups",
    )

    events_parser = subparsers.add_parser("events", help="Knowledge event log")
    events_sub = events_parser.add_subparsers(dest="events_command", required=True)
    append_parser = events_sub.add_parser("append", help="Append one event from a JSON file")
    append_parser.add_argument("--input", required=True, type=Path)
    since_parser = events_sub.add_parser("since", help="Events strictly after a timestamp")
    since_parser.add_argument("--timestamp")
    events_sub.add_parser("rotate", help="Rotate the active segment if needed")
    compact_parser = events_sub.add_parser("compact", help="Compact segments older than N days")
    compact_parser.add_argument("--days", type=int)
    events_sub.add_parser("status", help="Segment count, counters and last compaction")

    decision_parser = subparsers.add_parser("decision", help="Decision packets")
    decision_sub = decision_parser.add_subparsers(dest="decision_command", required=True)
    list_parser = decision_sub.add_parser("list", help="List decision packets")
    list_parser.add_argument("--open", action="store_true", help="Only open packets")
    answer_parser = decision_sub.add_parser("answer", help="Answer an open decision packet")
    answer_parser.add_argument("--id", required=True, help="DECISION-<id> or <id>")
    answer_parser.add_argument("--input", required=True, type=Path)

    lock_parser = subparsers.add_parser("lock", help="Advisory lock")
    lock_sub = lock_parser.add_subparsers(dest="lock_command", required=True)
    lock_sub.add_parser("status", help="Show the current lock record")

    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _run_events(args: argparse.Namespace, ctx: ProjectContext, settings: Settings, now_fn) -> int:
    store = EventStore(ctx, max_segment_bytes=settings.events.max_segment_bytes, now_fn=now_fn)
    if args.events_command == "append":
        try:
            text = args.input.read_text(encoding="utf-8")
        except OSError as exc:
            print(f"error: cannot read --input file {args.input}: {exc}", file=sys.stderr)
            return 1
        raw = json.loads(text)
        if not isinstance(raw, dict):
            print("error: event input must be a JSON object", file=sys.stderr)
            return 1
        result = store.append(raw)
        _emit({"event": result.event.model_dump(mode="json", exclude_none=True), "segment": result.segment})
    elif args.events_command == "since":
        events = store.read_events_since(args.timestamp)
        _emit([e.model_dump(mode="json", exclude_none=True) for e in events])
    elif args.events_command == "rotate":
        _emit({"active_segment": store.rotate_if_needed()})
    elif args.events_command == "status":
        _emit(store.status().as_dict())
    elif args.events_command == "compact":
        days = args.days if args.days is not None else settings.events.compact_after_days
        result = store.compact_older_than(days)
        _emit(
            {
                "compacted": result.compacted,
                "events_compacted": result.events_compacted,
                "checkpoint": result.checkpoint.model_dump(mode="json") if result.checkpoint else None,
            }
        )
    return 0


def _run_decision(args: argparse.Namespace, ctx: ProjectContext, settings: Settings, now_fn) -> int:
    events = EventStore(ctx, max_segment_bytes=settings.events.max_segment_bytes, now_fn=now_fn)
    store = DecisionStore(ctx, events=events, now_fn=now_fn)
    if args.decision_command == "list":
        packets = store.open_packets() if args.open else store.list_packets()
        _emit(
            [
                {
                    "decision_id": p.decision_id,
                    "status": p.status,
                    "scope": p.scope,
                    "blocking_state": p.blocking_state,
                    "created_at": p.created_at,
                }
                for p in packets
            ]
        )
        return 0

    result = store.answer_from_file(args.id, args.input)
    if not result.ok:
        print(f"error [{result.code}]: {result.error}", file=sys.stderr)
        return 1
    _emit(
        {
            "decision_id": result.packet.decision_id,
            "status": result.packet.status,
            "scope": result.packet.scope,
            "event_id": result.event.event_id if result.event else None,
        }
    )
    return 0


def _run_lock(ctx: ProjectContext, settings: Settings, now_fn) -> int:
    lock = AdvisoryLock(
        ctx.lock_file, ttl_ms=settings.lock.ttl_ms, lock_name=settings.lock.lock_name, now_fn=now_fn
    )
    record = lock.read()
    _emit(
        {
            "lock_path": str(ctx.lock_file),
            "exists": ctx.lock_file.exists(),
            "stale": lock.is_stale(),
            "lock": record.model_dump(mode="json") if record else None,
        }
    )
    return 0


def run_cli(
    argv: Sequence[str] | None = None,
    *,
    settings: Settings | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    clock = now_fn or utc_now
    try:
        resolved = settings or get_settings()
        setup_logging(
            json_output=resolved.logging.json_output and not args.console_logs,
            log_level=args.log_level or resolved.logging.level,
        )
        ctx = ProjectContext.at(args.project_root or resolved.project_root)

        if args.command == "orchestrate":
            orchestrator = Orchestrator.from_settings(ctx, resolved, now_fn=clock)
            outcome = orchestrator.run(limit=args.limit, dry_run=args.dry_run)
            _emit(outcome.as_dict())
            return 0
        if args.command == "events":
            return _run_events(args, ctx, resolved, clock)
        if args.command == "decision":
            return _run_decision(args, ctx, resolved, clock)
        if args.command == "lock":
            return _run_lock(ctx, resolved, clock)
        parser.error(f"unknown command: {args.command}")
    except LanekeeperError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        # pydantic.ValidationError and json.JSONDecodeError land here
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


def main() -> int:
    return run_cli()


if __name__ == "__main__":
    sys.exit(main())
