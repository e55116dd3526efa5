"""
OpsPilot maintenance CLI.

    opspilot init-db
    opspilot load-patterns patterns.json
    opspilot process event.json [--wait]
    opspilot decay | evolve | review
    opspilot queue
    opspilot approve <entry-id> --user U
    opspilot reject <entry-id> --user U --reason R
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _read_json(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    return json.loads(Path(path).read_text())


@contextmanager
def _build_engine(args: argparse.Namespace) -> Iterator[Any]:
    from opspilot.automation.engine import AutomationEngine
    from opspilot.infrastructure.database import Database
    from opspilot.runtime.policy import load_policy

    database = Database(args.db)
    try:
        with AutomationEngine(database, load_policy(args.policy)) as engine:
            yield engine
    finally:
        database.close()


def cmd_init_db(args: argparse.Namespace) -> int:
    from opspilot.infrastructure.database import get_db_path
    from opspilot.infrastructure.database_schema import init_database

    path = Path(args.db) if args.db else get_db_path()
    init_database(path)
    print(f"Database ready: {path}")
    return 0


def cmd_load_patterns(args: argparse.Namespace) -> int:
    from opspilot.storage.models import Pattern, PatternValidationError

    data = _read_json(args.file)
    items = data if isinstance(data, list) else [data]
    with _build_engine(args) as engine:
        for item in items:
            try:
                pattern = engine.add_pattern(Pattern.model_validate(item))
            except (PatternValidationError, ValueError) as e:
                print(f"Skipping invalid pattern: {e}", file=sys.stderr)
                continue
            print(f"{pattern.id}  {pattern.trigger_signature}  {pattern.confidence_score:.2f}")
    return 0


def cmd_process(args: argparse.Namespace) -> int:
    from opspilot.automation.executor import PatternExecutionError

    raw = _read_json(args.file)
    with _build_engine(args) as engine:
        try:
            result = engine.process_event(raw)
        except PatternExecutionError as e:
            print(f"Execution failed ({e.severity.value}): {e}", file=sys.stderr)
            return 1
        _print(result.as_dict())

        if args.wait and result.type == "suggestion":
            print(f"Waiting {result.timeout_ms} ms for suggestion {result.id}...", file=sys.stderr)
            while engine.suggestions.get(result.id) is not None:
                time.sleep(0.1)
            records = engine.store.executions_for_reference(result.id)
            _print([record.model_dump(mode="json") for record in records])
    return 0


def cmd_decay(args: argparse.Namespace) -> int:
    with _build_engine(args) as engine:
        print(f"Decayed {engine.evolution.apply_decay()} idle patterns")
    return 0


def cmd_evolve(args: argparse.Namespace) -> int:
    with _build_engine(args) as engine:
        forks = engine.evolution.evolve_patterns()
        for fork in forks:
            print(f"Forked {fork.parent_pattern_id} -> {fork.id}")
        print(f"{len(forks)} forks created")
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    with _build_engine(args) as engine:
        demoted = engine.evolution.review_auto_executable()
        for pattern_id, reason in demoted:
            print(f"Demoted {pattern_id}: {reason}")
        print(f"{len(demoted)} patterns demoted")
    return 0


def cmd_queue(args: argparse.Namespace) -> int:
    with _build_engine(args) as engine:
        pending = engine.approvals.list_pending()
        if not pending:
            print("No pending approvals")
        for entry in pending:
            print(
                f"{entry.id}  pattern={entry.pattern_id}  "
                f"confidence={entry.confidence:.2f}  {entry.reasoning or ''}"
            )
    return 0


def cmd_approve(args: argparse.Namespace) -> int:
    from opspilot.automation.approvals import ApprovalQueueError
    from opspilot.automation.executor import PatternExecutionError

    with _build_engine(args) as engine:
        try:
            result = engine.approvals.approve(args.entry_id, args.user)
        except (ApprovalQueueError, PatternExecutionError) as e:
            print(f"Approve failed: {e}", file=sys.stderr)
            return 1
        _print(result.as_dict())
    return 0


def cmd_reject(args: argparse.Namespace) -> int:
    from opspilot.automation.approvals import ApprovalQueueError

    with _build_engine(args) as engine:
        try:
            result = engine.approvals.reject(args.entry_id, args.user, args.reason)
        except ApprovalQueueError as e:
            print(f"Reject failed: {e}", file=sys.stderr)
            return 1
        _print(result.as_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="opspilot", description="OpsPilot pattern automation")
    parser.add_argument("--db", help="SQLite database path (default: OPSPILOT_DB_PATH)")
    parser.add_argument("--policy", help="Policy YAML path (default: config/opspilot_policy.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables").set_defaults(func=cmd_init_db)

    p = sub.add_parser("load-patterns", help="Insert or replace patterns from a JSON file")
    p.add_argument("file", help="JSON object or list of patterns ('-' for stdin)")
    p.set_defaults(func=cmd_load_patterns)

    p = sub.add_parser("process", help="Route one event and print the result")
    p.add_argument("file", help="Event JSON ('-' for stdin)")
    p.add_argument("--wait", action="store_true", help="Block until a suggestion times out")
    p.set_defaults(func=cmd_process)

    sub.add_parser("decay", help="Decay idle patterns").set_defaults(func=cmd_decay)
    sub.add_parser("evolve", help="Fork heavily modified patterns").set_defaults(func=cmd_evolve)
    sub.add_parser("review", help="Demotion sweep over auto-executable patterns").set_defaults(
        func=cmd_review
    )
    sub.add_parser("queue", help="List pending approvals").set_defaults(func=cmd_queue)

    p = sub.add_parser("approve", help="Approve a queued entry")
    p.add_argument("entry_id")
    p.add_argument("--user", required=True)
    p.set_defaults(func=cmd_approve)

    p = sub.add_parser("reject", help="Reject a queued entry")
    p.add_argument("entry_id")
    p.add_argument("--user", required=True)
    p.add_argument("--reason")
    p.set_defaults(func=cmd_reject)
    return parser


def main(argv: list[str] | None = None) -> int:
    # Before any opspilot import: config constants are read from the environment
    load_dotenv()
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
