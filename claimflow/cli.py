"""
Claimflow CLI
=============
Operational commands.

Usage:
    claimflow check-integrity [--output report.json]
    claimflow drain-outbox [--limit N]
    claimflow allocate {CLM,REQ,INS,APT,ASM} [--year YYYY]

Exit status is 0 on success and 1 when a check finds problems or a
compensation failed permanently.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from claimflow.core.logging import configure_logging
from claimflow.models.sequence_counter import SequenceKind


def _get_session():
    from claimflow.core.database import SessionLocal
    return SessionLocal()


def cmd_check_integrity(args) -> int:
    """Report invariant violations in the database."""
    from claimflow.services.integrity import check_integrity

    with _get_session() as db:
        report = check_integrity(db)
        payload = report.to_dict()

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        print(f"  Report written to: {args.output}")

    print(f"\n  Integrity: {'OK' if report.ok else 'PROBLEMS FOUND'}")
    for key, value in payload.items():
        if key == "ok" or not value:
            continue
        print(f"  {key}: {len(value)}")
        items = value.items() if isinstance(value, dict) else ((v, None) for v in value)
        for item, detail in items:
            print(f"    - {item}" + (f" (missing {', '.join(detail)})" if detail else ""))
    print()
    return 0 if report.ok else 1


def cmd_drain_outbox(args) -> int:
    """Retry pending compensation tasks once."""
    from claimflow.services.outbox import drain

    with _get_session() as db:
        report = drain(db, limit=args.limit)

    print(f"\n  Processed: {report.processed}")
    print(f"  Succeeded: {len(report.succeeded)}")
    print(f"  Retrying:  {len(report.retrying)}")
    print(f"  Failed:    {len(report.failed)}")
    print()
    return 1 if report.failed else 0


def cmd_allocate(args) -> int:
    """Consume and print the next identifier for a kind."""
    from claimflow.services.sequence_allocator import allocate

    kind = SequenceKind(args.kind)
    with _get_session() as db:
        identifier = allocate(db, kind, args.year)
        db.commit()
    print(identifier)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claimflow",
        description="Claimflow CLI: assessment pipeline operations",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    integrity = subparsers.add_parser("check-integrity", help="Report data-integrity problems")
    integrity.add_argument("--output", "-o", help="Write the JSON report to this path")
    integrity.set_defaults(func=cmd_check_integrity)

    outbox = subparsers.add_parser("drain-outbox", help="Run pending compensation tasks")
    outbox.add_argument("--limit", type=int, default=None, help="Maximum tasks to run")
    outbox.set_defaults(func=cmd_drain_outbox)

    alloc = subparsers.add_parser("allocate", help="Allocate the next identifier")
    alloc.add_argument("kind", choices=[k.value for k in SequenceKind], help="Identifier prefix")
    alloc.add_argument("--year", type=int, default=None, help="Year (default: current UTC year)")
    alloc.set_defaults(func=cmd_allocate)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    configure_logging(level=args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
