from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path

import uvicorn
from pydantic import TypeAdapter

import edition_ledger.persistence.pg as pg
from edition_ledger.core.config import get_settings
from edition_ledger.core.logging import configure_logging
from edition_ledger.domain.editions import LineItemClassifier
from edition_ledger.ingest.records import RawOrderRecord
from edition_ledger.jobs.reconcile import audit_confirmed, resequence_all, run_sync_cycle

_records_adapter = TypeAdapter(list[RawOrderRecord])


def _print(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="edition-ledger", description="Edition Ledger CLI")
    parser.add_argument("--log-level", default=None, help="Override EL_LOG_LEVEL")
    top = parser.add_subparsers(dest="command", required=True)

    sync = top.add_parser("sync", help="Resolve a JSON file of origin records and reclassify touched orders")
    sync.add_argument("file", type=Path, help="JSON array of order records")

    classify = top.add_parser("classify", help="Reclassify one order's line items")
    classify.add_argument("order_id")

    assign = top.add_parser("assign", help="Resequence edition numbers")
    assign.add_argument("product_ids", nargs="*")
    assign.add_argument("--all", action="store_true", help="Every product that has line items")

    audit = top.add_parser("audit", help="Report confirmed invariant violations")
    audit.add_argument("--product-id", default=None)
    audit.add_argument("--confirm-runs", type=int, default=None)

    serve = top.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser


def _run_sync(args: argparse.Namespace) -> int:
    records = _records_adapter.validate_json(args.file.read_bytes())
    report = run_sync_cycle(records)
    _print(report.to_dict())
    return 0


def _run_classify(args: argparse.Namespace) -> int:
    with pg.session_scope() as session:
        try:
            result = LineItemClassifier(session).reclassify_order(args.order_id)
        except LookupError as exc:
            _print({"error": str(exc)})
            return 1
        _print(
            {
                "order_id": result.order_id,
                "transitions": [asdict(t) for t in result.transitions],
                "assignments": [a.to_dict() for a in result.assignments],
            }
        )
    return 0


def _run_assign(args: argparse.Namespace) -> int | None:
    if not args.all and not args.product_ids:
        return None
    results = resequence_all(None if args.all else args.product_ids)
    _print([r.to_dict() for r in results])
    return 1 if any(r.rejected for r in results) else 0


def _run_audit(args: argparse.Namespace) -> int:
    runs = args.confirm_runs or get_settings().audit_confirm_runs
    violations = audit_confirmed(product_id=args.product_id, runs=runs)
    _print(
        {
            "product_id": args.product_id,
            "confirm_runs": runs,
            "count": len(violations),
            "violations": [v.to_dict() for v in violations],
        }
    )
    return 1 if violations else 0


def _run_serve(args: argparse.Namespace) -> int:
    settings = get_settings()
    uvicorn.run(
        "edition_ledger.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    pg.init_db()

    if args.command == "sync":
        return _run_sync(args)
    if args.command == "classify":
        return _run_classify(args)
    if args.command == "assign":
        code = _run_assign(args)
        if code is not None:
            return code
        parser.error("assign needs PRODUCT_ID arguments or --all")
    if args.command == "audit":
        return _run_audit(args)
    if args.command == "serve":
        return _run_serve(args)

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
