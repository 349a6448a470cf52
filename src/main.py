from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from sqlalchemy.orm import Session

from config import config
from db.db import init_db
from db.repositories import AssetMappingRepository, PendingClassificationRepository
from domain.base_types import ConnectionId, UserId
from importers.exchange_records import ExchangeRecordImporter
from reconciliation.backfill import FlowBackfill
from reconciliation.engine import ReconciliationEngine
from utils.formatting import format_usd
from utils.portfolio_summary import compute_portfolio, render_portfolio


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def run_import(session: Session, records_file: Path, *, provider: str, connection_id: ConnectionId) -> None:
    with records_file.open(encoding="utf-8") as handle:
        records = json.load(handle)
    importer = ExchangeRecordImporter(session, AssetMappingRepository(session).snapshot())
    events = importer.import_records(records, provider=provider, connection_id=connection_id)
    print(f"Imported {len(events)} new events from {records_file}")


def run_reconcile(session: Session, user_id: UserId, connection_id: ConnectionId | None) -> None:
    engine = ReconciliationEngine(session)
    if connection_id is not None:
        summary = engine.reconcile_connection(connection_id, user_id)
    else:
        summary = engine.reconcile_user(user_id)
    print(f"Matched:    {summary.matched}")
    print(f"Unmatched:  {summary.unmatched}")
    print(f"Off-ramps:  {summary.off_ramps}")


def run_backfill_flows(session: Session) -> None:
    created = FlowBackfill(session, batch_size=config().orphan_batch_size).run()
    print(f"Created {created} flows")


def run_pending(session: Session, user_id: UserId, *, limit: int) -> None:
    repository = PendingClassificationRepository(session)
    pending = repository.list_pending(user_id, limit=limit)
    print(f"Pending classifications: {repository.count_pending(user_id)}")
    for item in pending:
        value = format_usd(item.estimated_value) if item.estimated_value is not None else "-"
        print(f"  {item.id} {item.kind} -> {item.suggested_category} value={value} {item.notes or ''}")


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Reconcile exchange and blockchain ledgers.")
    parser.add_argument("--db-file", type=Path, default=None)
    parser.add_argument("--echo", action="store_true", help="Log SQL statements.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import exchange records from a JSON file.")
    import_parser.add_argument("records", type=Path)
    import_parser.add_argument("--provider", required=True)
    import_parser.add_argument("--connection", required=True)

    reconcile_parser = subparsers.add_parser("reconcile", help="Link exchange transfers to on-chain transfers.")
    reconcile_parser.add_argument("--user", required=True)
    reconcile_parser.add_argument("--connection", default=None)

    subparsers.add_parser("backfill-flows", help="Extract flows for transactions stored without any.")

    portfolio_parser = subparsers.add_parser("portfolio", help="Print per-asset holdings.")
    portfolio_parser.add_argument("--user", required=True)
    portfolio_parser.add_argument("--start", type=_parse_timestamp, default=None)
    portfolio_parser.add_argument("--end", type=_parse_timestamp, default=None)

    pending_parser = subparsers.add_parser("pending", help="List transactions waiting for review.")
    pending_parser.add_argument("--user", required=True)
    pending_parser.add_argument("--limit", type=int, default=50)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    session = init_db(args.echo, db_file=args.db_file or config().db_file)

    if args.command == "import":
        run_import(session, args.records, provider=args.provider, connection_id=ConnectionId(args.connection))
    elif args.command == "reconcile":
        connection_id = ConnectionId(args.connection) if args.connection else None
        run_reconcile(session, UserId(args.user), connection_id)
    elif args.command == "backfill-flows":
        run_backfill_flows(session)
    elif args.command == "portfolio":
        render_portfolio(compute_portfolio(session, UserId(args.user), start=args.start, end=args.end))
    elif args.command == "pending":
        run_pending(session, UserId(args.user), limit=args.limit)


if __name__ == "__main__":
    main()
