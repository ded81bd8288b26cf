"""
Ledger Audit Script - Reconcile a deal's distribution ledger

Re-derives every settled distribution of the given deals from the
distribution records and platform ledger entries and prints anything that
does not balance. Read-only: it never writes to the database. Findings
are for a person to reconcile.

Usage:
    python -m scripts.audit_deal_ledger <deal_id> [<deal_id> ...]
    python -m scripts.audit_deal_ledger --all
    python -m scripts.audit_deal_ledger --all --json
"""

import asyncio
import json
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from app.database import get_db_session, import_models
from app.services.distribution_errors import NotFoundError
from app.services.ledger_audit import audit_deal_ledger
from app.services.ledger_repository import SqlAlchemyLedgerRepository


async def list_deal_ids(session) -> list:
    from app.models.deal import Deal

    result = await session.execute(select(Deal.id).order_by(Deal.created_at))
    return [row[0] for row in result.all()]


def print_report(report) -> None:
    marker = "OK " if report.is_consistent else "ERR"
    print(f"\n[{marker}] Deal {report.deal_id} ({report.deal_status})")
    print(f"      capital {report.total_capital}, returned {report.capital_returned}, "
          f"profit paid {report.profit_paid}")
    print(f"      commission {report.commission_taken}, reserve held {report.reserve_held}, "
          f"settlements {report.settled_requests}")
    for finding in report.findings:
        print(f"      - {finding.code}: {finding.message}")
        for key, value in finding.details.items():
            print(f"          {key}: {value}")


async def run(deal_ids: list, audit_all: bool, as_json: bool) -> int:
    import_models()
    reports = []

    async with get_db_session() as session:
        repo = SqlAlchemyLedgerRepository(session)
        if audit_all:
            deal_ids = await list_deal_ids(session)

        for deal_id in deal_ids:
            try:
                reports.append(await audit_deal_ledger(repo, deal_id))
            except NotFoundError as e:
                print(f"Deal {deal_id}: {e.message}", file=sys.stderr)
                return 2

    if as_json:
        print(json.dumps([r.to_dict() for r in reports], indent=2))
    else:
        for report in reports:
            print_report(report)
        inconsistent = sum(1 for r in reports if not r.is_consistent)
        print(f"\nAudited {len(reports)} deal(s): {inconsistent} with findings")

    return 1 if any(not r.is_consistent for r in reports) else 0


def main(argv=None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Audit the distribution ledger of one or more deals")
    parser.add_argument("deal_ids", nargs="*", type=uuid.UUID, help="Deal ids to audit")
    parser.add_argument("--all", action="store_true", help="Audit every deal")
    parser.add_argument("--json", action="store_true", help="Print reports as JSON")
    args = parser.parse_args(argv)

    if not args.deal_ids and not args.all:
        parser.error("give at least one deal id or --all")

    return asyncio.run(run(args.deal_ids, args.all, args.json))


if __name__ == "__main__":
    sys.exit(main())
