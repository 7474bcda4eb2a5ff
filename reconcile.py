"""Deal reconciliation — command-line entry point.

Resolves the free-text company/contact fields on deals into canonical
companies and contacts, links the deals, and queues what it cannot resolve
for human review.

Usage:
  # Resolve the whole backlog (optionally one owner, optionally without writing)
  python reconcile.py backfill [--owner OWNER_UUID] [--dry-run]

  # Resolve deals created or updated recently
  python reconcile.py incremental --since 2026-10-01T00:00:00Z
  python reconcile.py incremental --days 1

  # Inspect and triage
  python reconcile.py unresolved
  python reconcile.py reviews --status pending --latest
  python reconcile.py resolve --review-id REVIEW_UUID --company-id ... --contact-id ...
  python reconcile.py archive --review-id REVIEW_UUID --notes "duplicate deal"

  # Separate enrichment step: attach companies to contacts that have none
  python reconcile.py backfill-contact-companies
"""
import argparse
import asyncio
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from db.connection import dispose_engine
from pipeline_config import ReconcileSettings
from resolution import service
from resolution.errors import PhaseError, ReconcileError
from schemas.run import RunSummary

logger = logging.getLogger(__name__)

OUTPUT_DIR = Path(__file__).parent / "output"


def _uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a UUID: {value!r}")


def _since(args: argparse.Namespace) -> datetime:
    if args.since:
        since = isoparse(args.since)
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return since
    return datetime.now(timezone.utc) - relativedelta(days=args.days)


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _write_summary(summary: RunSummary) -> Path:
    OUTPUT_DIR.mkdir(exist_ok=True)
    path = OUTPUT_DIR / f"run_{summary.run_id}.json"
    path.write_text(summary.model_dump_json(indent=2))
    return path


def _settings(args: argparse.Namespace) -> ReconcileSettings:
    return ReconcileSettings.from_env().with_overrides(
        batch_size=getattr(args, "batch_size", None),
        dry_run=getattr(args, "dry_run", None) or None,
    )


def _review_row(entry) -> dict:
    return {
        "id": entry.id,
        "deal_id": entry.deal_id,
        "reason": entry.reason,
        "status": entry.status,
        "original_company": entry.original_company,
        "original_contact_name": entry.original_contact_name,
        "original_contact_email": entry.original_contact_email,
        "suggested_company_id": entry.suggested_company_id,
        "suggested_contact_id": entry.suggested_contact_id,
        "notes": entry.notes,
        "run_id": entry.run_id,
        "created_at": entry.created_at,
    }


async def _run_command(args: argparse.Namespace) -> int:
    try:
        if args.command in ("backfill", "incremental"):
            settings = _settings(args)
            if args.command == "backfill":
                summary = await service.run_full_backfill(args.owner, settings=settings)
            else:
                summary = await service.run_incremental(_since(args), args.owner, settings=settings)
            path = _write_summary(summary)
            _emit(summary.model_dump(mode="json", exclude={"phases"}))
            print(f"Run summary saved to {path}", file=sys.stderr)
            return 0

        if args.command == "unresolved":
            _emit({"unresolved": await service.get_unresolved_count(args.owner)})
            return 0

        if args.command == "reviews":
            status: Optional[str] = None if args.status == "all" else args.status
            entries = await service.get_review_queue(
                status, args.owner, latest_per_deal=args.latest
            )
            _emit([_review_row(e) for e in entries])
            return 0

        if args.command == "resolve":
            result = await service.resolve_review(
                args.review_id,
                args.company_id,
                args.contact_id,
                resolved_by=args.resolved_by,
                notes=args.notes,
            )
            _emit({"company_linked": result.company_linked, "contact_linked": result.contact_linked})
            return 0

        if args.command == "archive":
            entry = await service.archive_review(args.review_id, notes=args.notes)
            _emit(_review_row(entry))
            return 0

        if args.command == "backfill-contact-companies":
            updated = await service.backfill_contact_companies(args.owner, batch_size=args.batch_size)
            _emit({"contacts_updated": updated})
            return 0
    except PhaseError as e:
        logger.error("Run aborted in phase %s (%s): %s", e.phase, e.operation, e.cause)
        _emit({"status": "failed", "phase": e.phase, "operation": e.operation, "error": str(e.cause)})
        return 2
    except ReconcileError as e:
        logger.error("%s", e)
        return 1
    finally:
        await dispose_engine()
    return 1


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deal entity reconciliation")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command")

    backfill = sub.add_parser("backfill", help="Resolve every unresolved deal")
    backfill.add_argument("--owner", type=_uuid, default=None, help="Limit to one owner UUID")
    backfill.add_argument("--batch-size", type=int, default=None, help="Deals per chunk (1-1000)")
    backfill.add_argument("--dry-run", action="store_true", default=False, help="Roll back all writes")

    incremental = sub.add_parser("incremental", help="Resolve deals created or updated recently")
    window = incremental.add_mutually_exclusive_group(required=True)
    window.add_argument("--since", help="ISO 8601 timestamp (e.g. 2026-10-01T00:00:00Z)")
    window.add_argument("--days", type=int, help="Look back this many days")
    incremental.add_argument("--owner", type=_uuid, default=None)
    incremental.add_argument("--batch-size", type=int, default=None)
    incremental.add_argument("--dry-run", action="store_true", default=False)

    unresolved = sub.add_parser("unresolved", help="Count deals missing a company or contact")
    unresolved.add_argument("--owner", type=_uuid, default=None)

    reviews = sub.add_parser("reviews", help="List the review queue")
    reviews.add_argument(
        "--status", default="pending", choices=["pending", "resolved", "archived", "all"]
    )
    reviews.add_argument("--owner", type=_uuid, default=None)
    reviews.add_argument(
        "--latest", action="store_true", default=False, help="Only the newest entry per deal"
    )

    resolve = sub.add_parser("resolve", help="Apply a reviewer decision to a review entry")
    resolve.add_argument("--review-id", type=_uuid, required=True)
    resolve.add_argument("--company-id", type=_uuid, default=None)
    resolve.add_argument("--contact-id", type=_uuid, default=None)
    resolve.add_argument("--resolved-by", type=_uuid, default=None)
    resolve.add_argument("--notes", default=None)

    archive = sub.add_parser("archive", help="Close a review entry without linking")
    archive.add_argument("--review-id", type=_uuid, required=True)
    archive.add_argument("--notes", default=None)

    contact_companies = sub.add_parser(
        "backfill-contact-companies", help="Attach companies to contacts by unambiguous domain"
    )
    contact_companies.add_argument("--owner", type=_uuid, default=None)
    contact_companies.add_argument("--batch-size", type=int, default=200)

    return parser


if __name__ == "__main__":
    parser = _build_arg_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run_command(args)))
