"""Export the pending review queue to Markdown files for triage.

Run after a reconciliation pass:

    python scripts/export_review_queue.py

Writes one file per deal owner listing the latest pending entry for each of
their deals, plus an index with counts per reason code.

REVIEW_EXPORT_DIR controls the output directory (default: ./review_queue).
"""
import asyncio
import logging
import os
import sys
from collections import Counter, defaultdict
from pathlib import Path
from typing import Optional

# Resolve project root so imports work when run from any cwd
_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.connection import get_db
from db.models import Deal, ReviewEntry
import db.repositories.reviews as reviews_repo

logger = logging.getLogger(__name__)

EXPORT_DIR = Path(os.environ.get("REVIEW_EXPORT_DIR", str(_ROOT / "review_queue")))


def _safe_name(s: str) -> str:
    """Slugify a string for use as a filename component."""
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in s).strip("_.")


def _entry_lines(entry: ReviewEntry, deal_name: Optional[str]) -> list[str]:
    lines = [f"## {deal_name or '(unnamed deal)'} [{entry.reason}]"]
    lines.append(f"Deal: {entry.deal_id} | Review: {entry.id} | Queued: {entry.created_at}")
    lines.append(f"Company: {entry.original_company or '-'}")
    lines.append(f"Contact: {entry.original_contact_name or '-'} <{entry.original_contact_email or '-'}>")
    if entry.suggested_company_id:
        lines.append(f"Suggested company: {entry.suggested_company_id}")
    if entry.suggested_contact_id:
        lines.append(f"Suggested contact: {entry.suggested_contact_id}")
    if entry.notes:
        lines.append(f"Notes: {entry.notes}")
    lines.append("")
    return lines


async def export_pending(
    export_dir: Path,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    """Write owners/<owner_id>.md and index.md. Returns the number of files written."""
    owners_dir = export_dir / "owners"
    owners_dir.mkdir(parents=True, exist_ok=True)

    async with get_db(session_factory) as session:
        entries = await reviews_repo.list_entries(session, status="pending", latest_per_deal=True)
        deal_ids = [e.deal_id for e in entries]
        rows = []
        if deal_ids:
            result = await session.execute(
                select(Deal.id, Deal.owner_id, Deal.name).where(Deal.id.in_(deal_ids))
            )
            rows = result.all()

    deals = {deal_id: (owner_id, name) for deal_id, owner_id, name in rows}
    by_owner: dict = defaultdict(list)
    for entry in entries:
        owner_id, name = deals.get(entry.deal_id, (None, None))
        by_owner[owner_id].append((entry, name))

    written = 0
    for owner_id, owner_entries in by_owner.items():
        lines = [f"# Pending Reviews: owner {owner_id}", f"Deals: {len(owner_entries)}", ""]
        for entry, name in owner_entries:
            lines.extend(_entry_lines(entry, name))
        filename = owners_dir / f"{_safe_name(str(owner_id))}.md"
        filename.write_text("\n".join(lines), encoding="utf-8")
        written += 1

    reasons = Counter(entry.reason for entry in entries)
    index = ["# Review Queue", f"Pending deals: {len(entries)}", ""]
    for reason, count in sorted(reasons.items()):
        index.append(f"- {reason}: {count}")
    (export_dir / "index.md").write_text("\n".join(index) + "\n", encoding="utf-8")
    return written + 1


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    EXPORT_DIR.mkdir(parents=True, exist_ok=True)
    logger.info("Exporting review queue to %s ...", EXPORT_DIR.resolve())
    written = await export_pending(EXPORT_DIR)
    logger.info("Done. Total files written: %d", written)


if __name__ == "__main__":
    asyncio.run(main())
