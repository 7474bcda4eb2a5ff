from .domain import extract_domain
from .companies import find_company, resolve_company
from .contacts import backfill_contact_company, resolve_contact
from .linker import link_deal
from .review_queue import ReviewRouter, enqueue
from .orchestrator import BatchOrchestrator, Phase, RunScope
from .service import (
    archive_review,
    backfill_contact_companies,
    get_review_queue,
    get_unresolved_count,
    resolve_review,
    run_full_backfill,
    run_incremental,
)

__all__ = [
    "extract_domain",
    "find_company", "resolve_company",
    "resolve_contact", "backfill_contact_company",
    "link_deal",
    "enqueue", "ReviewRouter",
    "BatchOrchestrator", "Phase", "RunScope",
    "run_full_backfill", "run_incremental", "get_unresolved_count", "get_review_queue",
    "resolve_review", "archive_review", "backfill_contact_companies",
]
