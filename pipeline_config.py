"""Reconciliation run settings.

Read from the environment (a .env file is loaded if present):
  RECONCILE_BATCH_SIZE          deals fetched per chunk, 1-1000 (default 200)
  RECONCILE_COVERAGE_THRESHOLD  warn below this contact coverage percent (default 80)
  RECONCILE_DOMAIN_SCOPE        'owner' (default) or 'global' company domain matching
  RECONCILE_CHUNK_COMMIT        '1' commits after every chunk instead of once per phase

Usage:
    from pipeline_config import ReconcileSettings
    settings = ReconcileSettings.from_env()
"""
import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

load_dotenv()

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
DOMAIN_SCOPES = ("owner", "global")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ReconcileSettings:
    batch_size: int = 200
    coverage_threshold: float = 80.0
    domain_scope: str = "owner"
    chunk_commit: bool = False
    dry_run: bool = False

    @classmethod
    def from_env(cls) -> "ReconcileSettings":
        return cls(
            batch_size=int(os.environ.get("RECONCILE_BATCH_SIZE", "200")),
            coverage_threshold=float(os.environ.get("RECONCILE_COVERAGE_THRESHOLD", "80")),
            domain_scope=os.environ.get("RECONCILE_DOMAIN_SCOPE", "owner").strip().lower(),
            chunk_commit=_env_bool("RECONCILE_CHUNK_COMMIT"),
        )

    def with_overrides(self, **changes) -> "ReconcileSettings":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the settings are usable."""
        problems = []
        if not MIN_BATCH_SIZE <= self.batch_size <= MAX_BATCH_SIZE:
            problems.append(
                f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}, "
                f"got {self.batch_size}"
            )
        if not 0 <= self.coverage_threshold <= 100:
            problems.append(
                f"coverage_threshold must be a percentage, got {self.coverage_threshold}"
            )
        if self.domain_scope not in DOMAIN_SCOPES:
            problems.append(
                f"domain_scope must be one of {DOMAIN_SCOPES}, got {self.domain_scope!r}"
            )
        return problems
