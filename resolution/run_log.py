"""Run-scoped audit log for a single orchestrator run."""
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import UUID

from schemas.run import PhaseRecord

logger = logging.getLogger(__name__)


class PhaseTimer:
    def __init__(self):
        self.start = time.perf_counter()
        self.count = 0

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start) * 1000


class RunLog:
    """Collects phase records in memory; one instance per run, never shared."""

    def __init__(self, run_id: Optional[UUID] = None):
        self.run_id = run_id
        self.records: list[PhaseRecord] = []

    def record(
        self,
        phase: str,
        operation: str,
        status: str,
        count: int = 0,
        duration_ms: float = 0.0,
        error: Optional[str] = None,
    ) -> PhaseRecord:
        entry = PhaseRecord(
            phase=phase,
            operation=operation,
            status=status,
            count=count,
            duration_ms=round(duration_ms, 2),
            error=error,
            recorded_at=datetime.now(timezone.utc),
        )
        self.records.append(entry)
        if status == "failed":
            logger.error(
                "run=%s phase=%s operation=%r status=failed error=%s",
                self.run_id, phase, operation, error,
            )
        else:
            logger.info(
                "run=%s phase=%s operation=%r status=%s count=%d duration_ms=%.1f",
                self.run_id, phase, operation, status, count, duration_ms,
            )
        return entry

    @contextmanager
    def timed(self, phase: str, operation: str) -> Iterator[PhaseTimer]:
        """Record started/completed (or failed) around a block.

        The block sets ``timer.count`` to the number of affected rows.
        """
        self.record(phase, operation, "started")
        timer = PhaseTimer()
        try:
            yield timer
        except BaseException as exc:
            error = f"{type(exc).__name__}: {exc}"
            self.record(phase, operation, "failed", timer.count, timer.elapsed_ms, error)
            raise
        self.record(phase, operation, "completed", timer.count, timer.elapsed_ms)

    def completed_phases(self) -> list[str]:
        return [r.phase for r in self.records if r.status == "completed"]

    def failures(self) -> list[PhaseRecord]:
        return [r for r in self.records if r.status == "failed"]
