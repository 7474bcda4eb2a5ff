from .deal import DealFields
from .run import (
    DataQualityCheck,
    PhaseRecord,
    ResolutionStats,
    RunSummary,
)

__all__ = [
    "DealFields",
    "PhaseRecord", "ResolutionStats", "DataQualityCheck", "RunSummary",
]
