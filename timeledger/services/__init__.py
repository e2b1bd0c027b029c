"""Services layer - Business logic"""

from .duration import compute_duration_minutes
from .interval_validator import check_overlap, validate_boundaries
from .mutation_gate import MutationGate, week_start
from .entry_service import EntryLifecycleService

__all__ = [
    "compute_duration_minutes", "check_overlap", "validate_boundaries",
    "MutationGate", "week_start", "EntryLifecycleService",
]
