"""Domain services."""

from src.domain.services.autosave import DebouncedAutoSave
from src.domain.services.connectivity import ConnectivitySignal
from src.domain.services.offline_queue import OfflineActionQueue, QueueClosedError, QueueSnapshot
from src.domain.services.scoring import (
    ScoreTotals,
    classify_risk,
    compute_totals,
    parse_weight,
    weight_map,
)
from src.domain.services.state_machine import AssessmentStateMachine

__all__ = [
    "AssessmentStateMachine",
    "ConnectivitySignal",
    "DebouncedAutoSave",
    "OfflineActionQueue",
    "QueueClosedError",
    "QueueSnapshot",
    "ScoreTotals",
    "classify_risk",
    "compute_totals",
    "parse_weight",
    "weight_map",
]
