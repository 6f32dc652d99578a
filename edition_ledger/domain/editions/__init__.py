from edition_ledger.domain.editions.classifier import (
    ClassificationResult,
    LineItemClassifier,
    StatusTransition,
    classify,
    inactive_reasons,
)
from edition_ledger.domain.editions.sequencer import (
    AssignmentResult,
    CapacityExceededError,
    EditionChange,
    EditionSequencer,
    assign_many,
    numbering_key,
)

__all__ = [
    "AssignmentResult",
    "CapacityExceededError",
    "ClassificationResult",
    "EditionChange",
    "EditionSequencer",
    "LineItemClassifier",
    "StatusTransition",
    "assign_many",
    "classify",
    "inactive_reasons",
    "numbering_key",
]
