from edition_ledger.reconciliation.auditor import (
    ReconciliationAuditor,
    Violation,
    confirmed_violations,
    run_checks,
)

__all__ = [
    "ReconciliationAuditor",
    "Violation",
    "confirmed_violations",
    "run_checks",
]
