from __future__ import annotations

from fastapi import APIRouter, Query

from edition_ledger.core.config import get_settings
from edition_ledger.jobs.reconcile import audit_confirmed

router = APIRouter(tags=["audit"])


@router.get("/audit")
def run_audit(
    product_id: str | None = Query(default=None),
    confirm_runs: int | None = Query(default=None, ge=1, le=10),
):
    runs = confirm_runs or get_settings().audit_confirm_runs
    violations = audit_confirmed(product_id=product_id, runs=runs)
    return {
        "product_id": product_id,
        "confirm_runs": runs,
        "ok": not violations,
        "count": len(violations),
        "violations": [v.to_dict() for v in violations],
    }
