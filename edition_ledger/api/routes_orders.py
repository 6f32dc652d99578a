from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from edition_ledger.api.utils import order_view
from edition_ledger.domain.editions import LineItemClassifier
from edition_ledger.ingest.records import RawOrderRecord
from edition_ledger.jobs.reconcile import run_sync_cycle
from edition_ledger.persistence.models import OrderModel
from edition_ledger.persistence.pg import get_session

router = APIRouter(tags=["orders"])


@router.post("/orders/sync")
def sync_orders(records: list[RawOrderRecord]):
    report = run_sync_cycle(records)
    return report.to_dict()


@router.get("/orders/{order_id}")
def get_order(order_id: str, session: Session = Depends(get_session)):
    order = session.get(OrderModel, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    return order_view(session, order)


@router.post("/orders/{order_id}/classify")
def classify_order(order_id: str, session: Session = Depends(get_session)):
    try:
        result = LineItemClassifier(session).reclassify_order(order_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return {
        "order_id": order_id,
        "transitions": [asdict(t) for t in result.transitions],
        "assignments": [a.to_dict() for a in result.assignments],
        "order": order_view(session, session.get(OrderModel, order_id)),
    }
