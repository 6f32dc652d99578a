from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from edition_ledger.api.utils import product_view
from edition_ledger.core.timeutil import now_utc
from edition_ledger.domain.editions import CapacityExceededError, EditionSequencer, LineItemClassifier
from edition_ledger.domain.editions.queries import (
    collector_editions,
    edition_for_line_item,
    edition_history,
    product_editions,
)
from edition_ledger.persistence.models import LineItemModel, ProductModel
from edition_ledger.persistence.pg import get_session

router = APIRouter(tags=["editions"])


class ProductUpdateRequest(BaseModel):
    title: str | None = None
    edition_total: int | None = Field(default=None, ge=0)


@router.put("/products/{product_id}")
def put_product(product_id: str, req: ProductUpdateRequest, session: Session = Depends(get_session)):
    product = session.get(ProductModel, product_id)
    if product is None:
        product = ProductModel(product_id=product_id)
        session.add(product)
    # Only the fields sent are changed; an explicit null clears the cap.
    updates = req.model_dump(exclude_unset=True)
    edition_total = updates.get("edition_total", product.edition_total)
    if edition_total is not None:
        active_count = session.scalar(
            select(func.count())
            .select_from(LineItemModel)
            .where(LineItemModel.product_id == product_id)
            .where(LineItemModel.status == "active")
        )
        if active_count > edition_total:
            raise CapacityExceededError(product_id, edition_total, active_count)
    for name, value in updates.items():
        setattr(product, name, value)
    product.updated_at = now_utc()
    session.flush()

    # Held items get another chance under the new cap.
    held_order_ids = session.scalars(
        select(LineItemModel.order_id)
        .where(LineItemModel.product_id == product_id)
        .where(LineItemModel.capacity_hold.is_(True))
        .distinct()
    ).all()
    classifier = LineItemClassifier(session)
    readmitted = [
        order_id for order_id in sorted(held_order_ids) if classifier.reclassify_order(order_id).transitions
    ]

    assignment = EditionSequencer(session).assign(product_id)
    return {
        "product": product_view(product),
        "readmitted_orders": readmitted,
        "assignment": assignment.to_dict(),
    }


@router.post("/products/{product_id}/assign")
def assign_editions(product_id: str, session: Session = Depends(get_session)):
    result = EditionSequencer(session).resequence(product_id)
    return result.to_dict()


@router.get("/products/{product_id}/editions")
def get_product_editions(product_id: str, session: Session = Depends(get_session)):
    return product_editions(session, product_id)


@router.get("/line-items/{line_item_id}")
def get_line_item_edition(line_item_id: str, session: Session = Depends(get_session)):
    view = edition_for_line_item(session, line_item_id)
    if view is None:
        raise HTTPException(status_code=404, detail="line item not found")
    return view


@router.get("/line-items/{line_item_id}/history")
def get_line_item_history(line_item_id: str, session: Session = Depends(get_session)):
    if session.get(LineItemModel, line_item_id) is None:
        raise HTTPException(status_code=404, detail="line item not found")
    events = edition_history(session, line_item_id)
    return {"line_item_id": line_item_id, "count": len(events), "events": events}


@router.get("/collectors/{email}/editions")
def get_collector_editions(email: str, session: Session = Depends(get_session)):
    editions = collector_editions(session, email)
    return {"email": email.strip().lower(), "count": len(editions), "editions": editions}
