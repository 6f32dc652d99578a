from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from edition_ledger.core.timeutil import isoformat_z
from edition_ledger.persistence.models import EditionEventModel, LineItemModel, OrderModel, ProductModel

EditionKey = tuple[str, int]


def edition_assignments(session: Session, product_id: str | None = None) -> dict[EditionKey, list[str]]:
    """Materialize ``(product_id, edition_number) -> [line_item_id]`` for active items.

    Derived purely from line item rows; more than one id under a key is a
    duplicate edition number.
    """
    stmt = (
        select(LineItemModel.product_id, LineItemModel.edition_number, LineItemModel.id)
        .where(LineItemModel.status == "active")
        .where(LineItemModel.edition_number.is_not(None))
        .order_by(LineItemModel.product_id.asc(), LineItemModel.edition_number.asc(), LineItemModel.id.asc())
    )
    if product_id is not None:
        stmt = stmt.where(LineItemModel.product_id == product_id)

    assignments: dict[EditionKey, list[str]] = {}
    for pid, number, line_item_id in session.execute(stmt).all():
        assignments.setdefault((pid, number), []).append(line_item_id)
    return assignments


def _edition_view(item: LineItemModel, order: OrderModel, edition_total: int | None) -> dict[str, Any]:
    return {
        "line_item_id": item.id,
        "order_id": item.order_id,
        "display_number": order.display_number,
        "product_id": item.product_id,
        "edition_number": item.edition_number,
        "edition_total": edition_total,
        "status": item.status,
        "capacity_hold": item.capacity_hold,
        "owner": {
            "name": order.contact_name,
            "email": order.contact_email,
        },
        "purchased_at": isoformat_z(order.purchased_at),
        "created_at": isoformat_z(item.created_at),
    }


def _edition_total(session: Session, product_id: str) -> int | None:
    product = session.get(ProductModel, product_id)
    return product.edition_total if product is not None else None


def product_editions(session: Session, product_id: str) -> dict[str, Any]:
    rows = session.execute(
        select(LineItemModel, OrderModel)
        .join(OrderModel, OrderModel.order_id == LineItemModel.order_id)
        .where(LineItemModel.product_id == product_id)
        .where(LineItemModel.status == "active")
        .where(LineItemModel.edition_number.is_not(None))
        .order_by(LineItemModel.edition_number.asc(), LineItemModel.id.asc())
    ).all()
    edition_total = _edition_total(session, product_id)
    editions = [_edition_view(item, order, edition_total) for item, order in rows]
    return {
        "product_id": product_id,
        "edition_total": edition_total,
        "total_editions": len(editions),
        "editions": editions,
    }


def edition_for_line_item(session: Session, line_item_id: str) -> dict[str, Any] | None:
    row = session.execute(
        select(LineItemModel, OrderModel)
        .join(OrderModel, OrderModel.order_id == LineItemModel.order_id)
        .where(LineItemModel.id == line_item_id)
    ).first()
    if row is None:
        return None
    item, order = row
    view = _edition_view(item, order, _edition_total(session, item.product_id))
    view["verified"] = item.status == "active" and item.edition_number is not None
    return view


def edition_history(session: Session, line_item_id: str) -> list[dict[str, Any]]:
    events = session.scalars(
        select(EditionEventModel)
        .where(EditionEventModel.line_item_id == line_item_id)
        .order_by(EditionEventModel.id.asc())
    ).all()
    return [
        {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "product_id": event.product_id,
            "edition_number": event.edition_number,
            "event_data": event.event_data,
            "created_at": isoformat_z(event.created_at),
        }
        for event in events
    ]


def collector_editions(session: Session, email: str) -> list[dict[str, Any]]:
    rows = session.execute(
        select(LineItemModel, OrderModel)
        .join(OrderModel, OrderModel.order_id == LineItemModel.order_id)
        .where(OrderModel.contact_email == email.strip().lower())
        .where(LineItemModel.status == "active")
        .where(LineItemModel.edition_number.is_not(None))
        .order_by(OrderModel.purchased_at.desc(), LineItemModel.id.asc())
    ).all()

    seen: set[str] = set()
    editions: list[dict[str, Any]] = []
    totals: dict[str, int | None] = {}
    for item, order in rows:
        if item.id in seen:
            continue
        seen.add(item.id)
        if item.product_id not in totals:
            totals[item.product_id] = _edition_total(session, item.product_id)
        editions.append(_edition_view(item, order, totals[item.product_id]))
    return editions
