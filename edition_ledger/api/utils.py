from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from edition_ledger.core.timeutil import isoformat_z
from edition_ledger.persistence.models import LineItemModel, OrderModel, OrderSourceModel, ProductModel


def line_item_view(item: LineItemModel) -> dict[str, Any]:
    return {
        "line_item_id": item.id,
        "product_id": item.product_id,
        "quantity": item.quantity,
        "unit_price": item.unit_price,
        "refund_state": item.refund_state,
        "restocked": item.restocked,
        "status": item.status,
        "edition_number": item.edition_number,
        "capacity_hold": item.capacity_hold,
        "deactivated_at": isoformat_z(item.deactivated_at),
        "reactivated_at": isoformat_z(item.reactivated_at),
    }


def order_view(session: Session, order: OrderModel) -> dict[str, Any]:
    items = session.scalars(
        select(LineItemModel)
        .where(LineItemModel.order_id == order.order_id)
        .order_by(LineItemModel.created_at.asc(), LineItemModel.id.asc())
    ).all()
    sources = session.scalars(
        select(OrderSourceModel)
        .where(OrderSourceModel.order_id == order.order_id)
        .order_by(OrderSourceModel.source_kind.asc(), OrderSourceModel.source_id.asc())
    ).all()
    return {
        "order_id": order.order_id,
        "display_number": order.display_number,
        "financial_state": order.financial_state,
        "fulfillment_state": order.fulfillment_state,
        "cancelled_at": isoformat_z(order.cancelled_at),
        "purchased_at": isoformat_z(order.purchased_at),
        "provisional": order.provisional,
        "authoritative_kind": order.authoritative_kind,
        "contact": {
            "email": order.contact_email,
            "name": order.contact_name,
            "phone": order.contact_phone,
            "shipping_address": order.shipping_address,
        },
        "sources": [{"source_kind": s.source_kind, "source_id": s.source_id} for s in sources],
        "line_items": [line_item_view(item) for item in items],
    }


def product_view(product: ProductModel) -> dict[str, Any]:
    return {
        "product_id": product.product_id,
        "title": product.title,
        "edition_total": product.edition_total,
        "updated_at": isoformat_z(product.updated_at),
    }
