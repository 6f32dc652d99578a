"""Dense, deterministic edition numbering per product.

There is no stored "next number" counter. Every call recomputes numbers from
the current active set of a product, ordered by
``(reactivated_at or order.purchased_at, line_item.created_at, line_item.id)``,
and writes only the rows whose number actually changes.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

import edition_ledger.persistence.pg as pg
from edition_ledger.core.config import get_settings
from edition_ledger.core.timeutil import as_utc, now_utc
from edition_ledger.persistence.locks import advisory_lock
from edition_ledger.persistence.models import EditionEventModel, LineItemModel, OrderModel, ProductModel

logger = logging.getLogger(__name__)


class CapacityExceededError(Exception):
    def __init__(self, product_id: str, edition_total: int, active_count: int):
        self.product_id = product_id
        self.edition_total = edition_total
        self.active_count = active_count
        super().__init__(
            f"product {product_id} would have {active_count} active editions, edition_total is {edition_total}"
        )


@dataclass
class EditionChange:
    line_item_id: str
    old_number: int | None
    new_number: int | None


@dataclass
class AssignmentResult:
    product_id: str
    numbers_changed: int = 0
    rejected: bool = False
    reason: str | None = None
    changes: list[EditionChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def numbering_key(item: LineItemModel, order: OrderModel) -> tuple[datetime, datetime, str]:
    anchor = as_utc(item.reactivated_at) or as_utc(order.purchased_at)
    return (anchor, as_utc(item.created_at), item.id)


def record_edition_event(
    session: Session,
    item: LineItemModel,
    event_type: str,
    edition_number: int | None,
    **event_data: Any,
) -> None:
    session.add(
        EditionEventModel(
            line_item_id=item.id,
            product_id=item.product_id,
            edition_number=edition_number,
            event_type=event_type,
            event_data=event_data,
            created_at=now_utc(),
        )
    )


class EditionSequencer:
    def __init__(self, session: Session):
        self.session = session

    def active_items(self, product_id: str) -> list[LineItemModel]:
        rows = self.session.execute(
            select(LineItemModel, OrderModel)
            .join(OrderModel, OrderModel.order_id == LineItemModel.order_id)
            .where(LineItemModel.product_id == product_id)
            .where(LineItemModel.status == "active")
        ).all()
        ranked = sorted(rows, key=lambda row: numbering_key(row[0], row[1]))
        return [item for item, _ in ranked]

    def edition_total(self, product_id: str) -> int | None:
        product = self.session.get(ProductModel, product_id)
        return product.edition_total if product is not None else None

    def resequence(self, product_id: str) -> AssignmentResult:
        """Recompute numbers for one product; raises CapacityExceededError over the cap."""
        with advisory_lock(self.session, "edition-sequence", product_id):
            self.session.flush()
            active = self.active_items(product_id)
            cap = self.edition_total(product_id)
            if cap is not None and len(active) > cap:
                raise CapacityExceededError(product_id, cap, len(active))

            result = AssignmentResult(product_id=product_id)
            now = now_utc()

            stale = self.session.scalars(
                select(LineItemModel)
                .where(LineItemModel.product_id == product_id)
                .where(LineItemModel.status != "active")
                .where(LineItemModel.edition_number.is_not(None))
                .order_by(LineItemModel.id.asc())
            ).all()
            for item in stale:
                result.changes.append(EditionChange(item.id, item.edition_number, None))
                record_edition_event(self.session, item, "edition_revoked", item.edition_number, reason="inactive")
                item.edition_number = None
                item.updated_at = now

            for number, item in enumerate(active, start=1):
                if item.edition_number == number:
                    continue
                previous = item.edition_number
                result.changes.append(EditionChange(item.id, previous, number))
                record_edition_event(
                    self.session,
                    item,
                    "edition_assigned" if previous is None else "edition_renumbered",
                    number,
                    previous_number=previous,
                    edition_total=cap,
                )
                item.edition_number = number
                item.updated_at = now

            self.session.flush()
            result.numbers_changed = len(result.changes)
            if result.changes:
                logger.info(
                    "resequenced product %s: active=%s changed=%s",
                    product_id,
                    len(active),
                    result.numbers_changed,
                )
            return result

    def assign(self, product_id: str) -> AssignmentResult:
        try:
            return self.resequence(product_id)
        except CapacityExceededError as exc:
            logger.warning("edition assignment rejected: %s", exc)
            return AssignmentResult(product_id=product_id, rejected=True, reason=str(exc))


def _assign_in_own_session(product_id: str) -> AssignmentResult:
    with pg.session_scope() as session:
        return EditionSequencer(session).assign(product_id)


def assign_many(product_ids: Iterable[str], max_workers: int | None = None) -> list[AssignmentResult]:
    """Resequence distinct products in parallel, one transaction per product."""
    ids = sorted(set(product_ids))
    if not ids:
        return []
    workers = min(max_workers or get_settings().sequencing_max_workers, len(ids))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {product_id: pool.submit(_assign_in_own_session, product_id) for product_id in ids}
        return [futures[product_id].result() for product_id in ids]
