from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from edition_ledger.core.config import get_settings
from edition_ledger.core.timeutil import as_utc, now_utc
from edition_ledger.domain.orders.matching import RecordGroup, group_records, normalize_display_number
from edition_ledger.ingest.records import RawLineItem, RawOrderRecord
from edition_ledger.persistence.locks import advisory_lock
from edition_ledger.persistence.models import LineItemModel, OrderModel, OrderSourceModel

logger = logging.getLogger(__name__)

SourceIdentity = tuple[str, str]


class AmbiguousMergeError(Exception):
    def __init__(self, match_key: str | None, candidate_order_ids: list[str], reason: str):
        self.match_key = match_key
        self.candidate_order_ids = candidate_order_ids
        self.reason = reason
        super().__init__(
            f"ambiguous merge key={match_key} candidates={','.join(candidate_order_ids)}: {reason}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "match_key": self.match_key,
            "candidate_order_ids": self.candidate_order_ids,
            "reason": self.reason,
        }


@dataclass
class ResolveResult:
    orders: list[OrderModel] = field(default_factory=list)
    absorbed_order_ids: list[str] = field(default_factory=list)
    ambiguous: list[AmbiguousMergeError] = field(default_factory=list)


def _differs(current: Any, new: Any) -> bool:
    if hasattr(current, "tzinfo") or hasattr(new, "tzinfo"):
        return as_utc(current) != as_utc(new)
    return current != new


def _assign(row: Any, **values: Any) -> bool:
    changed = False
    for name, value in values.items():
        if _differs(getattr(row, name), value):
            setattr(row, name, value)
            changed = True
    return changed


class OrderResolver:
    """Merges raw origin records into one canonical order per real purchase."""

    def __init__(self, session: Session, contact_window: timedelta | None = None):
        self.session = session
        if contact_window is None:
            contact_window = timedelta(hours=get_settings().merge_contact_window_hours)
        self.contact_window = contact_window

    def _store_sources(self, records: list[RawOrderRecord]) -> None:
        now = now_utc()
        latest = {record.identity: record for record in records}
        for record in latest.values():
            row = self.session.scalar(
                select(OrderSourceModel)
                .where(OrderSourceModel.source_kind == record.source_kind)
                .where(OrderSourceModel.source_id == record.source_id)
            )
            if row is None:
                row = OrderSourceModel(
                    source_kind=record.source_kind,
                    source_id=record.source_id,
                    order_id=None,
                    received_at=now,
                )
                self.session.add(row)
            _assign(
                row,
                display_number=record.display_number,
                match_key=normalize_display_number(record.display_number),
                linked_order_id=record.linked_order_id,
                email=record.contact.email,
                name=record.contact.name,
                phone=record.contact.phone,
                shipping_address=record.contact.shipping_address,
                purchased_at=record.purchased_at,
                payload=record.model_dump(mode="json"),
            )
        self.session.flush()

    def _known_sources(self) -> tuple[list[RawOrderRecord], dict[SourceIdentity, OrderSourceModel]]:
        rows = list(self.session.scalars(select(OrderSourceModel).order_by(OrderSourceModel.id.asc())).all())
        records = [RawOrderRecord.model_validate(row.payload) for row in rows]
        return records, {(row.source_kind, row.source_id): row for row in rows}

    def resolve_and_merge(self, records: Iterable[RawOrderRecord]) -> ResolveResult:
        incoming = list(records)
        self._store_sources(incoming)
        known, source_rows = self._known_sources()
        grouping = group_records(known, self.contact_window)

        result = ResolveResult()
        for match in grouping.ambiguous:
            error = AmbiguousMergeError(match.match_key, list(match.candidate_ids), match.reason)
            logger.warning("left unmerged for manual review: %s", error)
            result.ambiguous.append(error)

        canonical_ids = {group.canonical_id for group in grouping.groups}
        incoming_ids = {record.identity for record in incoming}
        for group in grouping.groups:
            previous = {source_rows[r.identity].order_id for r in group.records} - {None}
            arrived = any(r.identity in incoming_ids for r in group.records)
            if not arrived and previous == {group.canonical_id}:
                continue

            with advisory_lock(self.session, "order-merge", group.lock_key):
                order = self._apply_group(group, source_rows)
                for old_id in sorted(previous - canonical_ids):
                    if self._absorb(old_id, order):
                        result.absorbed_order_ids.append(old_id)
            result.orders.append(order)

        self.session.flush()
        return result

    def _apply_group(self, group: RecordGroup, source_rows: dict[SourceIdentity, OrderSourceModel]) -> OrderModel:
        authoritative = group.authoritative
        contact = group.contact
        now = now_utc()

        # Autoflush is off; flush so lookups see rows created earlier in this pass.
        self.session.flush()
        order = self.session.get(OrderModel, group.canonical_id)
        if order is None:
            order = OrderModel(
                order_id=group.canonical_id,
                purchased_at=authoritative.purchased_at,
                authoritative_kind=authoritative.source_kind,
                created_at=now,
                updated_at=now,
            )
            self.session.add(order)
            logger.info(
                "canonical order created: order_id=%s authoritative=%s provisional=%s",
                group.canonical_id,
                authoritative.source_kind,
                group.provisional,
            )

        display_number = next((r.display_number for r in group.records if r.display_number), None)
        changed = _assign(
            order,
            display_number=display_number,
            match_key=group.match_key,
            financial_state=authoritative.financial_state,
            fulfillment_state=authoritative.fulfillment_state,
            cancelled_at=authoritative.cancelled_at,
            purchased_at=authoritative.purchased_at,
            contact_email=contact.email,
            contact_name=contact.name,
            contact_phone=contact.phone,
            shipping_address=contact.shipping_address,
            authoritative_kind=authoritative.source_kind,
            provisional=group.provisional,
        )
        if changed:
            order.updated_at = now
        self.session.flush()

        # Lowest priority first so the authoritative record's line item flags win.
        for record in reversed(group.records):
            source_rows[record.identity].order_id = order.order_id
            for raw_item in record.line_items:
                self._upsert_line_item(order, record, raw_item)
        return order

    def _upsert_line_item(self, order: OrderModel, record: RawOrderRecord, raw: RawLineItem) -> LineItemModel:
        now = now_utc()
        item = self.session.get(LineItemModel, raw.line_item_id)
        if item is None:
            item = LineItemModel(
                id=raw.line_item_id,
                order_id=order.order_id,
                product_id=raw.product_id,
                quantity=raw.quantity,
                unit_price=raw.unit_price,
                refund_state=raw.refund_state,
                restocked=raw.restocked,
                status="inactive",
                edition_number=None,
                capacity_hold=False,
                created_at=raw.created_at or record.purchased_at,
                updated_at=now,
            )
            self.session.add(item)
            self.session.flush()
            return item

        if item.product_id != raw.product_id:
            logger.warning(
                "line item %s reported under product %s but is numbered under %s; keeping %s",
                item.id,
                raw.product_id,
                item.product_id,
                item.product_id,
            )
        changed = _assign(
            item,
            order_id=order.order_id,
            quantity=raw.quantity,
            unit_price=raw.unit_price,
            refund_state=raw.refund_state,
            restocked=raw.restocked,
        )
        if changed:
            item.updated_at = now
        return item

    def _absorb(self, old_order_id: str, order: OrderModel) -> bool:
        duplicate = self.session.get(OrderModel, old_order_id)
        if duplicate is None:
            return False

        self.session.flush()
        moved = self.session.execute(
            update(LineItemModel)
            .where(LineItemModel.order_id == old_order_id)
            .values(order_id=order.order_id, updated_at=now_utc())
        ).rowcount
        self.session.delete(duplicate)
        self.session.flush()
        logger.info(
            "absorbed duplicate order %s into %s (line items re-parented: %s)",
            old_order_id,
            order.order_id,
            moved,
        )
        return True
