from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from edition_ledger.core.timeutil import now_utc
from edition_ledger.domain.editions.sequencer import (
    AssignmentResult,
    CapacityExceededError,
    EditionSequencer,
    numbering_key,
    record_edition_event,
)
from edition_ledger.domain.states import (
    INVALIDATING_FINANCIAL_STATES,
    INVALIDATING_FULFILLMENT_STATES,
    LineItemStatus,
)
from edition_ledger.persistence.models import LineItemModel, OrderModel

logger = logging.getLogger(__name__)


def inactive_reasons(order: Any, line_item: Any) -> list[str]:
    reasons: list[str] = []
    if order.fulfillment_state in INVALIDATING_FULFILLMENT_STATES:
        reasons.append(f"order fulfillment_state={order.fulfillment_state}")
    if order.financial_state in INVALIDATING_FINANCIAL_STATES:
        reasons.append(f"order financial_state={order.financial_state}")
    if order.cancelled_at is not None:
        reasons.append("order cancelled")
    if line_item.refund_state != "none":
        reasons.append(f"item refund_state={line_item.refund_state}")
    if line_item.restocked:
        reasons.append("item restocked")
    return reasons


def classify(order: Any, line_item: Any) -> LineItemStatus:
    """Whether a line item counts toward its product's edition run."""
    return "inactive" if inactive_reasons(order, line_item) else "active"


@dataclass
class StatusTransition:
    line_item_id: str
    product_id: str
    before: str
    after: str
    reasons: list[str] = field(default_factory=list)


@dataclass
class ClassificationResult:
    order_id: str
    items: list[LineItemModel] = field(default_factory=list)
    transitions: list[StatusTransition] = field(default_factory=list)
    assignments: list[AssignmentResult] = field(default_factory=list)

    @property
    def rejected(self) -> list[AssignmentResult]:
        return [a for a in self.assignments if a.rejected]


class LineItemClassifier:
    def __init__(self, session: Session, sequencer: EditionSequencer | None = None):
        self.session = session
        self.sequencer = sequencer or EditionSequencer(session)

    def classify_all(self, order_id: str) -> list[LineItemModel]:
        return self.reclassify_order(order_id).items

    def reclassify_order(self, order_id: str) -> ClassificationResult:
        self.session.flush()
        order = self.session.get(OrderModel, order_id)
        if order is None:
            raise LookupError(f"order not found: {order_id}")

        items = list(
            self.session.scalars(
                select(LineItemModel)
                .where(LineItemModel.order_id == order_id)
                .order_by(LineItemModel.created_at.asc(), LineItemModel.id.asc())
            ).all()
        )
        result = ClassificationResult(order_id=order_id, items=items)
        now = now_utc()
        admitted: dict[str, list[LineItemModel]] = {}
        previously_held: set[str] = set()
        products: set[str] = set()

        for item in items:
            reasons = inactive_reasons(order, item)
            target = "inactive" if reasons else "active"
            if target == item.status:
                if reasons and item.capacity_hold:
                    item.capacity_hold = False
                    item.updated_at = now
                continue
            if item.capacity_hold and self._at_capacity(item.product_id):
                # Still held; stays put until a slot frees up or the cap rises.
                continue

            result.transitions.append(
                StatusTransition(item.id, item.product_id, before=item.status, after=target, reasons=reasons)
            )
            products.add(item.product_id)
            if target == "inactive":
                if item.edition_number is not None:
                    record_edition_event(
                        self.session, item, "edition_revoked", item.edition_number, reasons=reasons
                    )
                item.status = "inactive"
                item.edition_number = None
                item.deactivated_at = now
                item.capacity_hold = False
            else:
                if item.capacity_hold:
                    previously_held.add(item.id)
                if item.deactivated_at is not None or item.capacity_hold:
                    # Re-entry goes to the end of the current run.
                    item.reactivated_at = now
                item.status = "active"
                item.capacity_hold = False
                admitted.setdefault(item.product_id, []).append(item)
            item.updated_at = now

        for product_id in sorted(products):
            result.assignments.append(
                self._resequence(product_id, order, admitted.get(product_id, []), previously_held)
            )

        for transition in result.transitions:
            item = next(i for i in items if i.id == transition.line_item_id)
            if item.status != transition.after:
                continue
            record_edition_event(
                self.session,
                item,
                "status_changed",
                item.edition_number,
                before_status=transition.before,
                after_status=transition.after,
                reasons=transition.reasons,
            )
        self.session.flush()
        return result

    def _at_capacity(self, product_id: str) -> bool:
        cap = self.sequencer.edition_total(product_id)
        if cap is None:
            return False
        self.session.flush()
        active = self.session.scalar(
            select(func.count())
            .select_from(LineItemModel)
            .where(LineItemModel.product_id == product_id)
            .where(LineItemModel.status == "active")
        )
        return active >= cap

    def _resequence(
        self,
        product_id: str,
        order: OrderModel,
        admitted: list[LineItemModel],
        previously_held: set[str],
    ) -> AssignmentResult:
        try:
            return self.sequencer.resequence(product_id)
        except CapacityExceededError as exc:
            rejection = exc
            overflow = exc.active_count - exc.edition_total
            ranked = sorted(admitted, key=lambda item: numbering_key(item, order), reverse=True)
            for item in ranked[:overflow]:
                item.status = "inactive"
                item.capacity_hold = True
                item.edition_number = None
                if item.id not in previously_held:
                    record_edition_event(
                        self.session,
                        item,
                        "capacity_rejected",
                        None,
                        edition_total=exc.edition_total,
                        active_count=exc.active_count,
                    )
            logger.warning(
                "capacity reached for product %s: held %s item(s) inactive (%s)",
                product_id,
                min(overflow, len(ranked)),
                exc,
            )

        try:
            result = self.sequencer.resequence(product_id)
        except CapacityExceededError as again:
            return AssignmentResult(product_id=product_id, rejected=True, reason=str(again))
        result.rejected = True
        result.reason = str(rejection)
        return result
