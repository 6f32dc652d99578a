from __future__ import annotations

import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from edition_ledger.domain.editions.classifier import classify, inactive_reasons
from edition_ledger.persistence.models import LineItemModel, OrderModel, OrderSourceModel, ProductModel

ViolationKind = Literal[
    "cap_exceeded",
    "duplicate_edition",
    "edition_gap",
    "inactive_holds_number",
    "active_missing_number",
    "stale_classification",
    "capacity_hold",
    "failed_merge",
    "enrichment_regression",
    "orphan_order",
]

ItemRow = tuple[LineItemModel, OrderModel]


@dataclass
class Violation:
    kind: ViolationKind
    detail: str
    product_id: str | None = None
    order_ids: list[str] = field(default_factory=list)
    line_item_ids: list[str] = field(default_factory=list)

    @property
    def fingerprint(self) -> tuple[str, str | None, tuple[str, ...], tuple[str, ...]]:
        return (self.kind, self.product_id, tuple(self.order_ids), tuple(self.line_item_ids))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _by_product(rows: Iterable[ItemRow]) -> dict[str, list[ItemRow]]:
    grouped: dict[str, list[ItemRow]] = {}
    for item, order in rows:
        grouped.setdefault(item.product_id, []).append((item, order))
    return dict(sorted(grouped.items()))


def check_cap_exceeded(rows: list[ItemRow], products: dict[str, ProductModel]) -> list[Violation]:
    violations: list[Violation] = []
    for product_id, members in _by_product(rows).items():
        product = products.get(product_id)
        if product is None or product.edition_total is None:
            continue
        active = sorted(item.id for item, _ in members if item.status == "active")
        if len(active) > product.edition_total:
            violations.append(
                Violation(
                    kind="cap_exceeded",
                    detail=f"{len(active)} active items, edition_total={product.edition_total}",
                    product_id=product_id,
                    line_item_ids=active,
                )
            )
    return violations


def check_duplicate_editions(rows: list[ItemRow]) -> list[Violation]:
    holders: dict[tuple[str, int], list[str]] = {}
    for item, _ in rows:
        if item.status == "active" and item.edition_number is not None:
            holders.setdefault((item.product_id, item.edition_number), []).append(item.id)

    return [
        Violation(
            kind="duplicate_edition",
            detail=f"edition #{number} held by {len(ids)} line items",
            product_id=product_id,
            line_item_ids=sorted(ids),
        )
        for (product_id, number), ids in sorted(holders.items())
        if len(ids) > 1
    ]


def check_edition_gaps(rows: list[ItemRow]) -> list[Violation]:
    violations: list[Violation] = []
    for product_id, members in _by_product(rows).items():
        active = [item for item, _ in members if item.status == "active"]
        numbers = {item.edition_number for item in active if item.edition_number is not None}
        expected = set(range(1, len(active) + 1))
        if numbers == expected:
            continue
        missing = sorted(expected - numbers)
        outside = sorted(numbers - expected)
        violations.append(
            Violation(
                kind="edition_gap",
                detail=f"expected 1..{len(active)}; missing={missing} out_of_range={outside}",
                product_id=product_id,
                line_item_ids=sorted(item.id for item in active),
            )
        )
    return violations


def check_inactive_holding_numbers(rows: list[ItemRow]) -> list[Violation]:
    return [
        Violation(
            kind="inactive_holds_number",
            detail=f"inactive line item still holds edition #{item.edition_number}",
            product_id=item.product_id,
            order_ids=[item.order_id],
            line_item_ids=[item.id],
        )
        for item, _ in rows
        if item.status != "active" and item.edition_number is not None
    ]


def check_active_missing_numbers(rows: list[ItemRow]) -> list[Violation]:
    return [
        Violation(
            kind="active_missing_number",
            detail="active line item has no edition number",
            product_id=item.product_id,
            order_ids=[item.order_id],
            line_item_ids=[item.id],
        )
        for item, _ in rows
        if item.status == "active" and item.edition_number is None
    ]


def check_stale_classification(rows: list[ItemRow]) -> list[Violation]:
    violations: list[Violation] = []
    for item, order in rows:
        expected = classify(order, item)
        if expected == item.status:
            continue
        if expected == "active" and item.capacity_hold:
            continue
        reasons = inactive_reasons(order, item)
        violations.append(
            Violation(
                kind="stale_classification",
                detail=f"status={item.status} but flags say {expected}"
                + (f" ({'; '.join(reasons)})" if reasons else ""),
                product_id=item.product_id,
                order_ids=[order.order_id],
                line_item_ids=[item.id],
            )
        )
    return violations


def check_capacity_holds(rows: list[ItemRow]) -> list[Violation]:
    return [
        Violation(
            kind="capacity_hold",
            detail="eligible line item held inactive because its product is at edition_total",
            product_id=item.product_id,
            order_ids=[order.order_id],
            line_item_ids=[item.id],
        )
        for item, order in rows
        if item.capacity_hold and item.status != "active" and classify(order, item) == "active"
    ]


def check_failed_merges(orders: list[OrderModel], sources: list[OrderSourceModel]) -> list[Violation]:
    order_ids = {order.order_id for order in orders}
    counts = Counter((s.order_id, s.source_kind) for s in sources if s.order_id in order_ids)
    violations: list[Violation] = []
    for (order_id, kind), count in sorted(counts.items()):
        if count < 2:
            continue
        ids = sorted(s.source_id for s in sources if s.order_id == order_id and s.source_kind == kind)
        violations.append(
            Violation(
                kind="failed_merge",
                detail=f"{count} {kind} origin records merged into one order: {', '.join(ids)}",
                order_ids=[order_id],
            )
        )
    return violations


def check_enrichment_regressions(orders: list[OrderModel], sources: list[OrderSourceModel]) -> list[Violation]:
    emails: dict[str, list[str]] = {}
    for source in sources:
        if source.order_id and source.email:
            emails.setdefault(source.order_id, []).append(f"{source.source_kind}:{source.source_id}")

    return [
        Violation(
            kind="enrichment_regression",
            detail=f"order has no contact email although origin records carry one ({', '.join(sorted(emails[order.order_id]))})",
            order_ids=[order.order_id],
        )
        for order in orders
        if not order.contact_email and order.order_id in emails
    ]


def check_orphan_orders(orders: list[OrderModel], sources: list[OrderSourceModel]) -> list[Violation]:
    sourced = {s.order_id for s in sources}
    return [
        Violation(
            kind="orphan_order",
            detail="order has no origin source records",
            order_ids=[order.order_id],
        )
        for order in orders
        if order.order_id not in sourced
    ]


def run_checks(
    rows: list[ItemRow],
    products: dict[str, ProductModel],
    orders: list[OrderModel],
    sources: list[OrderSourceModel],
) -> list[Violation]:
    return [
        *check_cap_exceeded(rows, products),
        *check_duplicate_editions(rows),
        *check_edition_gaps(rows),
        *check_inactive_holding_numbers(rows),
        *check_active_missing_numbers(rows),
        *check_stale_classification(rows),
        *check_capacity_holds(rows),
        *check_failed_merges(orders, sources),
        *check_enrichment_regressions(orders, sources),
        *check_orphan_orders(orders, sources),
    ]


class ReconciliationAuditor:
    """Read-only sweep over line items, orders and sources.

    Results are a point-in-time snapshot; a sweep taken mid-merge can show
    transient violations, so alerting should go through ``confirmed_violations``.
    """

    def __init__(self, session: Session):
        self.session = session

    def _item_rows(self, product_id: str | None) -> list[ItemRow]:
        stmt = (
            select(LineItemModel, OrderModel)
            .join(OrderModel, OrderModel.order_id == LineItemModel.order_id)
            .order_by(LineItemModel.product_id.asc(), LineItemModel.id.asc())
        )
        if product_id is not None:
            stmt = stmt.where(LineItemModel.product_id == product_id)
        return [(item, order) for item, order in self.session.execute(stmt).all()]

    def audit(self, product_id: str | None = None) -> list[Violation]:
        rows = self._item_rows(product_id)
        products = {p.product_id: p for p in self.session.scalars(select(ProductModel)).all()}

        order_stmt = select(OrderModel).order_by(OrderModel.order_id.asc())
        if product_id is not None:
            order_stmt = order_stmt.where(OrderModel.order_id.in_({order.order_id for _, order in rows}))
        orders = list(self.session.scalars(order_stmt).all())
        sources = list(self.session.scalars(select(OrderSourceModel).order_by(OrderSourceModel.id.asc())).all())

        return run_checks(rows, products, orders, sources)


def confirmed_violations(
    run_audit: Callable[[], list[Violation]],
    runs: int,
    pause_seconds: float = 0.0,
) -> list[Violation]:
    """Violations reported by every one of ``runs`` consecutive sweeps."""
    confirmed = run_audit()
    for _ in range(runs - 1):
        if not confirmed:
            break
        if pause_seconds:
            time.sleep(pause_seconds)
        seen = {violation.fingerprint for violation in run_audit()}
        confirmed = [violation for violation in confirmed if violation.fingerprint in seen]
    return confirmed
