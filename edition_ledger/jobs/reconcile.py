from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import select

import edition_ledger.persistence.pg as pg
from edition_ledger.core.config import get_settings
from edition_ledger.domain.editions import AssignmentResult, LineItemClassifier, assign_many
from edition_ledger.domain.orders import OrderResolver
from edition_ledger.ingest.records import RawOrderRecord
from edition_ledger.persistence.models import LineItemModel
from edition_ledger.persistence.pg import TransientIOError
from edition_ledger.reconciliation import ReconciliationAuditor, Violation, confirmed_violations

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    attempts: int = 1
    order_ids: list[str] = field(default_factory=list)
    absorbed_order_ids: list[str] = field(default_factory=list)
    ambiguous: list[dict[str, Any]] = field(default_factory=list)
    status_changes: int = 0
    assignments: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def rejected(self) -> list[dict[str, Any]]:
        return [a for a in self.assignments if a["rejected"]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "order_ids": self.order_ids,
            "absorbed_order_ids": self.absorbed_order_ids,
            "ambiguous": self.ambiguous,
            "status_changes": self.status_changes,
            "assignments": self.assignments,
            "rejected": self.rejected,
            "duration_ms": self.duration_ms,
        }


def _sync_once(records: list[RawOrderRecord]) -> SyncReport:
    report = SyncReport()
    with pg.session_scope() as session:
        resolved = OrderResolver(session).resolve_and_merge(records)
        report.order_ids = [order.order_id for order in resolved.orders]
        report.absorbed_order_ids = list(resolved.absorbed_order_ids)
        report.ambiguous = [error.to_dict() for error in resolved.ambiguous]

        classifier = LineItemClassifier(session)
        for order_id in report.order_ids:
            classified = classifier.reclassify_order(order_id)
            report.status_changes += len(classified.transitions)
            report.assignments.extend(a.to_dict() for a in classified.assignments)
    return report


def run_sync_cycle(
    records: Iterable[RawOrderRecord],
    max_retries: int | None = None,
    backoff_seconds: float | None = None,
) -> SyncReport:
    """Resolve a batch of origin records and reclassify every order it touched.

    The whole cycle is one transaction, retried from scratch on TransientIOError.
    """
    settings = get_settings()
    retries = settings.sync_max_retries if max_retries is None else max_retries
    backoff = settings.sync_backoff_seconds if backoff_seconds is None else backoff_seconds
    batch = list(records)

    attempt = 0
    while True:
        attempt += 1
        started = time.monotonic()
        try:
            report = _sync_once(batch)
        except TransientIOError as exc:
            if attempt > retries:
                logger.error("sync cycle failed after %s attempt(s): %s", attempt, exc)
                raise
            delay = backoff * 2 ** (attempt - 1)
            logger.warning(
                "sync cycle attempt %s hit a transient datastore error, retrying in %.2fs: %s",
                attempt,
                delay,
                exc,
            )
            time.sleep(delay)
            continue

        report.attempts = attempt
        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "sync cycle done: records=%s orders=%s absorbed=%s ambiguous=%s status_changes=%s",
            len(batch),
            len(report.order_ids),
            len(report.absorbed_order_ids),
            len(report.ambiguous),
            report.status_changes,
        )
        return report


def resequence_all(product_ids: Iterable[str] | None = None, max_workers: int | None = None) -> list[AssignmentResult]:
    if product_ids is None:
        with pg.session_scope() as session:
            product_ids = list(session.scalars(select(LineItemModel.product_id).distinct()).all())
    results = assign_many(product_ids, max_workers=max_workers)
    rejected = [r.product_id for r in results if r.rejected]
    logger.info("resequenced %s product(s); rejected=%s", len(results), rejected)
    return results


def _sweep(product_id: str | None) -> list[Violation]:
    with pg.session_scope() as session:
        return ReconciliationAuditor(session).audit(product_id=product_id)


def audit_confirmed(product_id: str | None = None, runs: int | None = None) -> list[Violation]:
    """Audit with a fresh transaction per sweep so every run sees committed state."""
    runs = runs or get_settings().audit_confirm_runs
    violations = confirmed_violations(lambda: _sweep(product_id), runs)
    if violations:
        logger.warning(
            "audit confirmed %s violation(s) across %s run(s): %s",
            len(violations),
            runs,
            sorted({v.kind for v in violations}),
        )
    return violations
