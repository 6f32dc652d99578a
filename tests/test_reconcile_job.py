from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

import edition_ledger.jobs.reconcile as reconcile
import edition_ledger.persistence.pg as pg
from edition_ledger.domain.orders import OrderResolver
from edition_ledger.persistence.models import LineItemModel, OrderModel, OrderSourceModel
from edition_ledger.persistence.pg import TransientIOError


def _flaky_resolver(failures: int):
    calls = {"count": 0}

    class FlakyResolver(OrderResolver):
        def resolve_and_merge(self, records):
            result = super().resolve_and_merge(records)
            calls["count"] += 1
            if calls["count"] <= failures:
                raise TransientIOError("connection reset by peer")
            return result

    return FlakyResolver, calls


@pytest.fixture()
def sleeps(monkeypatch):
    recorded: list[float] = []
    monkeypatch.setattr(reconcile.time, "sleep", recorded.append)
    return recorded


def test_session_scope_maps_operational_errors():
    with pytest.raises(TransientIOError, match="database is locked"):
        with pg.session_scope():
            raise OperationalError("UPDATE line_items", {}, Exception("database is locked"))


def test_sync_cycle_retries_transient_errors_with_backoff(make_record, monkeypatch, sleeps):
    flaky, calls = _flaky_resolver(failures=2)
    monkeypatch.setattr(reconcile, "OrderResolver", flaky)

    report = reconcile.run_sync_cycle(
        [make_record("A", display_number="1501", items=[("li-a", "P")])],
        max_retries=3,
        backoff_seconds=0.25,
    )

    assert report.attempts == 3
    assert calls["count"] == 3
    assert sleeps == [0.25, 0.5]
    assert report.order_ids == ["A"]
    with pg.session_scope() as s:
        assert s.scalar(select(func.count()).select_from(OrderModel)) == 1
        assert s.scalar(select(func.count()).select_from(OrderSourceModel)) == 1
        assert s.get(LineItemModel, "li-a").edition_number == 1


def test_sync_cycle_gives_up_after_max_retries(make_record, monkeypatch, sleeps):
    flaky, calls = _flaky_resolver(failures=10)
    monkeypatch.setattr(reconcile, "OrderResolver", flaky)

    with pytest.raises(TransientIOError):
        reconcile.run_sync_cycle([make_record("A", display_number="1501")], max_retries=1, backoff_seconds=1.0)

    assert calls["count"] == 2
    assert sleeps == [1.0]
    with pg.session_scope() as s:
        assert s.scalar(select(func.count()).select_from(OrderModel)) == 0


def test_sync_report_summarizes_the_cycle(make_record):
    report = reconcile.run_sync_cycle(
        [
            make_record("A", display_number="1501", items=[("li-a", "P")]),
            make_record("B", display_number="#1501", items=[("li-b", "P")]),
            make_record("M1", source_kind="manual", display_number="1502", items=[("li-m", "P")]),
        ]
    )

    payload = report.to_dict()
    assert payload["attempts"] == 1
    assert payload["order_ids"] == ["A", "B", "MAN-M1"]
    assert payload["ambiguous"][0]["candidate_order_ids"] == ["A", "B"]
    assert payload["status_changes"] == 3
    assert payload["rejected"] == []


def test_resequence_all_covers_every_product(make_record):
    reconcile.run_sync_cycle(
        [
            make_record("A", display_number="1501", items=[("li-a", "P")]),
            make_record("X", display_number="2001", items=[("li-x", "Q")]),
        ]
    )
    with pg.session_scope() as s:
        s.get(LineItemModel, "li-a").edition_number = 4
        s.get(LineItemModel, "li-x").edition_number = 9

    results = reconcile.resequence_all()

    assert sorted((r.product_id, r.numbers_changed) for r in results) == [("P", 1), ("Q", 1)]
    with pg.session_scope() as s:
        assert s.get(LineItemModel, "li-a").edition_number == 1
        assert s.get(LineItemModel, "li-x").edition_number == 1
