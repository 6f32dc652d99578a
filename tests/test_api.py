from __future__ import annotations

import edition_ledger.persistence.pg as pg
from edition_ledger.persistence.models import ProductModel
from edition_ledger.persistence.pg import TransientIOError


def _record(source_id, display_number, line_item_id, *, hour=10, **fields):
    payload = {
        "source_kind": "commerce",
        "source_id": source_id,
        "display_number": display_number,
        "financial_state": "paid",
        "purchased_at": f"2025-03-01T{hour:02d}:00:00Z",
        "contact": {"email": f"{source_id.lower()}@example.com", "name": source_id},
        "line_items": [{"line_item_id": line_item_id, "product_id": "print-aurora", "unit_price": 12000}],
    }
    payload.update(fields)
    return payload


def _seed(client):
    resp = client.put("/products/print-aurora", json={"title": "Aurora", "edition_total": 3})
    assert resp.status_code == 200
    resp = client.post(
        "/orders/sync",
        json=[
            _record("A", "#1501", "li-a", hour=10),
            _record("B", "#1502", "li-b", hour=11),
            _record("C", "#1503", "li-c", hour=12),
        ],
    )
    assert resp.status_code == 200
    return resp.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_sync_and_read_order(client):
    report = _seed(client)
    assert report["order_ids"] == ["A", "B", "C"]
    assert report["status_changes"] == 3

    resp = client.post(
        "/orders/sync",
        json=[
            {
                "source_kind": "manual",
                "source_id": "M1",
                "display_number": "1501",
                "purchased_at": "2025-03-01T10:05:00Z",
                "contact": {"phone": "+1 555 0100"},
            }
        ],
    )
    assert resp.status_code == 200

    order = client.get("/orders/A").json()
    assert order["financial_state"] == "paid"
    assert order["contact"] == {
        "email": "a@example.com",
        "name": "A",
        "phone": "+1 555 0100",
        "shipping_address": None,
    }
    assert order["sources"] == [
        {"source_kind": "commerce", "source_id": "A"},
        {"source_kind": "manual", "source_id": "M1"},
    ]
    assert order["line_items"][0]["edition_number"] == 1

    assert client.get("/orders/missing").status_code == 404


def test_sync_rejects_invalid_payload(client):
    resp = client.post("/orders/sync", json=[{"source_kind": "fax", "source_id": "A"}])
    assert resp.status_code == 422


def test_refund_flow_and_editions(client):
    _seed(client)
    client.post("/orders/sync", json=[_record("B", "#1502", "li-b", hour=11, financial_state="refunded")])
    client.post("/orders/sync", json=[_record("D", "#1504", "li-d", hour=13)])

    editions = client.get("/products/print-aurora/editions").json()
    assert editions["edition_total"] == 3
    assert [(e["line_item_id"], e["edition_number"]) for e in editions["editions"]] == [
        ("li-a", 1),
        ("li-c", 2),
        ("li-d", 3),
    ]

    item = client.get("/line-items/li-b").json()
    assert item["status"] == "inactive"
    assert item["edition_number"] is None
    assert item["verified"] is False

    history = client.get("/line-items/li-b/history").json()
    assert [e["event_type"] for e in history["events"]] == [
        "edition_assigned",
        "status_changed",
        "edition_revoked",
        "status_changed",
    ]
    assert client.get("/line-items/nope").status_code == 404
    assert client.get("/line-items/nope/history").status_code == 404

    collector = client.get("/collectors/D@Example.com/editions").json()
    assert collector["email"] == "d@example.com"
    assert [(e["line_item_id"], e["edition_number"]) for e in collector["editions"]] == [("li-d", 3)]


def test_capacity_hold_and_raising_the_cap(client):
    _seed(client)
    report = client.post("/orders/sync", json=[_record("D", "#1504", "li-d", hour=13)]).json()
    assert [r["product_id"] for r in report["rejected"]] == ["print-aurora"]
    assert client.get("/line-items/li-d").json()["capacity_hold"] is True

    audit = client.get("/audit", params={"confirm_runs": 2}).json()
    assert audit["ok"] is False
    assert [v["kind"] for v in audit["violations"]] == ["capacity_hold"]

    resp = client.put("/products/print-aurora", json={"title": "Aurora", "edition_total": 4})
    assert resp.status_code == 200
    assert resp.json()["readmitted_orders"] == ["D"]

    item = client.get("/line-items/li-d").json()
    assert (item["status"], item["edition_number"], item["capacity_hold"]) == ("active", 4, False)
    assert client.get("/audit").json()["ok"] is True


def test_assign_over_cap_returns_409(client):
    _seed(client)
    with pg.session_scope() as s:
        s.get(ProductModel, "print-aurora").edition_total = 2

    resp = client.post("/products/print-aurora/assign")

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "capacity_exceeded"
    assert body["active_count"] == 3
    assert body["edition_total"] == 2


def test_classify_endpoint(client):
    _seed(client)

    resp = client.post("/orders/A/classify")
    assert resp.status_code == 200
    assert resp.json()["transitions"] == []

    assert client.post("/orders/missing/classify").status_code == 404


def test_transient_errors_map_to_503(client, monkeypatch):
    def unavailable(records):
        raise TransientIOError("could not connect to server")

    monkeypatch.setattr("edition_ledger.api.routes_orders.run_sync_cycle", unavailable)

    resp = client.post("/orders/sync", json=[_record("A", "#1501", "li-a")])

    assert resp.status_code == 503
    assert resp.json()["error"] == "datastore_unavailable"


def test_lowering_cap_below_active_count_is_rejected(client):
    _seed(client)

    resp = client.put("/products/print-aurora", json={"edition_total": 1})

    assert resp.status_code == 409
    body = resp.json()
    assert (body["error"], body["active_count"], body["edition_total"]) == ("capacity_exceeded", 3, 1)
    editions = client.get("/products/print-aurora/editions").json()
    assert editions["edition_total"] == 3
    assert [e["edition_number"] for e in editions["editions"]] == [1, 2, 3]
    assert client.get("/audit").json()["ok"] is True


def test_put_product_only_changes_fields_sent(client):
    _seed(client)

    resp = client.put("/products/print-aurora", json={"title": "Aurora (framed)"})
    assert resp.status_code == 200
    assert resp.json()["product"]["title"] == "Aurora (framed)"
    assert resp.json()["product"]["edition_total"] == 3

    resp = client.put("/products/print-aurora", json={"edition_total": None})
    assert resp.status_code == 200
    product = resp.json()["product"]
    assert (product["title"], product["edition_total"]) == ("Aurora (framed)", None)
