#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

import requests

PRODUCT_ID = "print-aurora"


def _records() -> list[dict]:
    return [
        {
            "source_kind": "commerce",
            "source_id": "A",
            "display_number": "#1501",
            "financial_state": "paid",
            "fulfillment_state": "fulfilled",
            "purchased_at": "2026-03-01T10:00:00Z",
            "contact": {"email": "ada@example.com", "name": "Ada"},
            "line_items": [{"line_item_id": "li-a", "product_id": PRODUCT_ID, "unit_price": 12000}],
        },
        {
            "source_kind": "commerce",
            "source_id": "B",
            "display_number": "#1502",
            "financial_state": "paid",
            "purchased_at": "2026-03-01T11:00:00Z",
            "contact": {"email": "grace@example.com", "name": "Grace"},
            "line_items": [{"line_item_id": "li-b", "product_id": PRODUCT_ID, "unit_price": 12000}],
        },
        {
            "source_kind": "warehouse",
            "source_id": "W-77",
            "display_number": "1502-W",
            "fulfillment_state": "fulfilled",
            "purchased_at": "2026-03-01T11:05:00Z",
            "contact": {"phone": "+1 555 0102", "shipping_address": {"city": "Arlington"}},
        },
        {
            "source_kind": "commerce",
            "source_id": "C",
            "display_number": "#1503",
            "financial_state": "paid",
            "purchased_at": "2026-03-01T12:00:00Z",
            "contact": {"email": "linus@example.com"},
            "line_items": [{"line_item_id": "li-c", "product_id": PRODUCT_ID, "unit_price": 12000}],
        },
    ]


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a small edition run and print its numbering")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--refund-first", action="store_true", help="Then refund order 1501 and resync")
    args = parser.parse_args()

    resp = requests.put(
        f"{args.base_url}/products/{PRODUCT_ID}",
        json={"title": "Aurora (signed print)", "edition_total": 3},
        timeout=60,
    )
    resp.raise_for_status()

    records = _records()
    resp = requests.post(f"{args.base_url}/orders/sync", json=records, timeout=60)
    resp.raise_for_status()

    if args.refund_first:
        records[0]["financial_state"] = "refunded"
        records[0]["line_items"][0]["refund_state"] = "full"
        resp = requests.post(f"{args.base_url}/orders/sync", json=records[:1], timeout=60)
        resp.raise_for_status()

    editions = requests.get(f"{args.base_url}/products/{PRODUCT_ID}/editions", timeout=60)
    editions.raise_for_status()
    print(json.dumps(editions.json(), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
