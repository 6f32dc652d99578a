from __future__ import annotations

import itertools
from datetime import timedelta

import pytest

from edition_ledger.domain.orders import group_records, merge_contact, normalize_display_number

WINDOW = timedelta(hours=72)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("#1501", "1501"),
        ("1501", "1501"),
        ("  #01501 ", "1501"),
        ("1502-W", "1502"),
        ("##1503/2", "1503"),
        ("W-1501", None),
        ("#", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_display_number(raw, expected):
    assert normalize_display_number(raw) == expected


def _snapshot(result):
    return (
        sorted((g.canonical_id, tuple(sorted(r.identity for r in g.records))) for g in result.groups),
        sorted((a.match_key, a.candidate_ids, a.reason) for a in result.ambiguous),
    )


def test_same_key_merges_with_commerce_authoritative(make_record):
    commerce = make_record("A", display_number="1501", fulfillment_state="fulfilled")
    manual = make_record("M1", source_kind="manual", display_number="#1501", email="a@b.com")

    result = group_records([manual, commerce], WINDOW)

    assert result.ambiguous == []
    assert len(result.groups) == 1
    group = result.groups[0]
    assert group.canonical_id == "A"
    assert group.provisional is False
    assert group.authoritative.fulfillment_state == "fulfilled"
    assert group.contact.email == "a@b.com"


def test_same_email_different_keys_never_merge(make_record):
    first = make_record("A", display_number="1501", email="a@b.com")
    second = make_record("B", display_number="1502", email="a@b.com", hours=1)

    result = group_records([first, second], WINDOW)

    assert [g.canonical_id for g in result.groups] == ["A", "B"]
    assert result.ambiguous == []


def test_linked_order_id_joins_records_without_display_numbers(make_record):
    commerce = make_record("A", display_number="1501")
    warehouse = make_record("W9", source_kind="warehouse", linked_order_id="A", email="ship@b.com")

    result = group_records([warehouse, commerce], WINDOW)

    assert len(result.groups) == 1
    assert result.groups[0].canonical_id == "A"
    assert result.groups[0].contact.email == "ship@b.com"


def test_provisional_canonical_ids(make_record):
    warehouse = make_record("W9", source_kind="warehouse", display_number="1501")
    manual = make_record("M1", source_kind="manual", display_number="1501")

    result = group_records([manual, warehouse], WINDOW)

    assert [g.canonical_id for g in result.groups] == ["WH-W9"]
    assert result.groups[0].provisional is True

    only_manual = group_records([manual], WINDOW)
    assert only_manual.groups[0].canonical_id == "MAN-M1"


def test_two_commerce_records_with_same_key_are_ambiguous(make_record):
    first = make_record("A", display_number="1501")
    second = make_record("B", display_number="#1501")

    result = group_records([first, second], WINDOW)

    assert [g.canonical_id for g in result.groups] == ["A", "B"]
    assert len(result.ambiguous) == 1
    assert result.ambiguous[0].match_key == "1501"
    assert result.ambiguous[0].candidate_ids == ("A", "B")


def test_contact_fallback_for_keyless_record(make_record):
    commerce = make_record("A", display_number="1501", email="a@b.com")
    warehouse = make_record("W9", source_kind="warehouse", email="A@B.com ", hours=30)

    result = group_records([commerce, warehouse], WINDOW)

    assert len(result.groups) == 1
    assert {r.source_id for r in result.groups[0].records} == {"A", "W9"}


def test_contact_fallback_respects_window(make_record):
    commerce = make_record("A", display_number="1501", email="a@b.com")
    warehouse = make_record("W9", source_kind="warehouse", email="a@b.com", hours=80)

    result = group_records([commerce, warehouse], WINDOW)

    assert [g.canonical_id for g in result.groups] == ["A", "WH-W9"]


def test_contact_fallback_with_two_candidates_is_ambiguous(make_record):
    first = make_record("A", display_number="1501", email="a@b.com")
    second = make_record("B", display_number="1502", email="a@b.com", hours=2)
    warehouse = make_record("W9", source_kind="warehouse", email="a@b.com", hours=1)

    result = group_records([first, second, warehouse], WINDOW)

    assert [g.canonical_id for g in result.groups] == ["A", "B", "WH-W9"]
    assert len(result.ambiguous) == 1
    assert result.ambiguous[0].candidate_ids == ("A", "B", "WH-W9")


def test_grouping_ignores_arrival_order(make_record):
    records = [
        make_record("A", display_number="1501"),
        make_record("M1", source_kind="manual", display_number="1501", email="a@b.com"),
        make_record("W9", source_kind="warehouse", email="a@b.com", hours=3),
        make_record("B", display_number="1502", email="c@d.com"),
    ]

    snapshots = {repr(_snapshot(group_records(list(p), WINDOW))) for p in itertools.permutations(records)}

    assert len(snapshots) == 1


def test_merge_contact_prefers_commerce_then_warehouse_then_manual(make_record):
    commerce = make_record("A", contact={"email": None, "name": "Ada L."})
    warehouse = make_record("W9", source_kind="warehouse", contact={"email": "wh@b.com", "phone": "555"})
    manual = make_record("M1", source_kind="manual", contact={"email": "man@b.com", "phone": "777"})

    contact = merge_contact([manual, warehouse, commerce])

    assert contact.name == "Ada L."
    assert contact.email == "wh@b.com"
    assert contact.phone == "555"


def test_contact_fallback_joins_keyless_records_to_each_other(make_record):
    warehouse = make_record("W-77", source_kind="warehouse", email="a@b.com")
    manual = make_record("M-9", source_kind="manual", email="A@b.com", hours=1)
    stranger = make_record("M-10", source_kind="manual", email="c@d.com", hours=1)

    result = group_records([manual, stranger, warehouse], WINDOW)

    assert result.ambiguous == []
    assert [(g.canonical_id, sorted(r.source_id for r in g.records)) for g in result.groups] == [
        ("MAN-M-10", ["M-10"]),
        ("WH-W-77", ["M-9", "W-77"]),
    ]
    assert result.groups[1].provisional is True


def test_keyless_contact_match_between_same_source_records_is_ambiguous(make_record):
    first = make_record("M-9", source_kind="manual", email="a@b.com")
    second = make_record("M-10", source_kind="manual", email="a@b.com", hours=2)
    warehouse = make_record("W-77", source_kind="warehouse", email="a@b.com", hours=1)

    result = group_records([warehouse, second, first], WINDOW)

    assert [g.canonical_id for g in result.groups] == ["MAN-M-10", "MAN-M-9", "WH-W-77"]
    assert len(result.ambiguous) == 1
    assert result.ambiguous[0].candidate_ids == ("MAN-M-10", "MAN-M-9", "WH-W-77")
    assert "more than one manual record" in result.ambiguous[0].reason


def test_keyless_grouping_ignores_arrival_order(make_record):
    records = [
        make_record("W-77", source_kind="warehouse", email="a@b.com"),
        make_record("M-9", source_kind="manual", email="a@b.com", hours=1),
        make_record("A", display_number="1501", email="z@b.com", hours=1),
        make_record("W-78", source_kind="warehouse", email="z@b.com", hours=2),
    ]

    snapshots = {repr(_snapshot(group_records(list(p), WINDOW))) for p in itertools.permutations(records)}

    assert len(snapshots) == 1
