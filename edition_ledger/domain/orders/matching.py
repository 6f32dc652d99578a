"""Pure identity matching for raw order records.

Records from the commerce platform, the warehouse and manual entry are linked
into groups, one group per real purchase:

* equal normalized display numbers,
* equal origin identifiers (a shared ``source_id`` or a ``linked_order_id``
  pointing at another record),
* as a fallback, for groups that carry no display number at all, the same
  contact email with purchase times inside a tolerance window. A keyless
  group joins the single keyed group it matches; keyless groups no keyed
  group claims are joined to each other the same way.

Grouping depends only on the set of records, never on their arrival order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from itertools import combinations
from typing import Iterable

from edition_ledger.domain.states import SOURCE_PRIORITY, SYNTHETIC_ID_PREFIX, source_rank
from edition_ledger.ingest.records import ContactModel, RawOrderRecord

_PREFIX_RE = re.compile(r"^[^0-9A-Za-z]+")
_LEADING_DIGITS_RE = re.compile(r"^(\d+)")

CONTACT_FIELDS = ("email", "name", "phone", "shipping_address")


def normalize_display_number(text: str | None) -> str | None:
    if not text:
        return None
    stripped = _PREFIX_RE.sub("", text.strip())
    match = _LEADING_DIGITS_RE.match(stripped)
    if match is None:
        return None
    return str(int(match.group(1)))


def canonical_id_for(record: RawOrderRecord) -> str:
    if record.source_kind == "commerce":
        return record.source_id
    return f"{SYNTHETIC_ID_PREFIX[record.source_kind]}-{record.source_id}"


def _record_sort_key(record: RawOrderRecord) -> tuple[int, str]:
    return (source_rank(record.source_kind), record.source_id)


def merge_contact(records: Iterable[RawOrderRecord]) -> ContactModel:
    """First non-null value per field, walking records in source priority order."""
    ordered = sorted(records, key=_record_sort_key)
    merged: dict[str, object] = {}
    for name in CONTACT_FIELDS:
        merged[name] = next(
            (getattr(r.contact, name) for r in ordered if getattr(r.contact, name)),
            None,
        )
    return ContactModel.model_validate(merged)


@dataclass
class RecordGroup:
    records: list[RawOrderRecord]

    def __post_init__(self) -> None:
        self.records = sorted(self.records, key=_record_sort_key)

    @property
    def authoritative(self) -> RawOrderRecord:
        return self.records[0]

    @property
    def canonical_id(self) -> str:
        return canonical_id_for(self.authoritative)

    @property
    def provisional(self) -> bool:
        return self.authoritative.source_kind != "commerce"

    @property
    def match_key(self) -> str | None:
        for record in self.records:
            key = normalize_display_number(record.display_number)
            if key is not None:
                return key
        return None

    @property
    def lock_key(self) -> str:
        return self.match_key or self.canonical_id

    @property
    def contact(self) -> ContactModel:
        return merge_contact(self.records)


@dataclass(frozen=True)
class AmbiguousMatch:
    match_key: str | None
    candidate_ids: tuple[str, ...]
    reason: str


@dataclass
class GroupingResult:
    groups: list[RecordGroup] = field(default_factory=list)
    ambiguous: list[AmbiguousMatch] = field(default_factory=list)


class _DisjointSet:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, idx: int) -> int:
        while self.parent[idx] != idx:
            self.parent[idx] = self.parent[self.parent[idx]]
            idx = self.parent[idx]
        return idx

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[max(root_a, root_b)] = min(root_a, root_b)


def _conflict(records: list[RawOrderRecord]) -> str | None:
    keys = {normalize_display_number(r.display_number) for r in records} - {None}
    if len(keys) > 1:
        return f"records carry different display numbers: {', '.join(sorted(keys))}"
    for kind in SOURCE_PRIORITY:
        ids = {r.source_id for r in records if r.source_kind == kind}
        if len(ids) > 1:
            return f"more than one {kind} record: {', '.join(sorted(ids))}"
    return None


def _within_window(a: RawOrderRecord, b: RawOrderRecord, window: timedelta) -> bool:
    if not a.contact.email or a.contact.email != b.contact.email:
        return False
    return abs(a.purchased_at - b.purchased_at) <= window


def _contact_match(left: list[RawOrderRecord], right: list[RawOrderRecord], window: timedelta) -> bool:
    return any(_within_window(a, b, window) for a in left for b in right)


def group_records(records: Iterable[RawOrderRecord], window: timedelta) -> GroupingResult:
    unique: dict[tuple[str, str], RawOrderRecord] = {}
    for record in records:
        unique[record.identity] = record
    ordered = sorted(unique.values(), key=_record_sort_key)

    links = _DisjointSet(len(ordered))
    first_by_key: dict[str, int] = {}
    first_by_id: dict[str, int] = {}
    for idx, record in enumerate(ordered):
        key = normalize_display_number(record.display_number)
        if key is not None:
            links.union(first_by_key.setdefault(key, idx), idx)
        links.union(first_by_id.setdefault(record.source_id, idx), idx)
    for idx, record in enumerate(ordered):
        if record.linked_order_id and record.linked_order_id in first_by_id:
            links.union(first_by_id[record.linked_order_id], idx)

    components: dict[int, list[int]] = {}
    for idx in range(len(ordered)):
        components.setdefault(links.find(idx), []).append(idx)

    result = GroupingResult()
    clean: list[list[RawOrderRecord]] = []
    for members in components.values():
        grouped = [ordered[i] for i in members]
        reason = _conflict(grouped)
        if reason is None:
            clean.append(grouped)
            continue
        result.ambiguous.append(
            AmbiguousMatch(
                match_key=RecordGroup(grouped).match_key,
                candidate_ids=tuple(sorted(canonical_id_for(r) for r in grouped)),
                reason=reason,
            )
        )
        # Left unmerged: every record stands alone until an operator resolves it.
        result.groups.extend(RecordGroup([r]) for r in grouped)

    keyed = [g for g in clean if RecordGroup(g).match_key is not None]
    keyless = sorted(
        (g for g in clean if RecordGroup(g).match_key is None),
        key=lambda g: RecordGroup(g).canonical_id,
    )
    unattached: list[list[RawOrderRecord]] = []
    for orphan in keyless:
        candidates = [target for target in keyed if _contact_match(orphan, target, window)]
        if not candidates:
            unattached.append(orphan)
            continue
        if len(candidates) == 1 and _conflict(candidates[0] + orphan) is None:
            candidates[0].extend(orphan)
            continue
        result.ambiguous.append(
            AmbiguousMatch(
                match_key=None,
                candidate_ids=tuple(
                    sorted([RecordGroup(orphan).canonical_id] + [RecordGroup(c).canonical_id for c in candidates])
                ),
                reason="contact email and purchase date match more than one order"
                if len(candidates) > 1
                else "contact match conflicts with a record already merged",
            )
        )
        result.groups.append(RecordGroup(orphan))

    _link_keyless(unattached, window, result)
    result.groups.extend(RecordGroup(g) for g in keyed)
    result.groups.sort(key=lambda g: g.canonical_id)
    return result


def _link_keyless(groups: list[list[RawOrderRecord]], window: timedelta, result: GroupingResult) -> None:
    """Join keyless groups to each other by contact when no keyed group claims them."""
    links = _DisjointSet(len(groups))
    for i, j in combinations(range(len(groups)), 2):
        if _contact_match(groups[i], groups[j], window):
            links.union(i, j)

    components: dict[int, list[int]] = {}
    for idx in range(len(groups)):
        components.setdefault(links.find(idx), []).append(idx)

    for members in components.values():
        merged = [record for i in members for record in groups[i]]
        reason = _conflict(merged) if len(members) > 1 else None
        if reason is None:
            result.groups.append(RecordGroup(merged))
            continue
        result.ambiguous.append(
            AmbiguousMatch(
                match_key=None,
                candidate_ids=tuple(sorted(RecordGroup(groups[i]).canonical_id for i in members)),
                reason=f"contact email and purchase date link conflicting records: {reason}",
            )
        )
        result.groups.extend(RecordGroup(groups[i]) for i in members)
