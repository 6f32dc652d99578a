from edition_ledger.domain.orders.matching import (
    AmbiguousMatch,
    GroupingResult,
    RecordGroup,
    group_records,
    merge_contact,
    normalize_display_number,
)
from edition_ledger.domain.orders.resolver import AmbiguousMergeError, OrderResolver, ResolveResult

__all__ = [
    "AmbiguousMatch",
    "AmbiguousMergeError",
    "GroupingResult",
    "OrderResolver",
    "RecordGroup",
    "ResolveResult",
    "group_records",
    "merge_contact",
    "normalize_display_number",
]
