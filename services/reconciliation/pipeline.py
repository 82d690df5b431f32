"""
services/reconciliation/pipeline.py
Pure stages of a reconciliation run. Nothing here touches storage; the
engine (services/reconciliation/engine.py) feeds records in and commits
what comes out.

    GROUP → PURGE → DISTRIBUTE → DEDUP → SORT → RENDER
"""

from collections import OrderedDict
from datetime import date
from typing import Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from services.ledger.sharding import shard_name
from shared.models.models import LineKind
from shared.schemas.records import BookingRecord, IntakeEntry, LedgerLine
from shared.utils.normalize import (
    group_code,
    long_date_label,
    normalize_str,
    parse_booking_date,
    slot_minutes,
    slot_start_key,
    to_iso_date,
)

# ── Presentation constants ────────────────────────────────────

BRANCH_PRIORITY = {
    "PQ": 1, "PARANAQUE": 1, "PARAÑAQUE": 1,
    "SP": 2, "SAN PABLO": 2,
    "LP": 3, "LIPA": 3,
    "TG": 4, "TAGUIG": 4,
    "DM": 5, "DAS MARINAS": 5, "DASMARIÑAS": 5, "DASMARINAS": 5,
    "NV": 6, "NOVALICHES": 6,
}
UNKNOWN_BRANCH_PRIORITY = 999

GROUP_PALETTE = ["#e3f2fd", "#fff3e0", "#f3e5f5", "#e0f2f1", "#fff8e1"]

STYLE_DATE_HEADER = "date_header"
STYLE_DIVIDER = "divider"
STYLE_CANCELLED = "cancelled"
STYLE_DONE_SECOND = "done_second"
STYLE_DEFAULT = "default"

STYLES = {
    STYLE_DATE_HEADER: {"background": "#202124", "color": "#e6c200", "weight": "bold", "row_height": 21},
    STYLE_DIVIDER: {"background": "#6d28d9", "color": "#6d28d9", "weight": "normal", "row_height": 5},
    STYLE_CANCELLED: {"background": "#fca5a5", "color": "#7f1d1d", "weight": "normal", "row_height": 21},
    STYLE_DONE_SECOND: {"background": "#bbf7d0", "color": "#14532d", "weight": "normal", "row_height": 21},
    STYLE_DEFAULT: {"background": "#ffffff", "color": "#000000", "weight": "normal", "row_height": 21},
}
for _i, _color in enumerate(GROUP_PALETTE):
    STYLES[f"group_{_i}"] = {"background": _color, "color": "#000000", "weight": "normal", "row_height": 21}


def style_attributes(tag: str) -> Dict:
    return STYLES.get(tag, STYLES[STYLE_DEFAULT])


# ── Record classification ─────────────────────────────────────

def branch_priority(branch: str) -> int:
    return BRANCH_PRIORITY.get(str(branch or "").strip().upper(), UNKNOWN_BRANCH_PRIORITY)


def status_weight(record: BookingRecord) -> int:
    """active/pending 1, Done 2, Done 2nd session 3, Cancelled 4"""
    if record.is_cancelled:
        return 4
    if record.is_done:
        return 3 if record.is_second_session else 2
    return 1


def status_class(record: BookingRecord) -> str:
    if record.is_cancelled:
        return "cancelled"
    if record.is_done:
        return "done"
    return "active"


def takes_ordinal(record: BookingRecord) -> bool:
    """Done, non-2nd-session rows get a per-(date, branch) number in place of their code."""
    return record.is_done and not record.is_second_session


def _slot_identity(record: BookingRecord, default_year: Optional[int]) -> Tuple:
    return (
        to_iso_date(record.date, default_year),
        slot_start_key(record.time),
        normalize_str(record.branch),
        normalize_str(record.client_name),
    )


def _rendered_identity(record: BookingRecord, default_year: Optional[int]) -> Tuple:
    return _slot_identity(record, default_year) + (normalize_str(record.services),)


def identity_key(record: BookingRecord, default_year: Optional[int] = None) -> Tuple:
    """(date, slot start, branch, group code, status class, client name, services)"""
    iso, slot, branch, name, services = _rendered_identity(record, default_year)
    return (iso, slot, branch, group_code(record.reference_code), status_class(record), name, services)


# ── GROUP ─────────────────────────────────────────────────────

class IntakeGroups(NamedTuple):
    groups: "OrderedDict[str, List[IntakeEntry]]"
    manual: List[IntakeEntry]

    @property
    def codes(self) -> Set[str]:
        return set(self.groups)


def group_entries(entries: Iterable[IntakeEntry]) -> IntakeGroups:
    """Partition by group code; degenerate codes are processed one by one."""
    groups: "OrderedDict[str, List[IntakeEntry]]" = OrderedDict()
    manual: List[IntakeEntry] = []
    for entry in entries:
        code = group_code(entry.record.reference_code)
        if code:
            groups.setdefault(code, []).append(entry)
        else:
            manual.append(entry)
    return IntakeGroups(groups, manual)


# ── PURGE ─────────────────────────────────────────────────────

def purge_groups(
    rows: List[BookingRecord],
    codes: Set[str],
    incoming: Iterable[BookingRecord] = (),
    default_year: Optional[int] = None,
) -> List[BookingRecord]:
    """
    Drop rows belonging to a reprocessed group. Rendered Done rows carry an
    ordinal instead of their code, so an ordinal row is also dropped when a
    reprocessed row occupies its slot under the same client name and services.
    """
    reprocessed = {_rendered_identity(r, default_year) for r in incoming}
    kept = []
    for row in rows:
        if group_code(row.reference_code) in codes:
            continue
        if row.reference_code.strip().isdigit() and _rendered_identity(row, default_year) in reprocessed:
            continue
        kept.append(row)
    return kept


# ── DISTRIBUTE ────────────────────────────────────────────────

def distribute(
    records: Iterable[BookingRecord],
    today: Optional[date] = None,
) -> "OrderedDict[str, List[BookingRecord]]":
    """Shard name -> records, in input order. Unparseable dates land in 'Unsorted'."""
    shards: "OrderedDict[str, List[BookingRecord]]" = OrderedDict()
    for record in records:
        shards.setdefault(shard_name(record.date, today), []).append(record)
    return shards


# ── DEDUP ─────────────────────────────────────────────────────

def dedup_rows(rows: Iterable[BookingRecord], default_year: Optional[int] = None) -> List[BookingRecord]:
    """
    One survivor per identity key, in first-seen position.

    A row without a usable reference code matches a coded row that agrees on
    every other key part, and the coded row wins. Rows sharing a key that
    both carry a code keep the first encountered.
    """
    survivors: "OrderedDict[Tuple, BookingRecord]" = OrderedDict()
    coded_slots: Dict[Tuple, Tuple] = {}

    for row in rows:
        key = identity_key(row, default_year)
        base = key[:3] + key[4:]
        code = key[3]

        if code:
            if key in survivors:
                continue
            uncoded = base[:3] + ("",) + base[3:]
            if uncoded in survivors:
                # coded row takes over the uncoded row's position
                survivors = OrderedDict(
                    (key if k == uncoded else k, row if k == uncoded else v)
                    for k, v in survivors.items()
                )
            else:
                survivors[key] = row
            coded_slots.setdefault(base, key)
        else:
            if key in survivors or base in coded_slots:
                continue
            survivors[key] = row
    return list(survivors.values())


# ── SORT ──────────────────────────────────────────────────────

def sort_key(record: BookingRecord, default_year: Optional[int] = None) -> Tuple:
    day = parse_booking_date(record.date, default_year)
    date_key = (0, day.toordinal()) if day else (1, 0)
    weight = status_weight(record)
    minutes = slot_minutes(record.time)
    reference = record.reference_code.strip()
    if weight == 2:
        numbering = (0, int(reference)) if reference.isdigit() else (1, 0)
    else:
        numbering = (0, 0)
    return (
        date_key,
        branch_priority(record.branch),
        weight,
        minutes if minutes is not None else 99999,
        numbering,
        group_code(reference),
        record.is_joiner,
        tuple(record.to_row()),
    )


def sort_rows(rows: Iterable[BookingRecord], default_year: Optional[int] = None) -> List[BookingRecord]:
    """Total order, so any permutation of the input sorts the same way."""
    return sorted(rows, key=lambda r: sort_key(r, default_year))


# ── RENDER ────────────────────────────────────────────────────

def render_shard(rows: List[BookingRecord], default_year: Optional[int] = None) -> List[LedgerLine]:
    """
    Sorted records -> output lines with date headers, branch dividers,
    Done ordinals and style tags.
    """
    # Group sizes only count rows that keep their code once rendered
    sizes: Dict[str, int] = {}
    for row in rows:
        code = group_code(row.reference_code)
        if code and not takes_ordinal(row):
            sizes[code] = sizes.get(code, 0) + 1

    lines: List[LedgerLine] = []
    palette: Dict[str, str] = {}
    ordinals: Dict[Tuple[str, str], int] = {}
    last_label = ""
    last_branch = ""

    for row in rows:
        day = parse_booking_date(row.date, default_year)
        label = long_date_label(day) if day else ""
        branch = normalize_str(row.branch)

        if day and label != last_label:
            lines.append(LedgerLine(
                kind=LineKind.DATE_HEADER.value,
                record=BookingRecord(reference_code=label),
                style=STYLE_DATE_HEADER,
            ))
            last_label = label
            last_branch = ""

        if last_branch and branch != last_branch:
            lines.append(LedgerLine(kind=LineKind.DIVIDER.value, style=STYLE_DIVIDER))
        last_branch = branch

        code = group_code(row.reference_code)
        record = row
        if takes_ordinal(row):
            key = (label, branch)
            ordinals[key] = ordinals.get(key, 0) + 1
            record = row.model_copy(update={"reference_code": str(ordinals[key])})

        if row.is_cancelled:
            style = STYLE_CANCELLED
        elif row.is_done and row.is_second_session:
            style = STYLE_DONE_SECOND
        elif code and not takes_ordinal(row) and sizes.get(code, 0) > 1:
            if code not in palette:
                palette[code] = f"group_{len(palette) % len(GROUP_PALETTE)}"
            style = palette[code]
        else:
            style = STYLE_DEFAULT

        lines.append(LedgerLine(kind=LineKind.RECORD.value, record=record, style=style))
    return lines


def run_pipeline(rows: Iterable[BookingRecord], default_year: Optional[int] = None) -> List[LedgerLine]:
    """DEDUP → SORT → RENDER for one shard."""
    return render_shard(sort_rows(dedup_rows(rows, default_year), default_year), default_year)
