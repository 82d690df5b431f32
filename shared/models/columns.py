"""
shared/models/columns.py
The fixed 14-column record layout (plus the intake sync flag) shared by the
admission controller, the reconciliation engine and the presentation layer.
Column order here is the compatibility contract.
"""

import re
from typing import Dict, List, Sequence

from shared.errors import LedgerSchemaError

# (field name, header label)
LEDGER_COLUMNS = (
    ("branch", "BRANCH"),
    ("social_handle", "FACEBOOK NAME"),
    ("client_name", "FULL NAME"),
    ("phone", "CONTACT NUMBER"),
    ("date", "DATE"),
    ("time", "TIME"),
    ("services", "SERVICES"),
    ("session", "SESSION"),
    ("status", "STATUS"),
    ("after_care", "ACK?"),
    ("payment_method", "M O P"),
    ("remarks", "REMARKS"),
    ("submission_type", "TYPE"),
    ("reference_code", "CLIENT #"),
)
SYNC_COLUMN = ("synced", "SYNCED")

FIELD_NAMES = tuple(field for field, _ in LEDGER_COLUMNS)
HEADER_LABELS = [label for _, label in LEDGER_COLUMNS]
INTAKE_HEADER_LABELS = HEADER_LABELS + [SYNC_COLUMN[1]]


def _squash(label: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(label).lower())


def build_column_map(header: Sequence[str], labels: Sequence[str] = HEADER_LABELS) -> Dict[str, int]:
    """
    Resolve every contract column against a stored header once.

    Labels match exactly or after dropping case and punctuation
    ("Contact Number" == "CONTACT NUMBER"). Returns field -> header index.
    Raises LedgerSchemaError naming every missing column.
    """
    exact = {str(h): i for i, h in enumerate(header)}
    squashed = {_squash(h): i for i, h in enumerate(header)}
    mapping: Dict[str, int] = {}
    missing: List[str] = []
    by_label = {label: field for field, label in LEDGER_COLUMNS + (SYNC_COLUMN,)}
    for label in labels:
        index = exact.get(label)
        if index is None:
            index = squashed.get(_squash(label))
        if index is None:
            missing.append(label)
        else:
            mapping[by_label[label]] = index
    if missing:
        raise LedgerSchemaError(f"Ledger header is missing required columns: {', '.join(missing)}")
    return mapping
