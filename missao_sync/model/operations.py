"""
Pure document transformations

Each function takes the current Document plus operation arguments and
returns the next Document. None of them touch I/O; the reconciliation
engine applies them, validates the result and fans it out.
"""

from dataclasses import replace
from typing import Any, Dict, Optional

from ..core.errors import ValidationError
from .document import (
    AdminMode,
    CommitmentEntry,
    CommitmentKind,
    Document,
    Location,
    ViewMode,
    default_document,
)

# Location attributes that may be edited in place, mapped to their type
EDITABLE_LOCATION_FIELDS = frozenset({
    'name',
    'region',
    'full_name',
    'address',
    'pastors',
    'base_disciples',
    'base_cells',
})


def add_commitment(
    document: Document,
    kind: CommitmentKind,
    location_id: int,
    amount: int,
    name: str,
    entry_id: str,
    timestamp: int,
) -> Document:
    """Prepend a new entry to the log for ``kind`` (newest-first)"""
    location = document.find_location(location_id)
    if location is None:
        raise ValidationError(f"unknown location {location_id}")

    entry = CommitmentEntry(
        id=entry_id,
        name=name,
        amount=amount,
        location_id=location_id,
        location_name=location.name,
        timestamp=timestamp,
    )
    log = (entry,) + document.commitments_for(kind)
    return replace(document, **{kind.log_field: log}).with_derived_totals()


def remove_commitment(document: Document, kind: CommitmentKind, entry_id: str) -> Document:
    log = document.commitments_for(kind)
    remaining = tuple(entry for entry in log if entry.id != entry_id)
    if len(remaining) == len(log):
        raise ValidationError(f"unknown {kind.value} commitment {entry_id}")
    return replace(document, **{kind.log_field: remaining}).with_derived_totals()


def update_location(document: Document, location_id: int, changes: Dict[str, Any]) -> Document:
    """
    Edit baseline counters or descriptive fields of one location.

    Commitment entries keep the location name they were created with.
    """
    if document.find_location(location_id) is None:
        raise ValidationError(f"unknown location {location_id}")

    unknown = sorted(set(changes) - EDITABLE_LOCATION_FIELDS)
    if unknown:
        raise ValidationError(f"cannot edit location field(s): {', '.join(unknown)}")

    locations = tuple(
        replace(location, **changes) if location.id == location_id else location
        for location in document.locations
    )
    return replace(document, locations=locations).with_derived_totals()


def add_location(
    document: Document,
    name: str,
    region: str,
    base_disciples: int = 0,
    base_cells: int = 0,
    full_name: Optional[str] = None,
    address: Optional[str] = None,
    pastors: Optional[str] = None,
) -> Document:
    """Append a location with id max(existing) + 1"""
    location = Location(
        id=document.next_location_id(),
        name=name,
        region=region,
        base_disciples=base_disciples,
        base_cells=base_cells,
        full_name=full_name,
        address=address,
        pastors=pastors,
    )
    return replace(document, locations=document.locations + (location,)).with_derived_totals()


def remove_location(document: Document, location_id: int) -> Document:
    """Drop a location and, in the same step, every commitment that points at it"""
    if document.find_location(location_id) is None:
        raise ValidationError(f"unknown location {location_id}")

    return replace(
        document,
        locations=tuple(loc for loc in document.locations if loc.id != location_id),
        disciple_commitments=tuple(
            entry for entry in document.disciple_commitments if entry.location_id != location_id
        ),
        cell_commitments=tuple(
            entry for entry in document.cell_commitments if entry.location_id != location_id
        ),
    ).with_derived_totals()


def set_view_mode(document: Document, mode: ViewMode) -> Document:
    return replace(document, view_mode=mode)


def set_admin_mode(document: Document, mode: AdminMode) -> Document:
    return replace(document, admin_mode=mode)


def set_goal(document: Document, kind: CommitmentKind, goal: int) -> Document:
    return replace(document, **{kind.goal_field: goal})


def reset(document: Document) -> Document:
    return default_document()
