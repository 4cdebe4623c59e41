"""
Document invariants checked after every transition
"""

import logging
from typing import List

from ..core.errors import ValidationError
from .document import CommitmentKind, Document

logger = logging.getLogger('missao_sync.model.invariants')


def validate_document(document: Document) -> List[str]:
    """
    Collect every invariant violation in a document.

    Orphaned commitments (location removed without cascade) are tolerated
    and only logged.

    Returns:
        List of human-readable problems, empty when the document is valid
    """
    problems: List[str] = []

    seen_ids = set()
    for location in document.locations:
        if location.id in seen_ids:
            problems.append(f"duplicate location id {location.id}")
        seen_ids.add(location.id)
        if location.base_disciples < 0:
            problems.append(f"location {location.id}: baseDisciples must be >= 0")
        if location.base_cells < 0:
            problems.append(f"location {location.id}: baseCells must be >= 0")

    if document.disciple_goal < 1:
        problems.append(f"discipleGoal must be >= 1, got {document.disciple_goal}")
    if document.cell_goal < 1:
        problems.append(f"cellGoal must be >= 1, got {document.cell_goal}")

    for kind in CommitmentKind:
        entry_ids = set()
        for entry in document.commitments_for(kind):
            if entry.id in entry_ids:
                problems.append(f"{kind.value}: duplicate commitment id {entry.id}")
            entry_ids.add(entry.id)
            if entry.amount < 1:
                problems.append(f"{kind.value}: commitment {entry.id} amount must be >= 1")

    if document.with_derived_totals() != document:
        problems.append("derived location totals do not match baseline + commitments")

    orphans = document.orphan_commitments()
    if orphans:
        logger.debug(f"Tolerating {len(orphans)} orphaned commitment(s)")

    return problems


def ensure_valid(document: Document) -> Document:
    """Raise ValidationError unless the document satisfies every invariant"""
    problems = validate_document(document)
    if problems:
        raise ValidationError("; ".join(problems), problems)
    return document
