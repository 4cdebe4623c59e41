"""
Document model for missao-sync

Key Components:
- Document / Location / CommitmentEntry: immutable replicated aggregate
- migrate: upgrade any shipped schema to the current one
- validate_document / ensure_valid: invariants checked on every transition
- operations: pure Document -> Document transformations
"""

from .document import (
    CURRENT_SCHEMA_VERSION,
    AdminMode,
    CommitmentEntry,
    CommitmentKind,
    Document,
    Location,
    ViewMode,
    default_document,
    document_from_dict,
)
from .invariants import ensure_valid, validate_document
from .migration import detect_schema_version, migrate
from . import operations

__all__ = [
    'CURRENT_SCHEMA_VERSION',
    'AdminMode',
    'CommitmentEntry',
    'CommitmentKind',
    'Document',
    'Location',
    'ViewMode',
    'default_document',
    'document_from_dict',
    'ensure_valid',
    'validate_document',
    'detect_schema_version',
    'migrate',
    'operations',
]
