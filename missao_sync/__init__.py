"""
missao-sync

Keeps one shared mission document (locations, goals, commitment logs)
consistent across tabs on a device, a remote authoritative store and live
observers, with last-write-wins at whole-document granularity.
"""

from .core.errors import (
    MissaoSyncError,
    MigrationError,
    ValidationError,
    PersistenceError,
    RemoteUnavailableError,
    EngineNotReadyError,
    ConfigurationError,
)
from .core.reconciliation import EngineState, Origin, ReconciliationEngine
from .model import CommitmentKind, Document, default_document, migrate
from .services import MutationService, SyncApplication, create_application

__version__ = "1.0.0"

__all__ = [
    'MissaoSyncError',
    'MigrationError',
    'ValidationError',
    'PersistenceError',
    'RemoteUnavailableError',
    'EngineNotReadyError',
    'ConfigurationError',
    'EngineState',
    'Origin',
    'ReconciliationEngine',
    'CommitmentKind',
    'Document',
    'default_document',
    'migrate',
    'MutationService',
    'SyncApplication',
    'create_application',
]
