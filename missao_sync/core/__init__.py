"""
Core Infrastructure for missao-sync

Key Components:
- ConfigurationManager: YAML / .env / environment configuration, pydantic-validated
- EventBus: observability events for every accepted or rejected transition
- errors: the error taxonomy shared by every layer
- setup_logging: console + rotating file handlers

The ReconciliationEngine lives in core.reconciliation and is imported from
there directly, since it depends on the model and sync packages.
"""

from .errors import (
    MissaoSyncError,
    MigrationError,
    ValidationError,
    PersistenceError,
    RemoteUnavailableError,
    EngineNotReadyError,
    ConfigurationError,
)
from .config_manager import ConfigurationManager, Environment, SyncConfiguration
from .event_bus import (
    EventBus,
    Event,
    EventPriority,
    DocumentReplacedEvent,
    ReplacementRejectedEvent,
    PersistenceFailedEvent,
    ConnectivityChangedEvent,
    MilestoneReachedEvent,
)
from .logging_setup import setup_logging

__all__ = [
    'MissaoSyncError',
    'MigrationError',
    'ValidationError',
    'PersistenceError',
    'RemoteUnavailableError',
    'EngineNotReadyError',
    'ConfigurationError',
    'ConfigurationManager',
    'Environment',
    'SyncConfiguration',
    'EventBus',
    'Event',
    'EventPriority',
    'DocumentReplacedEvent',
    'ReplacementRejectedEvent',
    'PersistenceFailedEvent',
    'ConnectivityChangedEvent',
    'MilestoneReachedEvent',
    'setup_logging',
]
