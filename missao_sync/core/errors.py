"""
Error taxonomy for missao-sync

Only ValidationError is allowed to stop a state transition. Everything else
is logged and the system keeps running on the last known document.
"""


class MissaoSyncError(Exception):
    """Base class for every error raised by missao-sync"""
    pass


class MigrationError(MissaoSyncError):
    """Persisted or received payload has an unknown or malformed shape"""
    pass


class ValidationError(MissaoSyncError):
    """A proposed document or mutation argument violates an invariant"""

    def __init__(self, message: str, problems=None):
        super().__init__(message)
        self.problems = list(problems or [])


class PersistenceError(MissaoSyncError):
    """Local key-value write failed (quota, permissions, disk)"""
    pass


class RemoteUnavailableError(MissaoSyncError):
    """Remote store could not be reached or answered with an error"""
    pass


class EngineNotReadyError(MissaoSyncError):
    """Operation needs a bootstrapped engine"""
    pass


class ConfigurationError(MissaoSyncError):
    """Raised when configuration is invalid or missing"""
    pass
