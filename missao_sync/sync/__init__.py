"""
Replication channels for missao-sync

Key Components:
- KeyValueStore: per-device storage shared by execution contexts
- LocalPersistence: snapshot load/save with legacy key fallback
- CrossTabChannel: same-device broadcast of snapshots
- RemoteStore / RemoteSyncAdapter: authoritative remote row and its push queue
"""

from .storage import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore, MemoryStorageArea
from .persistence import LEGACY_STORAGE_KEY, STORAGE_KEY, LocalPersistence
from .cross_tab import CrossTabChannel, StorageEventChannel
from .remote_store import HttpRemote, MemoryRemote, MemoryRemoteBackend, NullRemote, RemoteStore
from .remote_sync import RemoteSyncAdapter

__all__ = [
    'KeyValueStore',
    'MemoryStorageArea',
    'MemoryKeyValueStore',
    'FileKeyValueStore',
    'LocalPersistence',
    'STORAGE_KEY',
    'LEGACY_STORAGE_KEY',
    'CrossTabChannel',
    'StorageEventChannel',
    'RemoteStore',
    'NullRemote',
    'MemoryRemoteBackend',
    'MemoryRemote',
    'HttpRemote',
    'RemoteSyncAdapter',
]
