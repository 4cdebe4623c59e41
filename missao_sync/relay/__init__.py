"""
Relay server for missao-sync

A FastAPI application exposing get / upsert / subscribe over one SQLite
row per document, used as the remote store by HttpRemote.
"""

from .models import StateChangedMessage, StateRecord, StateUpsertRequest
from .server import RelayHub, RelayServer, create_relay_app
from .store import DocumentRowStore

__all__ = [
    'StateChangedMessage',
    'StateRecord',
    'StateUpsertRequest',
    'RelayHub',
    'RelayServer',
    'create_relay_app',
    'DocumentRowStore',
]
