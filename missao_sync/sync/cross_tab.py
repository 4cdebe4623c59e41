"""
Cross-tab channel

Delivers snapshots written by other contexts on the same device. The
engine only knows the CrossTabChannel interface.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List

from .storage import KeyValueStore, Unsubscribe

logger = logging.getLogger('missao_sync.sync.cross_tab')

SnapshotCallback = Callable[[str], None]


class CrossTabChannel(ABC):
    """Same-device broadcast of serialized documents"""

    @abstractmethod
    def listen(self, callback: SnapshotCallback) -> Unsubscribe:
        """Receive raw snapshots published by other contexts"""

    @abstractmethod
    def close(self) -> None:
        """Stop delivering; idempotent"""


class StorageEventChannel(CrossTabChannel):
    """Channel backed by change notifications of the shared key-value store"""

    def __init__(self, store: KeyValueStore, key: str):
        self.store = store
        self.key = key
        self._unsubscribers: List[Unsubscribe] = []
        self._closed = False

    def listen(self, callback: SnapshotCallback) -> Unsubscribe:
        if self._closed:
            raise RuntimeError("channel is closed")

        unsubscribe = self.store.subscribe(self.key, callback)
        self._unsubscribers.append(unsubscribe)
        logger.debug(f"Listening for cross-tab changes on '{self.key}'")

        def stop():
            if unsubscribe in self._unsubscribers:
                self._unsubscribers.remove(unsubscribe)
            unsubscribe()

        return stop

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        logger.debug(f"Closed cross-tab channel on '{self.key}'")
