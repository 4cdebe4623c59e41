"""
Per-device key-value storage

A KeyValueStore instance stands for one execution context (a tab, a
process). Several instances share the same physical storage; a write made
through one instance is reported to subscribers of every *other* instance,
which is the signal the cross-tab channel is built on.
"""

import asyncio
import logging
import os
import re
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..core.errors import PersistenceError

logger = logging.getLogger('missao_sync.sync.storage')

ChangeCallback = Callable[[str], None]
Unsubscribe = Callable[[], None]


class KeyValueStore(ABC):
    """Synchronous string key-value storage shared between contexts"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None"""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Store a value.

        Raises:
            PersistenceError: if the write fails
        """

    @abstractmethod
    def subscribe(self, key: str, callback: ChangeCallback) -> Unsubscribe:
        """
        Observe writes to ``key`` made by other contexts.

        Writes made through this instance, and writes that leave the value
        unchanged, are never reported.
        """

    def close(self) -> None:
        """Release watchers; safe to call more than once"""

    async def aclose(self) -> None:
        """Close and wait for any background watcher to finish"""
        self.close()


class _Subscriptions:
    """Key -> callbacks registry with idempotent unsubscribe handles"""

    def __init__(self):
        self._callbacks: Dict[str, List[ChangeCallback]] = {}
        self._lock = threading.Lock()

    def add(self, key: str, callback: ChangeCallback) -> Unsubscribe:
        with self._lock:
            self._callbacks.setdefault(key, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._callbacks.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._callbacks.pop(key, None)

        return unsubscribe

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._callbacks)

    def for_key(self, key: str) -> List[ChangeCallback]:
        with self._lock:
            return list(self._callbacks.get(key, []))

    def clear(self):
        with self._lock:
            self._callbacks.clear()

    def notify(self, key: str, value: str):
        for callback in self.for_key(key):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"Error in storage change callback for '{key}': {e}")


class MemoryStorageArea:
    """
    In-process storage shared by several MemoryKeyValueStore contexts.

    Args:
        quota_bytes: Optional cap on the total size of stored values
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self._stores: List['MemoryKeyValueStore'] = []
        self._lock = threading.Lock()

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._data)

    def _attach(self, store: 'MemoryKeyValueStore'):
        with self._lock:
            self._stores.append(store)

    def _detach(self, store: 'MemoryKeyValueStore'):
        with self._lock:
            if store in self._stores:
                self._stores.remove(store)

    def _write(self, writer: 'MemoryKeyValueStore', key: str, value: str) -> List['MemoryKeyValueStore']:
        with self._lock:
            if self._data.get(key) == value:
                return []
            if self.quota_bytes is not None:
                used = sum(len(v.encode('utf-8')) for k, v in self._data.items() if k != key)
                if used + len(value.encode('utf-8')) > self.quota_bytes:
                    raise PersistenceError(f"storage quota of {self.quota_bytes} bytes exceeded writing '{key}'")
            self._data[key] = value
            return [store for store in self._stores if store is not writer]

    def _read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)


class MemoryKeyValueStore(KeyValueStore):
    """
    One context attached to a MemoryStorageArea.

    Change notifications are queued on the running event loop when there is
    one, mirroring how storage events arrive after the writer returns;
    without a loop they are delivered synchronously.
    """

    def __init__(self, area: Optional[MemoryStorageArea] = None, name: Optional[str] = None):
        self.area = area or MemoryStorageArea()
        self.name = name or f"context-{uuid.uuid4().hex[:6]}"
        self._subscriptions = _Subscriptions()
        self._closed = False
        self.area._attach(self)

    def get(self, key: str) -> Optional[str]:
        return self.area._read(key)

    def set(self, key: str, value: str) -> None:
        for store in self.area._write(self, key, value):
            store._deliver(key, value)

    def subscribe(self, key: str, callback: ChangeCallback) -> Unsubscribe:
        return self._subscriptions.add(key, callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._subscriptions.clear()
        self.area._detach(self)

    def _deliver(self, key: str, value: str):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            loop.call_soon(self._subscriptions.notify, key, value)
        else:
            self._subscriptions.notify(key, value)


class FileKeyValueStore(KeyValueStore):
    """
    One JSON file per key inside a directory, shared between processes.

    Writes are atomic (temp file + os.replace). Other processes' writes are
    picked up by an asyncio polling task started on first subscribe.
    """

    def __init__(self, directory, poll_interval: float = 0.25):
        self.directory = Path(directory)
        self.poll_interval = poll_interval
        self._subscriptions = _Subscriptions()
        self._seen: Dict[str, Optional[str]] = {}
        self._signatures: Dict[str, Optional[Tuple[int, int, int]]] = {}
        self._watch_task: Optional[asyncio.Task] = None
        self._lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        safe = re.sub(r'[^A-Za-z0-9._-]', '_', key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            return self.path_for(key).read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read '{key}': {e}")

    def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        with self._lock:
            if self.get(key) == value:
                self._remember(key, value)
                return
            tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                tmp.write_text(value, encoding='utf-8')
                os.replace(tmp, path)
            except OSError as e:
                try:
                    tmp.unlink()
                except OSError:
                    pass
                raise PersistenceError(f"Failed to write '{key}': {e}")
            self._remember(key, value)

    def subscribe(self, key: str, callback: ChangeCallback) -> Unsubscribe:
        """
        Observe other processes' writes to ``key``.

        Must be called from a running event loop; the polling task is bound
        to it.
        """
        loop = asyncio.get_running_loop()
        if key not in self._seen:
            self._remember(key, self.get(key))
        unsubscribe = self._subscriptions.add(key, callback)
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = loop.create_task(self._watch_loop())
            logger.debug(f"Started file watcher for {self.directory}")
        return unsubscribe

    def close(self) -> None:
        self._subscriptions.clear()
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            logger.debug(f"Stopped file watcher for {self.directory}")
        self._watch_task = None

    async def aclose(self) -> None:
        task = self._watch_task
        self.close()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def poll(self) -> int:
        """
        Check watched keys once.

        Returns:
            Number of keys whose change was delivered
        """
        delivered = 0
        for key in self._subscriptions.keys():
            value = self._changed_value(key)
            if value is not None:
                self._subscriptions.notify(key, value)
                delivered += 1
        return delivered

    async def _watch_loop(self):
        while True:
            try:
                await asyncio.sleep(self.poll_interval)
                self.poll()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error polling {self.directory}: {e}")

    def _signature(self, key: str) -> Optional[Tuple[int, int, int]]:
        try:
            stat = self.path_for(key).stat()
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _remember(self, key: str, value: Optional[str]):
        self._seen[key] = value
        self._signatures[key] = self._signature(key)

    def _changed_value(self, key: str) -> Optional[str]:
        with self._lock:
            signature = self._signature(key)
            if signature is None or signature == self._signatures.get(key):
                return None
            value = self.get(key)
            self._signatures[key] = signature
            if value is None or value == self._seen.get(key):
                return None
            self._seen[key] = value
            return value
