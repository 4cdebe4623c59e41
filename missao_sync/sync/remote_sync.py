"""
Remote Sync Adapter

Sits between the reconciliation engine and a RemoteStore. Pushes are
fire-and-forget from the engine's point of view: they are queued, coalesced
to the newest document and delivered by a background worker with bounded
retry. A failed push is logged and never undoes the local change.
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, Optional

from ..core.errors import RemoteUnavailableError
from ..core.event_bus import ConnectivityChangedEvent, EventBus
from ..model import Document
from .remote_store import RemoteStore, ReplaceCallback, Unsubscribe

logger = logging.getLogger('missao_sync.sync.remote_sync')

RECENT_PUSH_LIMIT = 16


class RemoteSyncAdapter:
    """
    Args:
        store: Remote store (NullRemote when no backend is configured)
        event_bus: Receives ConnectivityChangedEvent
        retry_attempts: Extra attempts after a failed push
        retry_delay: Base delay between attempts, multiplied by the attempt number
    """

    def __init__(
        self,
        store: RemoteStore,
        event_bus: Optional[EventBus] = None,
        retry_attempts: int = 3,
        retry_delay: float = 0.5
    ):
        self.store = store
        self.event_bus = event_bus
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

        self._pending: Optional[Document] = None
        self._in_flight = False
        self._recent_pushes: Deque[str] = deque(maxlen=RECENT_PUSH_LIMIT)
        self._lock = threading.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

        self._stats = {
            'pushes_requested': 0,
            'pushes_delivered': 0,
            'pushes_failed': 0,
            'pushes_coalesced': 0,
        }

        self._remove_connectivity_listener = store.add_connectivity_listener(self._on_connectivity_changed)

    @property
    def connected(self) -> bool:
        return self.store.connected

    @property
    def has_pending(self) -> bool:
        return self._pending is not None or self._in_flight

    def start(self):
        """Start the push worker on the running event loop"""
        if self._worker and not self._worker.done():
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._worker = self._loop.create_task(self._push_worker())
        if self._pending is not None:
            self._wakeup.set()
        logger.debug("Remote push worker started")

    async def pull(self) -> Optional[Dict[str, Any]]:
        """
        Fetch the remote payload.

        Raises:
            RemoteUnavailableError: when the remote cannot be reached
        """
        return await self.store.pull()

    def push(self, document: Document):
        """Queue ``document`` for delivery; returns immediately"""
        if self._closed:
            return
        with self._lock:
            if self._pending is not None:
                self._stats['pushes_coalesced'] += 1
            self._pending = document
            self._stats['pushes_requested'] += 1
            self._recent_pushes.append(document.fingerprint)

        if self._loop is not None and self._wakeup is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)

    async def bootstrap_remote(self, document: Document):
        """
        Create the remote row from a local document.

        Raises:
            RemoteUnavailableError: when the remote cannot be reached
        """
        with self._lock:
            self._recent_pushes.append(document.fingerprint)
        await self.store.push(document.to_dict())
        logger.info("Created remote document from local state")

    async def flush(self):
        """Wait until every queued push has been delivered or given up on"""
        if self._worker is None or self._worker.done():
            await self._drain()
            return
        while self.has_pending:
            await asyncio.sleep(0.01)

    def subscribe(self, on_replace: ReplaceCallback) -> Unsubscribe:
        return self.store.subscribe(on_replace)

    def is_recent_push(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._recent_pushes

    def acknowledge_push(self, fingerprint: str) -> bool:
        """
        Mark the feed echo of one of our pushes as seen.

        The feed is ordered, so pushes older than the echoed one have
        already echoed or never will; they are forgotten as well.

        Returns:
            True if ``fingerprint`` was one of our recent pushes
        """
        with self._lock:
            if fingerprint not in self._recent_pushes:
                return False
            while self._recent_pushes:
                if self._recent_pushes.popleft() == fingerprint:
                    break
            return True

    def forget_recent_pushes(self):
        with self._lock:
            self._recent_pushes.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'connected': self.connected,
            'pending': self.has_pending,
        }

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self._worker and not self._worker.done():
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None
        self._remove_connectivity_listener()
        await self.store.close()
        logger.debug("Remote sync adapter closed")

    async def _push_worker(self):
        while not self._closed:
            try:
                await self._wakeup.wait()
                self._wakeup.clear()
                await self._drain()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in remote push worker: {e}")
                await asyncio.sleep(self.retry_delay)

    async def _drain(self):
        while True:
            with self._lock:
                document = self._pending
                self._pending = None
                self._in_flight = document is not None
            if document is None:
                return
            try:
                await self._push_with_retry(document)
            finally:
                self._in_flight = False

    async def _push_with_retry(self, document: Document):
        attempts = 1 + self.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self.store.push(document.to_dict())
                self._stats['pushes_delivered'] += 1
                logger.debug(f"Pushed document {document.fingerprint[:12]} (attempt {attempt})")
                return
            except RemoteUnavailableError as e:
                if self._pending is not None:
                    # A newer document supersedes this one
                    logger.debug(f"Dropping superseded push after failure: {e}")
                    return
                if attempt == attempts:
                    self._stats['pushes_failed'] += 1
                    logger.error(f"Remote push failed after {attempts} attempts, local state kept: {e}")
                    return
                logger.warning(f"Remote push attempt {attempt} failed: {e}")
                await asyncio.sleep(self.retry_delay * attempt)

    def _on_connectivity_changed(self, connected: bool, reason: Optional[str]):
        if self.event_bus:
            self.event_bus.publish(ConnectivityChangedEvent(connected=connected, reason=reason))
