"""
Reconciliation Engine

Owns the current document and is the only component allowed to replace it.
Every replacement, whether a local mutation, a snapshot from another tab or
a payload from the remote feed, goes through one lock-serialized transition:

    candidate -> validate -> compare -> set -> persist -> (push) -> notify

Listeners are notified after the lock is released, with the immutable
document that was installed.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, List, Optional

from .errors import EngineNotReadyError, MigrationError, PersistenceError, RemoteUnavailableError, ValidationError
from .event_bus import DocumentReplacedEvent, Event, EventBus, PersistenceFailedEvent, ReplacementRejectedEvent
from ..model import Document, default_document, ensure_valid, migrate
from ..sync.cross_tab import CrossTabChannel
from ..sync.persistence import LocalPersistence
from ..sync.remote_sync import RemoteSyncAdapter

logger = logging.getLogger('missao_sync.core.reconciliation')


class EngineState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class Origin(Enum):
    """Where a replacement came from"""
    LOCAL = "local"
    CROSS_TAB = "cross_tab"
    REMOTE = "remote"


Listener = Callable[[Document, Origin], None]
Mutation = Callable[[Document], Document]


class ReconciliationEngine:
    """
    Args:
        persistence: Local snapshot storage for this context
        channel: Same-device broadcast of other contexts' snapshots
        remote: Adapter around the remote store (wrapping NullRemote when none)
        event_bus: Optional observability bus
    """

    def __init__(
        self,
        persistence: LocalPersistence,
        channel: CrossTabChannel,
        remote: RemoteSyncAdapter,
        event_bus: Optional[EventBus] = None
    ):
        self.persistence = persistence
        self.channel = channel
        self.remote = remote
        self.event_bus = event_bus

        self._lock = threading.Lock()
        self._state = EngineState.UNINITIALIZED
        self._current: Optional[Document] = None
        self._listeners: List[Listener] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._closed = False
        self.persistence_degraded = False

    @property
    def state(self) -> EngineState:
        return self._state

    def get_current(self) -> Document:
        """
        Raises:
            EngineNotReadyError: before bootstrap
        """
        document = self._current
        if document is None:
            raise EngineNotReadyError("engine has not been bootstrapped")
        return document

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(document, origin)``; returns an unsubscribe function"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def bootstrap(self) -> Document:
        """
        Load local state, reconcile with the remote and start listening.

        The local snapshot (or the default document) is installed first so
        the engine is usable while the remote is consulted. A remote row
        replaces it; a missing row is created from it; an unreachable remote
        leaves it in place.
        """
        if self._state is EngineState.READY:
            return self.get_current()

        local = self.persistence.load()
        if local is None:
            logger.info("No local snapshot, starting from the default document")
            local = default_document()

        with self._lock:
            self._current = local
            self._state = EngineState.READY
        self._notify(local, Origin.LOCAL)

        self._unsubscribers.append(self.channel.listen(self._on_cross_tab))

        try:
            remote_payload = await self.remote.pull()
        except RemoteUnavailableError as e:
            logger.warning(f"Remote unavailable during bootstrap, keeping local state: {e}")
        else:
            if remote_payload is None:
                try:
                    await self.remote.bootstrap_remote(self.get_current())
                except RemoteUnavailableError as e:
                    logger.warning(f"Could not create remote document: {e}")
            else:
                self.apply_external_replacement(remote_payload, Origin.REMOTE)

        self._unsubscribers.append(self.remote.subscribe(self._on_remote))
        self.remote.start()

        with self._lock:
            events = self._save(self._current)
        self._publish_all(events)

        logger.info(f"Engine ready: {self.get_current().summary()}")
        return self.get_current()

    def apply_local_mutation(self, mutation: Mutation) -> Document:
        """
        Apply ``mutation(current) -> Document`` as a local change.

        Returns:
            The installed document (the current one when nothing changed)

        Raises:
            EngineNotReadyError: before bootstrap
            ValidationError: if the result breaks an invariant; nothing changes
        """
        with self._lock:
            current = self._require_ready()
            candidate = mutation(current)
            if not isinstance(candidate, Document):
                raise TypeError(f"mutation returned {type(candidate).__name__}, expected Document")
            candidate = ensure_valid(candidate.with_derived_totals())

            if candidate == current:
                logger.debug("Local mutation left the document unchanged")
                return current

            self._current = candidate
            events = self._save(candidate)
            self.remote.push(candidate)

        events.append(DocumentReplacedEvent(origin=Origin.LOCAL.value, fingerprint=candidate.fingerprint))
        self._publish_all(events)
        self._notify(candidate, Origin.LOCAL)
        return candidate

    def apply_external_replacement(self, raw: Any, origin: Origin) -> bool:
        """
        Install a document received from another tab or the remote.

        Payloads that fail migration or validation are logged and dropped.
        A remote payload equal to one of this context's own recent pushes
        but not to the current document is a stale echo and is skipped.
        External replacements are never pushed back.

        Returns:
            True if the document was replaced
        """
        try:
            candidate = ensure_valid(migrate(raw))
        except (MigrationError, ValidationError) as e:
            logger.warning(f"Rejected {origin.value} replacement: {e}")
            self._publish_all([ReplacementRejectedEvent(origin=origin.value, reason=str(e))])
            return False

        with self._lock:
            if self._state is not EngineState.READY or self._closed:
                logger.debug(f"Ignoring {origin.value} replacement, engine not ready")
                return False

            own_echo = origin is Origin.REMOTE and self.remote.acknowledge_push(candidate.fingerprint)
            if candidate == self._current:
                return False
            if own_echo:
                logger.debug(f"Skipping stale echo of own push {candidate.fingerprint[:12]}")
                return False
            if origin is Origin.REMOTE:
                self.remote.forget_recent_pushes()

            self._current = candidate
            events = self._save(candidate)

        events.append(DocumentReplacedEvent(origin=origin.value, fingerprint=candidate.fingerprint))
        self._publish_all(events)
        self._notify(candidate, origin)
        logger.debug(f"Applied {origin.value} replacement {candidate.fingerprint[:12]}")
        return True

    async def manual_refresh(self) -> Document:
        """
        Pull the remote document and apply it.

        When the remote holds nothing or cannot be reached, the local
        snapshot is re-read instead, picking up writes from other tabs.
        """
        self._require_ready()

        try:
            remote_payload = await self.remote.pull()
        except RemoteUnavailableError as e:
            logger.warning(f"Manual refresh could not reach the remote: {e}")
            remote_payload = None

        if remote_payload is not None:
            self.apply_external_replacement(remote_payload, Origin.REMOTE)
        else:
            try:
                raw = self.persistence.load_raw()
            except PersistenceError as e:
                logger.error(f"Manual refresh could not read local snapshot: {e}")
                raw = None
            if raw is not None:
                self.apply_external_replacement(raw, Origin.CROSS_TAB)

        return self.get_current()

    def close(self):
        """Stop listening to both channels; idempotent"""
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribers:
            try:
                unsubscribe()
            except Exception as e:
                logger.error(f"Error unsubscribing engine listener: {e}")
        self._unsubscribers.clear()
        self.channel.close()
        logger.debug("Engine closed")

    def _require_ready(self) -> Document:
        if self._state is not EngineState.READY or self._current is None:
            raise EngineNotReadyError("engine has not been bootstrapped")
        if self._closed:
            raise EngineNotReadyError("engine is closed")
        return self._current

    def _save(self, document: Document) -> List[Event]:
        """Persist under the lock; returns events to publish once released"""
        try:
            self.persistence.save(document)
        except PersistenceError as e:
            self.persistence_degraded = True
            logger.error(f"Local save failed, keeping in-memory state: {e}")
            return [PersistenceFailedEvent(error=str(e))]
        self.persistence_degraded = False
        return []

    def _on_cross_tab(self, raw: str):
        self.apply_external_replacement(raw, Origin.CROSS_TAB)

    def _on_remote(self, payload: Any):
        self.apply_external_replacement(payload, Origin.REMOTE)

    def _publish_all(self, events: List[Event]):
        if not self.event_bus:
            return
        for event in events:
            self.event_bus.publish(event)

    def _notify(self, document: Document, origin: Origin):
        for listener in list(self._listeners):
            try:
                listener(document, origin)
            except Exception as e:
                logger.error(f"Error in document listener: {e}")
