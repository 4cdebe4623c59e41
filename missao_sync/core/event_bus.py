"""
Event Bus for missao-sync

Observability channel for the synchronization core. The reconciliation
engine, the remote adapter and the milestone tracker publish here; nothing
on the bus can change the document.
"""

import asyncio
import inspect
import logging
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional, Union

logger = logging.getLogger('missao_sync.core.event_bus')

WILDCARD = '*'


class EventPriority(IntEnum):
    """Lower values are delivered first"""
    CRITICAL = 0
    HIGH = 10
    NORMAL = 50
    LOW = 100


@dataclass
class Event:
    """
    Something that happened in the synchronization core.

    Typed subclasses put their fields in ``data`` so a handler can treat
    every event the same way.
    """

    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    propagate: bool = True

    def stop_propagation(self):
        self.propagate = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type,
            'event_id': self.event_id,
            'timestamp': self.timestamp.isoformat(),
            'source': self.source,
            'data': dict(self.data),
        }


class DocumentReplacedEvent(Event):
    """The engine accepted a new document"""

    def __init__(self, origin: str, fingerprint: str):
        super().__init__('document_replaced', {'origin': origin, 'fingerprint': fingerprint}, source='engine')


class ReplacementRejectedEvent(Event):
    """An external replacement failed migration or validation and was discarded"""

    def __init__(self, origin: str, reason: str):
        super().__init__('replacement_rejected', {'origin': origin, 'reason': reason}, source='engine')


class PersistenceFailedEvent(Event):
    """Local save failed; the in-memory document is kept"""

    def __init__(self, error: str):
        super().__init__('persistence_failed', {'error': error}, source='persistence')


class ConnectivityChangedEvent(Event):
    def __init__(self, connected: bool, reason: Optional[str] = None):
        super().__init__('connectivity_changed', {'connected': connected, 'reason': reason}, source='remote')


class MilestoneReachedEvent(Event):
    """Disciple progress crossed one of the celebration thresholds"""

    def __init__(self, milestone: int, total: int, goal: int):
        super().__init__(
            'milestone_reached',
            {'milestone': milestone, 'total': total, 'goal': goal},
            source='milestones'
        )


EventCallback = Callable[[Event], Any]
ErrorCallback = Callable[['Subscription', Event, Exception], None]


@dataclass(frozen=True)
class Subscription:
    handler_id: str
    callback: EventCallback
    event_types: FrozenSet[str]
    priority: EventPriority = EventPriority.NORMAL
    filter_func: Optional[Callable[[Event], bool]] = None

    @property
    def is_coroutine(self) -> bool:
        return inspect.iscoroutinefunction(self.callback)

    def wants(self, event: Event) -> bool:
        if WILDCARD not in self.event_types and event.event_type not in self.event_types:
            return False
        return self.filter_func is None or bool(self.filter_func(event))


class EventBus:
    """
    In-process pub/sub.

    Callbacks run in priority order. Coroutine callbacks are scheduled on the
    running loop; plain ones run inline. A failing callback is counted,
    reported to the error callbacks and skipped.
    """

    def __init__(self, max_history: int = 200):
        self._subscriptions: Dict[str, Subscription] = {}
        self._history: Deque[Event] = deque(maxlen=max_history)
        self._error_callbacks: List[ErrorCallback] = []
        self._counters: Counter = Counter()

    def subscribe(
        self,
        event_types: Union[str, List[str]],
        handler: EventCallback,
        handler_id: Optional[str] = None,
        priority: EventPriority = EventPriority.NORMAL,
        filter_func: Optional[Callable[[Event], bool]] = None
    ) -> str:
        """
        Args:
            event_types: One type, a list of types, or '*' for everything
            handler: Plain function or coroutine function taking the event
            handler_id: Replaces an existing subscription with the same id
            priority: Delivery order
            filter_func: Extra predicate on the event

        Returns:
            The id to pass to ``unsubscribe``
        """
        types = frozenset([event_types] if isinstance(event_types, str) else event_types)
        handler_id = handler_id or f"{getattr(handler, '__name__', 'handler')}-{uuid.uuid4().hex[:8]}"
        self._subscriptions[handler_id] = Subscription(handler_id, handler, types, priority, filter_func)
        logger.debug(f"{handler_id} subscribed to {sorted(types)}")
        return handler_id

    def unsubscribe(self, handler_id: str) -> bool:
        return self._subscriptions.pop(handler_id, None) is not None

    def publish(self, event: Event) -> int:
        """Deliver ``event``; returns how many callbacks accepted it"""
        self._counters['events_published'] += 1
        self._history.append(event)

        targets = sorted(
            (subscription for subscription in self._subscriptions.values() if subscription.wants(event)),
            key=lambda subscription: subscription.priority
        )
        delivered = 0
        for subscription in targets:
            if not event.propagate:
                break
            if self._deliver(subscription, event):
                delivered += 1

        logger.debug(f"{event.event_type} delivered to {delivered} subscriber(s)")
        return delivered

    def emit(self, event_type: str, **data) -> int:
        return self.publish(Event(event_type, data))

    def add_error_handler(self, callback: ErrorCallback):
        self._error_callbacks.append(callback)

    def get_event_history(self, event_type: Optional[str] = None, limit: Optional[int] = None) -> List[Event]:
        events = [event for event in self._history if event_type is None or event.event_type == event_type]
        return events[-limit:] if limit else events

    def clear_history(self):
        self._history.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            'events_published': self._counters['events_published'],
            'events_handled': self._counters['events_handled'],
            'handler_errors': self._counters['handler_errors'],
            'active_handlers': len(self._subscriptions),
            'history_size': len(self._history),
        }

    def _deliver(self, subscription: Subscription, event: Event) -> bool:
        try:
            if subscription.is_coroutine:
                asyncio.get_running_loop().create_task(self._run_coroutine(subscription, event))
            else:
                subscription.callback(event)
        except Exception as e:
            self._report_failure(subscription, event, e)
            return False
        self._counters['events_handled'] += 1
        return True

    async def _run_coroutine(self, subscription: Subscription, event: Event):
        try:
            await subscription.callback(event)
        except Exception as e:
            self._report_failure(subscription, event, e)

    def _report_failure(self, subscription: Subscription, event: Event, error: Exception):
        self._counters['handler_errors'] += 1
        logger.error(f"Subscriber {subscription.handler_id} failed on {event.event_type}: {error}")
        for callback in self._error_callbacks:
            try:
                callback(subscription, event, error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")
