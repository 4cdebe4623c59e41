"""
Event bus tests
"""

import asyncio
from unittest.mock import Mock

import pytest

from missao_sync.core.event_bus import (
    ConnectivityChangedEvent,
    DocumentReplacedEvent,
    Event,
    EventBus,
    EventPriority,
)


class TestEventBus:
    """Test publish/subscribe behaviour"""

    def test_subscribe_and_publish(self, event_bus):
        handler = Mock()
        event_bus.subscribe('document_replaced', handler)

        handled = event_bus.publish(DocumentReplacedEvent(origin='local', fingerprint='abc'))

        assert handled == 1
        event = handler.call_args[0][0]
        assert event.data == {'origin': 'local', 'fingerprint': 'abc'}
        assert event.source == 'engine'

    def test_wildcard_and_unrelated_types(self, event_bus):
        everything = Mock()
        replaced = Mock()
        event_bus.subscribe('*', everything)
        event_bus.subscribe('document_replaced', replaced)

        event_bus.publish(ConnectivityChangedEvent(connected=False, reason='down'))

        assert everything.call_count == 1
        replaced.assert_not_called()

    def test_priority_order_and_stop_propagation(self, event_bus):
        calls = []

        def first(event):
            calls.append('first')
            event.stop_propagation()

        event_bus.subscribe('x', lambda event: calls.append('late'), handler_id='late', priority=EventPriority.LOW)
        event_bus.subscribe('x', first, handler_id='first', priority=EventPriority.CRITICAL)

        event_bus.emit('x')

        assert calls == ['first']

    def test_filter_func(self, event_bus):
        handler = Mock()
        event_bus.subscribe(
            'connectivity_changed',
            handler,
            filter_func=lambda event: event.data['connected'] is False
        )

        event_bus.publish(ConnectivityChangedEvent(connected=True))
        event_bus.publish(ConnectivityChangedEvent(connected=False))

        assert handler.call_count == 1

    def test_failing_handler_is_isolated(self, event_bus):
        good = Mock()
        errors = Mock()
        event_bus.add_error_handler(errors)
        event_bus.subscribe('x', Mock(side_effect=RuntimeError("boom")), handler_id='bad', priority=EventPriority.HIGH)
        event_bus.subscribe('x', good, handler_id='good')

        event_bus.emit('x', value=1)

        good.assert_called_once()
        errors.assert_called_once()
        assert event_bus.get_stats()['handler_errors'] == 1

    def test_unsubscribe(self, event_bus):
        handler = Mock()
        handler_id = event_bus.subscribe('x', handler)

        assert event_bus.unsubscribe(handler_id) is True
        assert event_bus.unsubscribe(handler_id) is False
        event_bus.emit('x')

        handler.assert_not_called()

    def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for index in range(5):
            bus.emit('x', index=index)
        bus.emit('y')

        assert [event.data.get('index') for event in bus.get_event_history()] == [3, 4, None]
        assert len(bus.get_event_history('x')) == 2
        assert len(bus.get_event_history(limit=1)) == 1

        bus.clear_history()
        assert bus.get_event_history() == []

    @pytest.mark.asyncio
    async def test_async_handler(self, event_bus):
        received = asyncio.Event()

        async def handler(event):
            received.set()

        event_bus.subscribe('x', handler)
        event_bus.emit('x')

        await asyncio.wait_for(received.wait(), timeout=1)

    def test_event_to_dict(self):
        event = Event(event_type='x', data={'a': 1})
        data = event.to_dict()
        assert data['event_type'] == 'x'
        assert data['data'] == {'a': 1}
        assert 'timestamp' in data
