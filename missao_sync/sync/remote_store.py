"""
Remote stores

A RemoteStore holds the single authoritative row of the document and feeds
every write to its subscribers. Three implementations:

- NullRemote: no backend configured; every call is a no-op
- MemoryRemote: clients of an in-process MemoryRemoteBackend
- HttpRemote: the relay server over HTTP + websocket (aiohttp)
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from ..core.errors import RemoteUnavailableError

logger = logging.getLogger('missao_sync.sync.remote_store')

ReplaceCallback = Callable[[Dict[str, Any]], None]
ConnectivityCallback = Callable[[bool, Optional[str]], None]
Unsubscribe = Callable[[], None]

STATE_CHANGED = "state_changed"


def _wire_copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(data))


def _notify_all(callbacks: List[ReplaceCallback], data: Dict[str, Any]):
    for callback in list(callbacks):
        try:
            callback(_wire_copy(data))
        except Exception as e:
            logger.error(f"Error in remote feed callback: {e}")


class RemoteStore(ABC):
    """Authoritative store for one document row"""

    def __init__(self):
        self._connected = False
        self._connectivity_listeners: List[ConnectivityCallback] = []

    @property
    def connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def pull(self) -> Optional[Dict[str, Any]]:
        """
        Fetch the stored payload.

        Returns:
            The payload, or None when no row exists yet

        Raises:
            RemoteUnavailableError: on transport failure
        """

    @abstractmethod
    async def push(self, data: Dict[str, Any]) -> None:
        """
        Upsert the payload.

        Raises:
            RemoteUnavailableError: on transport failure
        """

    @abstractmethod
    def subscribe(self, on_replace: ReplaceCallback) -> Unsubscribe:
        """Receive every payload written to the row, by any client"""

    async def close(self) -> None:
        self._set_connected(False, "closed")

    def add_connectivity_listener(self, callback: ConnectivityCallback) -> Unsubscribe:
        self._connectivity_listeners.append(callback)

        def remove():
            if callback in self._connectivity_listeners:
                self._connectivity_listeners.remove(callback)

        return remove

    def _set_connected(self, connected: bool, reason: Optional[str] = None):
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Remote {'connected' if connected else 'disconnected'}" + (f": {reason}" if reason else ""))
        for callback in list(self._connectivity_listeners):
            try:
                callback(connected, reason)
            except Exception as e:
                logger.error(f"Error in connectivity listener: {e}")


class NullRemote(RemoteStore):
    """Stand-in used when no remote backend is configured"""

    async def pull(self) -> Optional[Dict[str, Any]]:
        return None

    async def push(self, data: Dict[str, Any]) -> None:
        return None

    def subscribe(self, on_replace: ReplaceCallback) -> Unsubscribe:
        return lambda: None

    async def close(self) -> None:
        return None


class MemoryRemoteBackend:
    """
    In-process row shared by several MemoryRemote clients.

    ``set_available(False)`` simulates an outage: every client call raises
    RemoteUnavailableError until it is switched back on.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Optional[Dict[str, Any]] = _wire_copy(data) if data is not None else None
        self.updated_at: Optional[datetime] = datetime.now(timezone.utc) if data is not None else None
        self.available = True
        self.write_count = 0
        self._clients: List['MemoryRemote'] = []
        self._subscribers: List[ReplaceCallback] = []

    def set_available(self, available: bool):
        self.available = available
        for client in list(self._clients):
            client._set_connected(available, None if available else "backend unavailable")

    def upsert(self, data: Dict[str, Any]):
        self.data = _wire_copy(data)
        self.updated_at = datetime.now(timezone.utc)
        self.write_count += 1
        self._broadcast(self.data)

    def _broadcast(self, data: Dict[str, Any]):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            loop.call_soon(_notify_all, list(self._subscribers), data)
        else:
            _notify_all(self._subscribers, data)


class MemoryRemote(RemoteStore):
    """One client of a MemoryRemoteBackend"""

    def __init__(self, backend: MemoryRemoteBackend):
        super().__init__()
        self.backend = backend
        self._callbacks: List[ReplaceCallback] = []
        backend._clients.append(self)
        self._connected = backend.available

    async def pull(self) -> Optional[Dict[str, Any]]:
        self._check_available()
        if self.backend.data is None:
            return None
        return _wire_copy(self.backend.data)

    async def push(self, data: Dict[str, Any]) -> None:
        self._check_available()
        self.backend.upsert(data)

    def subscribe(self, on_replace: ReplaceCallback) -> Unsubscribe:
        self.backend._subscribers.append(on_replace)
        self._callbacks.append(on_replace)

        def unsubscribe():
            if on_replace in self.backend._subscribers:
                self.backend._subscribers.remove(on_replace)
            if on_replace in self._callbacks:
                self._callbacks.remove(on_replace)

        return unsubscribe

    async def close(self) -> None:
        for callback in self._callbacks:
            if callback in self.backend._subscribers:
                self.backend._subscribers.remove(callback)
        self._callbacks.clear()
        if self in self.backend._clients:
            self.backend._clients.remove(self)
        await super().close()

    def _check_available(self):
        if not self.backend.available:
            self._set_connected(False, "backend unavailable")
            raise RemoteUnavailableError("remote backend unavailable")
        self._set_connected(True)


class HttpRemote(RemoteStore):
    """
    Client of the relay server.

    Endpoints:
        GET/PUT {base_url}/api/v1/state/{document_id}
        websocket {base_url}/ws/state/{document_id}

    The websocket feed reconnects after ``reconnect_delay`` seconds for as
    long as there is a subscriber. Each reconnect after the first pulls the
    row and delivers it, so writes sent while the socket was down still
    arrive.
    """

    def __init__(
        self,
        base_url: str,
        document_id: int = 1,
        timeout: float = 10.0,
        reconnect_delay: float = 2.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        super().__init__()
        self.base_url = base_url.rstrip('/')
        self.document_id = document_id
        self.timeout = timeout
        self.reconnect_delay = reconnect_delay
        self.session = session
        self._owns_session = session is None
        self._callbacks: List[ReplaceCallback] = []
        self._feed_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def state_url(self) -> str:
        return f"{self.base_url}/api/v1/state/{self.document_id}"

    @property
    def feed_url(self) -> str:
        return f"{self.base_url.replace('http', 'ws', 1)}/ws/state/{self.document_id}"

    async def pull(self) -> Optional[Dict[str, Any]]:
        session = self._get_session()
        try:
            async with session.get(self.state_url) as response:
                if response.status == 404:
                    self._set_connected(True)
                    return None
                if response.status != 200:
                    raise RemoteUnavailableError(f"GET {self.state_url} returned HTTP {response.status}")
                body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._set_connected(False, str(e) or e.__class__.__name__)
            raise RemoteUnavailableError(f"GET {self.state_url} failed: {e}")

        self._set_connected(True)
        data = body.get('data') if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise RemoteUnavailableError(f"GET {self.state_url} returned a malformed body")
        return data

    async def push(self, data: Dict[str, Any]) -> None:
        session = self._get_session()
        try:
            async with session.put(self.state_url, json={'data': data}) as response:
                if not 200 <= response.status < 300:
                    text = await response.text()
                    raise RemoteUnavailableError(f"PUT {self.state_url} returned HTTP {response.status}: {text}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._set_connected(False, str(e) or e.__class__.__name__)
            raise RemoteUnavailableError(f"PUT {self.state_url} failed: {e}")
        self._set_connected(True)

    def subscribe(self, on_replace: ReplaceCallback) -> Unsubscribe:
        """Register a feed callback; must be called from a running event loop"""
        loop = asyncio.get_running_loop()
        self._callbacks.append(on_replace)
        if self._feed_task is None or self._feed_task.done():
            self._feed_task = loop.create_task(self._feed_loop())

        def unsubscribe():
            if on_replace in self._callbacks:
                self._callbacks.remove(on_replace)

        return unsubscribe

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._callbacks.clear()
        if self._feed_task and not self._feed_task.done():
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
        self._feed_task = None
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None
        await super().close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RemoteUnavailableError("remote client is closed")
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self.session

    async def _feed_loop(self):
        connections = 0
        while not self._closed and self._callbacks:
            try:
                session = self._get_session()
                async with session.ws_connect(self.feed_url, heartbeat=30) as ws:
                    self._set_connected(True)
                    logger.info(f"Subscribed to remote feed {self.feed_url}")
                    connections += 1
                    if connections > 1:
                        await self._catch_up()
                    async for message in ws:
                        if message.type == aiohttp.WSMsgType.TEXT:
                            self._handle_message(message.data)
                        elif message.type == aiohttp.WSMsgType.ERROR:
                            break
                self._set_connected(False, "feed closed")

            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, RemoteUnavailableError) as e:
                self._set_connected(False, str(e) or e.__class__.__name__)
                logger.warning(f"Remote feed unavailable: {e}")

            if self._closed:
                break
            await asyncio.sleep(self.reconnect_delay)

    async def _catch_up(self):
        """Deliver the row as it stands now; writes made while the feed was down were never sent"""
        try:
            data = await self.pull()
        except RemoteUnavailableError as e:
            logger.warning(f"Could not pull after reconnecting to the feed: {e}")
            return
        if data is not None:
            logger.info("Delivering remote document after feed reconnect")
            _notify_all(self._callbacks, data)

    def _handle_message(self, text: str):
        try:
            message = json.loads(text)
        except ValueError:
            logger.warning("Ignoring non-JSON feed message")
            return

        if not isinstance(message, dict) or message.get('type') != STATE_CHANGED:
            return
        data = message.get('data')
        if not isinstance(data, dict):
            logger.warning("Ignoring state_changed message without data")
            return
        _notify_all(self._callbacks, data)
