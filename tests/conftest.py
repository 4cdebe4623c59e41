"""
Shared fixtures for the missao-sync test suite
"""

import asyncio

import pytest
import pytest_asyncio

from missao_sync.core.config_manager import SyncConfiguration
from missao_sync.core.event_bus import EventBus
from missao_sync.model import default_document
from missao_sync.services.sync_application import SyncApplication
from missao_sync.sync.remote_store import MemoryRemote, MemoryRemoteBackend, NullRemote
from missao_sync.sync.storage import MemoryKeyValueStore, MemoryStorageArea


async def settle(*apps, rounds: int = 5):
    """Let queued pushes, feed echoes and storage events run to completion"""
    for _ in range(rounds):
        for app in apps:
            await app.remote.flush()
        await asyncio.sleep(0)


@pytest.fixture
def document():
    return default_document()


@pytest.fixture
def config():
    return SyncConfiguration(push_retry_attempts=1, push_retry_delay=0.0)


@pytest.fixture
def storage_area():
    return MemoryStorageArea()


@pytest.fixture
def remote_backend():
    return MemoryRemoteBackend()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest_asyncio.fixture
async def make_app(config, storage_area, remote_backend):
    """
    Factory for execution contexts.

    By default every context shares the same storage area (same device) and
    the same remote backend.
    """
    apps = []

    def factory(area=None, backend=None, with_remote=True, event_bus=None):
        store = MemoryKeyValueStore(area or storage_area)
        remote = MemoryRemote(backend or remote_backend) if with_remote else NullRemote()
        app = SyncApplication(config, store=store, remote_store=remote, event_bus=event_bus)
        apps.append(app)
        return app

    yield factory

    for app in apps:
        await app.shutdown()
