"""
missao-sync Application

Builds every component from a SyncConfiguration and owns their lifecycle.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.config_manager import ConfigurationManager, SyncConfiguration
from ..core.event_bus import EventBus
from ..core.logging_setup import setup_logging
from ..core.reconciliation import ReconciliationEngine
from ..model import Document
from ..sync.cross_tab import StorageEventChannel
from ..sync.persistence import LocalPersistence
from ..sync.remote_store import HttpRemote, NullRemote, RemoteStore
from ..sync.remote_sync import RemoteSyncAdapter
from ..sync.storage import FileKeyValueStore, KeyValueStore
from .milestone_service import MilestoneTracker
from .mutation_service import MutationService

logger = logging.getLogger('missao_sync.services.sync_application')

SHUTDOWN_FLUSH_TIMEOUT = 5.0


class SyncApplication:
    """
    One execution context: storage, channels, engine and services.

    Args:
        config: Validated configuration
        store: Key-value store to use instead of a FileKeyValueStore
        remote_store: Remote store to use instead of the one ``remote_url`` selects
        event_bus: Bus to publish on instead of a fresh one
    """

    def __init__(
        self,
        config: SyncConfiguration,
        store: Optional[KeyValueStore] = None,
        remote_store: Optional[RemoteStore] = None,
        event_bus: Optional[EventBus] = None
    ):
        self.config = config
        self.event_bus = event_bus or EventBus()
        self.store = store or FileKeyValueStore(config.storage_dir, poll_interval=config.poll_interval)
        self.persistence = LocalPersistence(self.store, config.storage_key, config.legacy_storage_key)
        self.channel = StorageEventChannel(self.store, config.storage_key)
        self.remote_store = remote_store or self._create_remote_store(config)
        self.remote = RemoteSyncAdapter(
            self.remote_store,
            event_bus=self.event_bus,
            retry_attempts=config.push_retry_attempts,
            retry_delay=config.push_retry_delay
        )
        self.engine = ReconciliationEngine(self.persistence, self.channel, self.remote, self.event_bus)
        self.mutations = MutationService(self.engine)
        self.milestones = MilestoneTracker(self.engine, self.event_bus)
        self._startup_complete = False

        logger.info(f"SyncApplication initialized (remote: {type(self.remote_store).__name__})")

    async def start(self) -> Document:
        """Bootstrap the engine; returns the document it settled on"""
        try:
            document = await self.engine.bootstrap()
            self.milestones.start(document)
            self._startup_complete = True
            return document
        except Exception as e:
            logger.error(f"Failed to start SyncApplication: {e}")
            raise

    async def shutdown(self) -> None:
        """Deliver queued pushes, then release every listener and connection"""
        try:
            logger.info("Shutting down SyncApplication...")
            self.milestones.stop()
            try:
                await asyncio.wait_for(self.remote.flush(), timeout=SHUTDOWN_FLUSH_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Pending remote pushes were not delivered before shutdown")
            self.engine.close()
            await self.remote.close()
            await self.store.aclose()
            self._startup_complete = False
            logger.info("SyncApplication shutdown complete")

        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    async def __aenter__(self) -> 'SyncApplication':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            'startup_complete': self._startup_complete,
            'engine_state': self.engine.state.value,
            'persistence_degraded': self.engine.persistence_degraded,
            'remote': self.remote.get_stats(),
            'events': self.event_bus.get_stats(),
        }
        if self._startup_complete:
            stats['document'] = self.engine.get_current().summary()
        return stats

    @staticmethod
    def _create_remote_store(config: SyncConfiguration) -> RemoteStore:
        if not config.remote_url:
            return NullRemote()
        return HttpRemote(
            config.remote_url,
            document_id=config.remote_document_id,
            timeout=config.remote_timeout,
            reconnect_delay=config.reconnect_delay
        )


def create_application(
    base_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> SyncApplication:
    """Load configuration, set up logging and build a SyncApplication"""
    config = ConfigurationManager(base_path).load_configuration(overrides)
    setup_logging(config)
    return SyncApplication(config)
