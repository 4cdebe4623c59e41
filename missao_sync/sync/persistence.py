"""
Local Persistence Adapter

Reads and writes the serialized document in the device's key-value storage.
"""

import logging
from typing import Optional

from ..core.errors import MigrationError, PersistenceError, ValidationError
from ..model import Document, ensure_valid, migrate
from .storage import KeyValueStore

logger = logging.getLogger('missao_sync.sync.persistence')

STORAGE_KEY = "missao-ieab-state-v2"
LEGACY_STORAGE_KEY = "missao-ieab-state"


class LocalPersistence:
    """
    Snapshot storage for one context.

    Args:
        store: Key-value storage shared with the other contexts
        key: Key the current snapshot is written under
        legacy_key: Older key read when ``key`` holds nothing
    """

    def __init__(self, store: KeyValueStore, key: str = STORAGE_KEY, legacy_key: Optional[str] = LEGACY_STORAGE_KEY):
        self.store = store
        self.key = key
        self.legacy_key = legacy_key

    def load_raw(self) -> Optional[str]:
        """Return the stored text under the primary key, falling back to the legacy key"""
        raw = self.store.get(self.key)
        if raw is None and self.legacy_key:
            raw = self.store.get(self.legacy_key)
            if raw is not None:
                logger.info(f"Found snapshot under legacy key '{self.legacy_key}'")
        return raw

    def load(self) -> Optional[Document]:
        """
        Load the stored snapshot, migrated to the current schema.

        Returns:
            The document, or None when nothing usable is stored
        """
        try:
            raw = self.load_raw()
        except PersistenceError as e:
            logger.error(f"Failed to read local snapshot: {e}")
            return None

        if raw is None:
            return None

        try:
            return ensure_valid(migrate(raw))
        except (MigrationError, ValidationError) as e:
            logger.warning(f"Ignoring unusable local snapshot: {e}")
            return None

    def save(self, document: Document) -> bool:
        """
        Write the snapshot under the primary key.

        Returns:
            True if storage was written, False if it already held this text

        Raises:
            PersistenceError: if storage rejects the write
        """
        text = document.to_json()
        if self.store.get(self.key) == text:
            return False
        self.store.set(self.key, text)
        logger.debug(f"Saved local snapshot ({len(text)} bytes)")
        return True
