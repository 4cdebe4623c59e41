"""
SQLite row store for the relay server
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..core.errors import PersistenceError

logger = logging.getLogger('missao_sync.relay.store')


class DocumentRowStore:
    """
    ``app_state(id, data, updated_at)`` table holding one serialized
    document per id.
    """

    def __init__(self, db_path: str = "relay.db"):
        self.db_path = str(db_path)
        self._init_database()

    def _init_database(self):
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS app_state (
                        id INTEGER PRIMARY KEY,
                        data TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                conn.commit()
            logger.info(f"Initialized SQLite database at {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise PersistenceError(f"Failed to initialize {self.db_path}: {e}")

    def get(self, document_id: int) -> Optional[Tuple[Dict[str, Any], datetime]]:
        """Return ``(data, updated_at)`` or None when the row does not exist"""
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT data, updated_at FROM app_state WHERE id = ?",
                    (document_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read document {document_id}: {e}")

        if row is None:
            return None
        return json.loads(row[0]), datetime.fromisoformat(row[1])

    def upsert(self, document_id: int, data: Dict[str, Any]) -> datetime:
        """Insert or replace the row; returns its new updated_at"""
        updated_at = datetime.now(timezone.utc)
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO app_state (id, data, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
                    """,
                    (document_id, json.dumps(data, ensure_ascii=False), updated_at.isoformat())
                )
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to write document {document_id}: {e}")

        logger.debug(f"Upserted document {document_id}")
        return updated_at
