"""
Relay Server

Self-hostable remote store for missao-sync. Holds one row per document id
and pushes every upsert to the websocket subscribers of that id, writer
included.

Endpoints:
- GET  /health
- GET  /api/v1/state/{id}
- PUT  /api/v1/state/{id}
- WS   /ws/state/{id}
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..core.config_manager import SyncConfiguration
from ..core.errors import MigrationError, PersistenceError, ValidationError
from ..model import ensure_valid, migrate
from .models import HealthResponse, StateChangedMessage, StateRecord, StateUpsertRequest
from .store import DocumentRowStore

logger = logging.getLogger('missao_sync.relay.server')


class RelayHub:
    """Websocket subscribers grouped by document id"""

    def __init__(self):
        self.connections: Dict[int, List[WebSocket]] = {}

    @property
    def subscriber_count(self) -> int:
        return sum(len(sockets) for sockets in self.connections.values())

    def add(self, document_id: int, websocket: WebSocket):
        self.connections.setdefault(document_id, []).append(websocket)

    def remove(self, document_id: int, websocket: WebSocket):
        sockets = self.connections.get(document_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self.connections.pop(document_id, None)

    async def broadcast(self, document_id: int, message: Dict[str, Any]) -> int:
        """Send ``message`` to every subscriber of ``document_id``; returns deliveries"""
        delivered = 0
        for websocket in list(self.connections.get(document_id, [])):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping websocket subscriber of document {document_id}: {e}")
                self.remove(document_id, websocket)
        return delivered

    async def close_all(self):
        for document_id, sockets in list(self.connections.items()):
            for websocket in list(sockets):
                try:
                    await websocket.close(code=1001, reason="Server shutting down")
                except Exception as e:
                    logger.warning(f"Error closing websocket of document {document_id}: {e}")
        self.connections.clear()


def create_relay_app(store: DocumentRowStore, validate_payloads: bool = True) -> FastAPI:
    """
    Build the relay application.

    Args:
        store: Row storage
        validate_payloads: Reject upserts that are not a valid document
    """
    hub = RelayHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Relay started with database {store.db_path}")
        yield
        await hub.close_all()
        logger.info("Relay stopped")

    app = FastAPI(
        title="missao-sync relay",
        description="Authoritative document store with a live change feed",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.hub = hub
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(subscribers=hub.subscriber_count)

    @app.get("/api/v1/state/{document_id}", response_model=StateRecord)
    async def get_state(document_id: int):
        try:
            row = store.get(document_id)
        except PersistenceError as e:
            logger.error(f"Error reading document {document_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        if row is None:
            raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
        data, updated_at = row
        return StateRecord(id=document_id, data=data, updated_at=updated_at)

    @app.put("/api/v1/state/{document_id}", response_model=StateRecord)
    async def put_state(document_id: int, request: StateUpsertRequest):
        if validate_payloads:
            try:
                ensure_valid(migrate(request.data))
            except (MigrationError, ValidationError) as e:
                logger.warning(f"Rejected upsert of document {document_id}: {e}")
                raise HTTPException(status_code=422, detail=str(e))

        try:
            updated_at = store.upsert(document_id, request.data)
        except PersistenceError as e:
            logger.error(f"Error writing document {document_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        message = StateChangedMessage(id=document_id, data=request.data, updated_at=updated_at)
        delivered = await hub.broadcast(document_id, message.model_dump(mode='json'))
        logger.info(f"Document {document_id} updated, notified {delivered} subscriber(s)")
        return StateRecord(id=document_id, data=request.data, updated_at=updated_at)

    @app.websocket("/ws/state/{document_id}")
    async def state_feed(websocket: WebSocket, document_id: int):
        await websocket.accept()
        hub.add(document_id, websocket)
        logger.info(f"Websocket subscribed to document {document_id}")

        try:
            await websocket.send_json({
                "type": "connection_established",
                "id": document_id,
                "timestamp": datetime.now(timezone.utc).isoformat()
            })
            while True:
                text = await websocket.receive_text()
                await _handle_message(websocket, text)

        except WebSocketDisconnect:
            logger.info(f"Websocket unsubscribed from document {document_id}")
        except Exception as e:
            logger.error(f"Error in websocket for document {document_id}: {e}")
        finally:
            hub.remove(document_id, websocket)

    return app


async def _handle_message(websocket: WebSocket, text: str):
    try:
        message = json.loads(text)
    except ValueError:
        message = {"type": text.strip()}

    message_type = message.get("type") if isinstance(message, dict) else None
    if message_type == "ping":
        await websocket.send_json({
            "type": "pong",
            "timestamp": datetime.now(timezone.utc).isoformat()
        })
    else:
        logger.warning(f"Unknown websocket message type: {message_type}")


class RelayServer:
    """Runs the relay application under uvicorn"""

    def __init__(self, config: SyncConfiguration):
        self.host = config.relay_host
        self.port = config.relay_port
        self.store = DocumentRowStore(config.relay_database_path)
        self.app = create_relay_app(self.store)
        self.server: Optional[uvicorn.Server] = None

    async def serve(self):
        """Serve until interrupted"""
        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="info",
            access_log=True
        )
        self.server = uvicorn.Server(config)
        logger.info(f"Relay listening on {self.host}:{self.port}")
        await self.server.serve()
