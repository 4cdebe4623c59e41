"""
API models for the relay server

Pydantic models for request and response payloads
"""

from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field


class StateUpsertRequest(BaseModel):
    """Body of PUT /api/v1/state/{id}"""
    data: Dict[str, Any] = Field(..., description="Serialized document")


class StateRecord(BaseModel):
    """The stored row"""
    id: int = Field(..., description="Document identifier")
    data: Dict[str, Any] = Field(..., description="Serialized document")
    updated_at: datetime = Field(..., description="Time of the last upsert")


class StateChangedMessage(BaseModel):
    """Websocket message sent to every subscriber after an upsert"""
    type: str = "state_changed"
    id: int
    data: Dict[str, Any]
    updated_at: datetime


class HealthResponse(BaseModel):
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    subscribers: int = 0

