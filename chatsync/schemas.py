"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for connection management and outbound sends
- Response models for messages, conversations, connections and stats
- Webhook and health responses
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from chatsync.domain import ConnectionStatus, Direction, MessageStatus


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Outbound text message.

    Validates:
    - connection_id: positive integer
    - to: phone number or JID containing digits
    - message: non-empty, max 4096 characters
    - temp_id: optional client-side id of the optimistic message
    """
    connection_id: int = Field(..., ge=1, description="Connection to send through")
    to: str = Field(..., min_length=1, description="Recipient phone number or JID")
    message: str = Field(..., min_length=1, max_length=4096, description="Message text")
    temp_id: Optional[str] = Field(
        None,
        max_length=128,
        description="Client-generated id used to reconcile the optimistic message"
    )

    @field_validator("to")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        number = v.split("@", 1)[0]
        if not any(ch.isdigit() for ch in number):
            raise ValueError("to must contain a phone number")
        return v

    @field_validator("message")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "connection_id": 1,
                    "to": "5511999999999",
                    "message": "Hello",
                    "temp_id": "tmp-1700000000000"
                }
            ]
        }
    }


class ConnectionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Unique connection name")
    description: Optional[str] = Field(None, max_length=500)
    instance_name: Optional[str] = Field(
        None,
        max_length=200,
        description="Gateway instance name (defaults to whatsapp_<id>_<name>)"
    )
    phone_number: Optional[str] = Field(None, max_length=32)


class ConnectionStatusUpdate(BaseModel):
    status: ConnectionStatus = Field(..., description="New connection status")
    phone_number: Optional[str] = Field(None, max_length=32)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing (always acknowledged)."""
    status: str = Field(default="ok", description="Operation status")
    processed: int = Field(default=0, ge=0, description="Messages examined")
    inserted: int = Field(default=0, ge=0)
    replaced: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0, description="Status updates applied")
    ignored: int = Field(default=0, ge=0)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """A stored message as returned by the API."""
    id: int = Field(..., description="Store-assigned message id")
    message_id: Optional[str] = Field(None, description="Gateway message id")
    temp_id: Optional[str] = Field(None, description="Client id of a not yet reconciled placeholder")
    connection_id: int
    counterparty_number: str
    direction: Direction
    body: str
    status: MessageStatus
    timestamp: str = Field(..., description="Message timestamp (ISO-8601 UTC)")


class MessagesListResponse(BaseModel):
    """
    Response model for message listings.

    Messages are ordered by timestamp ASC, id ASC.
    """
    data: List[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Number of messages returned")


class SendMessageResponse(BaseModel):
    success: bool = Field(..., description="True when the gateway accepted the message")
    message: MessageResponse


class ConversationResponse(BaseModel):
    counterparty_number: str
    last_message: str
    last_message_time: str
    message_count: int = Field(..., ge=0)
    unread_count: int = Field(..., ge=0)


class ConversationsListResponse(BaseModel):
    data: List[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ConnectionResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    instance_name: str
    status: ConnectionStatus
    phone_number: Optional[str] = None
    last_activity: Optional[str] = None
    created_at: Optional[str] = None


class StatsResponse(BaseModel):
    """
    Response model for GET /api/stats.

    - total_connections: all connections
    - active_connections: connections in 'connected' status
    - today_messages: messages since UTC midnight
    - last_activity: most recent connection activity
    """
    total_connections: int = Field(..., ge=0)
    active_connections: int = Field(..., ge=0)
    today_messages: int = Field(..., ge=0)
    last_activity: Optional[str] = Field(None, description="Null if no activity yet")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    poller: Optional[Dict[str, object]] = Field(None, description="Poll synchronizer state")
