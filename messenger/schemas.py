"""
Pydantic schemas for store values and request/response validation.

This module contains:
- Store value types (NewMessage, MessageHeader, MessageDetail)
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Store Value Types
# =============================================================================

class NewMessage(BaseModel):
    """
    A message to be stored.

    save_message() ignores recipient and sent_at: the recipient comes from
    the resolved username and the timestamp from the server clock.
    save_messages() stores all four fields as given.
    """
    sender: str = Field(..., min_length=1, max_length=128, description="Sender user id")
    recipient: Optional[str] = Field(
        None,
        max_length=128,
        description="Recipient user id"
    )
    payload: str = Field(..., max_length=4096, description="Message body")
    sent_at: Optional[datetime] = Field(None, description="Time the message was sent")


class MessageHeader(BaseModel):
    """Lightweight message summary, without the payload."""
    id: int = Field(..., description="Message identifier")
    sender: str = Field(..., description="Sender username")
    sent_at: datetime = Field(..., description="Time the message was sent")

    model_config = {"from_attributes": True}


class MessageDetail(MessageHeader):
    """Full message record including the payload."""
    payload: Optional[str] = Field(None, description="Message body")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class RegisterUserRequest(BaseModel):
    """Request body for POST /users."""
    id: str = Field(..., min_length=1, max_length=128, description="External user id")
    username: str = Field(..., min_length=1, max_length=128, description="Unique username")

    model_config = {
        "json_schema_extra": {
            "examples": [{"id": "u1", "username": "alice"}]
        }
    }


class SendMessageRequest(BaseModel):
    """Request body for POST /users/{username}/messages."""
    sender: str = Field(..., min_length=1, max_length=128, description="Sender user id")
    payload: str = Field(..., max_length=4096, description="Message body")

    model_config = {
        "json_schema_extra": {
            "examples": [{"sender": "u2", "payload": "hi"}]
        }
    }


class BatchMessage(NewMessage):
    """A batch entry; the recipient id is mandatory."""
    recipient: str = Field(..., min_length=1, max_length=128, description="Recipient user id")


class BatchSendRequest(BaseModel):
    """Request body for POST /messages/batch."""
    messages: list[BatchMessage] = Field(
        default_factory=list,
        description="Messages to store in one statement"
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class StatusResponse(BaseModel):
    """Response model for successful writes."""
    status: str = Field(default="ok", description="Operation status")
    count: Optional[int] = Field(None, ge=0, description="Number of rows written")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class UserResponse(BaseModel):
    """Response model for a resolved user."""
    id: str = Field(..., description="External user id")
    username: str = Field(..., description="Username")


class MessagesListResponse(BaseModel):
    """
    Response model for GET /users/{user_id}/messages.

    Order of data is the database's natural scan order.
    """
    data: list[MessageHeader] = Field(
        default_factory=list,
        description="Message headers addressed to the user"
    )
    count: int = Field(..., ge=0, description="Number of headers returned")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
