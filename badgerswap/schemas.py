"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses and live subscription payloads
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ConversationCreateRequest(BaseModel):
    """
    Request body for get-or-create conversation. The caller is the buyer.

    product_title and seller_name are optional: when omitted they are looked
    up from the listing and the seller's profile, falling back to the
    configured defaults.
    """
    seller_id: str = Field(..., min_length=1, description="Seller identity")
    product_id: str = Field(..., min_length=1, description="Listing under discussion")
    product_title: Optional[str] = Field(None, description="Listing title at contact time")
    seller_name: Optional[str] = Field(None, description="Seller display name at contact time")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "seller_id": "u2",
                    "product_id": "p1",
                    "product_title": "Calc Textbook",
                    "seller_name": "Alice",
                }
            ]
        }
    }


class SendMessageRequest(BaseModel):
    """Request body for sending a message. The caller is the sender."""
    text: str = Field(..., description="Message text, non-empty after trimming")
    client_message_id: Optional[str] = Field(
        None,
        min_length=1,
        max_length=128,
        description="Sender-scoped idempotency key; resending with the same key does not duplicate"
    )


class UserProfileRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3)
    bio: Optional[str] = Field(None, max_length=1000)

    @field_validator("email")
    @classmethod
    def validate_email_shape(cls, v: str) -> str:
        """Reject anything that is not local@domain."""
        local, sep, domain = v.strip().partition("@")
        if not sep or not local or not domain:
            raise ValueError("email must look like name@domain")
        return v.strip().lower()


class ListingCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    price: float = Field(..., ge=0)
    description: Optional[str] = None
    category: Optional[str] = None


class ListingUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    category: Optional[str] = None


class ReportCreateRequest(BaseModel):
    """Request body for reporting a listing or a user."""
    target_id: str = Field(..., min_length=1)
    target_type: Literal["listing", "user"]
    reason: str = Field(..., min_length=1)
    details: Optional[str] = None
    product_title: Optional[str] = None


class ReportStatusRequest(BaseModel):
    status: Literal["pending", "reviewed", "resolved", "dismissed"]
    admin_notes: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    status: str = Field(default="error")
    error_code: str = Field(..., description="Machine readable error code")
    message: str = Field(..., description="Error description")
    details: Optional[str] = None
    retryable: Optional[bool] = None


class StatusResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")


class ConversationResponse(BaseModel):
    """A conversation summary as stored."""
    id: str
    buyer_id: str
    seller_id: str
    product_id: str
    buyer_name: str
    seller_name: str
    product_title: str
    last_message: str = ""
    timestamp: str
    unread_by_buyer: int = Field(0, ge=0)
    unread_by_seller: int = Field(0, ge=0)

    model_config = {"from_attributes": True}


class ConversationCreateResponse(BaseModel):
    conversation: ConversationResponse
    is_new: bool


class ConversationsListResponse(BaseModel):
    user_id: str
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    """A single message in a conversation."""
    id: str
    conversation_id: str
    sender_id: str
    text: str
    timestamp: str
    client_message_id: Optional[str] = None

    model_config = {"from_attributes": True}


class SendMessageResponse(BaseModel):
    message: MessageResponse
    duplicate: bool = False


class MessagesListResponse(BaseModel):
    """Messages of one conversation, ascending by timestamp."""
    conversation_id: str
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class MarkReadResponse(BaseModel):
    status: str = Field(default="ok")
    changed: bool


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    bio: Optional[str] = None
    reputation_score: Optional[float] = None

    model_config = {"from_attributes": True}


class ListingResponse(BaseModel):
    id: str
    seller_id: str
    title: str
    price: float
    description: Optional[str] = None
    category: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class ListingsListResponse(BaseModel):
    data: list[ListingResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class FavoritesResponse(BaseModel):
    user_id: str
    data: list[ListingResponse] = Field(default_factory=list)


class ReportResponse(BaseModel):
    id: str
    reporter_id: str
    target_id: str
    target_type: str
    reason: str
    details: str = ""
    product_title: Optional[str] = None
    status: str
    admin_notes: Optional[str] = None
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class ReportsListResponse(BaseModel):
    data: list[ReportResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
