"""
Pydantic schemas for partnership messages, meetings and the panel contract.

This module contains:
- Domain models normalized from Remote Partnership Service records
- View models handed to the presentation shell
- Request/response models for the panel host API
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Domain Models
# =============================================================================

class MeetingStatus(str, Enum):
    """Stored meeting status. Ordered pending < accepted < ended."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    ENDED = "ended"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MeetingStatus.PENDING: 0,
    MeetingStatus.ACCEPTED: 1,
    MeetingStatus.ENDED: 2,
}


class Message(BaseModel):
    """
    A confirmed chat message in a partnership thread.

    Accepts both the backend's snake_case records and camelCase records;
    missing attribution falls back to a generic partner.
    """
    id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("id", "message_id"),
        description="Opaque identifier, unique per partnership"
    )
    text: str = Field(
        default="",
        validation_alias=AliasChoices("message", "text"),
        description="Display text"
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("created_at", "timestamp", "createdAt"),
        description="Ordering key (UTC)"
    )
    sender_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sender_user_id", "senderId", "sender_id"),
    )
    sender_name: str = Field(
        default="Partner",
        validation_alias=AliasChoices("sender_name", "senderName"),
    )
    sender_role: str = Field(
        default="partner",
        validation_alias=AliasChoices("sender_role", "senderRole"),
    )

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    @field_validator("text", mode="before")
    @classmethod
    def text_or_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("created_at", mode="before")
    @classmethod
    def created_at_or_now(cls, v: Any) -> Any:
        return v or utcnow()

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("sender_name", mode="before")
    @classmethod
    def sender_name_or_default(cls, v: Any) -> Any:
        return v or "Partner"

    @field_validator("sender_role", mode="before")
    @classmethod
    def sender_role_or_default(cls, v: Any) -> Any:
        return v or "partner"

    @property
    def sort_key(self) -> tuple[datetime, str]:
        # ts ASC, id ASC keeps ordering deterministic on equal timestamps
        return (self.created_at, self.id)


class PendingMessage(BaseModel):
    """A send that has been submitted but not yet confirmed by the remote service."""
    local_id: str = Field(..., description="Client-side temporary identifier")
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class Meeting(BaseModel):
    """A meeting record as stored by the remote service."""
    id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("id", "meeting_id"),
    )
    partnership_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("partnership_id", "partnershipId"),
    )
    organizer_user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("organizer_user_id", "organizerUserId"),
    )
    scheduled_time: datetime = Field(
        ...,
        validation_alias=AliasChoices("scheduled_time", "scheduledTime"),
    )
    status: MeetingStatus = MeetingStatus.PENDING
    meeting_link: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("meeting_link", "meetingLink"),
    )

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        if v is None:
            return MeetingStatus.PENDING
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("scheduled_time")
    @classmethod
    def scheduled_time_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


# =============================================================================
# View Models (presentation contract)
# =============================================================================

class MessageView(BaseModel):
    """A confirmed message classified for the current viewer."""
    id: str
    text: str
    created_at: datetime
    sender_id: Optional[str] = None
    sender_name: str
    sender_role: str
    is_own: bool = Field(..., description="Sent by the viewing user")


class MeetingView(BaseModel):
    """A meeting with its derived display status and countdown label."""
    id: str
    partnership_id: Optional[str] = None
    organizer_user_id: Optional[str] = None
    scheduled_time: datetime
    status: MeetingStatus = Field(..., description="Stored status")
    display_status: MeetingStatus = Field(..., description="Status derived from wall-clock time")
    countdown: Optional[str] = Field(None, description="Remaining time, 'started', or None once ended")
    is_organizer: bool
    can_accept: bool
    meeting_link: Optional[str] = Field(None, description="Join link, only while accepted and not ended")


class CollectionState(BaseModel):
    """Loading and error flags for one polled collection."""
    loading: bool = False
    loaded: bool = False
    error: Optional[str] = None


class PanelSnapshot(BaseModel):
    """
    Everything the presentation shell renders for one open panel.

    Contains:
    - messages: confirmed messages, ascending by created_at
    - pending_messages: sends still in flight
    - meetings: meetings with display status and countdown
    - message_state / meeting_state: per-collection loading/error flags
    - last_failed_text: input of the last failed send, for retry
    - is_empty: neither messages nor meetings exist yet
    """
    partnership_id: str
    viewer_user_id: str
    messages: list[MessageView] = Field(default_factory=list)
    pending_messages: list[PendingMessage] = Field(default_factory=list)
    meetings: list[MeetingView] = Field(default_factory=list)
    message_state: CollectionState = Field(default_factory=CollectionState)
    meeting_state: CollectionState = Field(default_factory=CollectionState)
    last_failed_text: Optional[str] = None
    is_empty: bool = True
    generated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Host API Request/Response Models
# =============================================================================

class OpenPanelRequest(BaseModel):
    viewer_user_id: str = Field(..., min_length=1, description="Identity of the viewing user")

    model_config = ConfigDict(coerce_numbers_to_str=True)


class SendMessageRequest(BaseModel):
    # Emptiness is checked by the synchronizer so the rejection path is shared
    text: str = Field(..., max_length=4096, description="Message text")


class ProposeMeetingRequest(BaseModel):
    scheduled_time: datetime = Field(..., description="Meeting start, ISO-8601")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class WriteFailureResponse(BaseModel):
    """Response model for a rejected write; echoes the attempted input."""
    detail: str
    action: str
    attempted: dict[str, Any] = Field(default_factory=dict)
