"""
Pydantic schemas for the message API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.dispatch.models import Attachment, Channel


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class AttachmentInput(BaseModel):
    """A file already stored on the server (upload handling is external)."""
    path: str = Field(
        ..., min_length=1,
        description="Absolute, or relative to the upload directory; must name a file inside it",
        examples=["1718000000-report.pdf"],
    )
    original_name: str = Field(..., min_length=1, examples=["report.pdf"])
    filename: Optional[str] = Field(None, examples=["1718000000-report.pdf"])

    def to_attachment(self) -> Attachment:
        return Attachment(
            path=self.path,
            original_name=self.original_name,
            filename=self.filename or "",
        )


class SendMessageRequest(BaseModel):
    """Request body for POST /api/v1/messages."""
    subject: Optional[str] = Field(None, max_length=500, examples=["Maintenance tonight"])
    body: str = Field(..., min_length=1, examples=["The office is closed from 22:00."])
    recipients: List[int] = Field(
        default_factory=list,
        description="Contact ids from the address book",
        examples=[[1, 2]],
    )
    custom_addresses: List[str] = Field(
        default_factory=list,
        description="Raw addresses: email, @handle, numeric or id<digits>",
        examples=[["someone@example.com", "123456789"]],
    )
    channels: List[str] = Field(
        ..., min_length=1,
        description="Requested channels: email / chat / social",
        examples=[["email", "chat"]],
    )
    attachments: List[AttachmentInput] = Field(default_factory=list)

    @field_validator("channels")
    @classmethod
    def _known_channels(cls, v: List[str]) -> List[str]:
        known = {c.value for c in Channel}
        cleaned = [c.strip().lower() for c in v]
        unknown = [c for c in cleaned if c not in known]
        if unknown:
            raise ValueError(f"Unknown channel(s): {', '.join(unknown)}")
        return cleaned


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class DispatchAccepted(BaseModel):
    """Returned by send and resend: the run continues in the background."""
    success: bool = True
    message_id: int
    channels: List[str]
    task_id: str


class HistoryEntryOut(BaseModel):
    timestamp: Optional[str]
    action: str
    status: str
    details: str = ""


class HistoryResponse(BaseModel):
    message_id: int
    history: List[HistoryEntryOut]


class MessageListResponse(BaseModel):
    count: int
    messages: List[Dict[str, Any]]


class ConfigStatusResponse(BaseModel):
    email: Dict[str, Dict[str, Any]]
    chat: Dict[str, Any]
    social: Dict[str, Any]
    available_channels: List[str]
