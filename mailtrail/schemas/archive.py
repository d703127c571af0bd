"""
Archived message content returned by the dashboard's message detail view.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class ArchivedAttachment(BaseModel):
    filename: Optional[str] = None
    content_type: str
    size: int


class ArchivedEmail(BaseModel):
    message_id: str
    from_address: str = ""
    to: list[str] = Field(default_factory=list)
    subject: str = ""
    html: Optional[str] = None
    text: Optional[str] = None
    attachments: list[ArchivedAttachment] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
