"""
Email event row - one stored notification, keyed by (message_id, sent_at).
Rows are upserted in place; expires_at drives retention.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from mailtrail.database import Base


class EmailEventRecord(Base):
    __tablename__ = "email_events"

    # Idempotent key
    message_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    sent_at: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)

    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)

    # Mail envelope
    source: Mapped[str] = mapped_column(String(320), default="")
    destination: Mapped[list] = mapped_column(JSONB, default=list)
    subject: Mapped[str] = mapped_column(Text, default="")

    # Type-specific, queried by the dashboard
    bounce_type: Mapped[Optional[str]] = mapped_column(String(50))
    bounce_sub_type: Mapped[Optional[str]] = mapped_column(String(50))
    complaint_feedback_type: Mapped[Optional[str]] = mapped_column(String(50))
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer)

    additional_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    raw_event: Mapped[dict] = mapped_column(JSONB, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch seconds

    __table_args__ = (
        Index("ix_email_events_account_sent_at", "account_id", "sent_at"),
        Index("ix_email_events_sent_at", "sent_at"),
        Index("ix_email_events_expires_at", "expires_at"),
    )

    def to_dict(self) -> dict:
        return {
            "messageId": self.message_id,
            "sentAt": self.sent_at,
            "accountId": self.account_id,
            "eventType": self.event_type,
            "source": self.source,
            "destination": self.destination or [],
            "subject": self.subject,
            "bounceType": self.bounce_type,
            "bounceSubType": self.bounce_sub_type,
            "complaintFeedbackType": self.complaint_feedback_type,
            "processingTimeMillis": self.processing_time_ms,
            "additionalData": self.additional_data or {},
            "expiresAt": self.expires_at,
        }

    def __repr__(self) -> str:
        return f"<EmailEventRecord {self.event_type} {self.message_id}@{self.sent_at}>"
