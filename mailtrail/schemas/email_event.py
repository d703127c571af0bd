"""
EmailEvent - the canonical, typed form of one delivery-status notification.

One model per event type, joined into a discriminated union on ``event_type``.
The decoder validates provider payloads into this union; nothing downstream
ever sees a partially-populated event.
"""
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventType(str, Enum):
    SEND = "Send"
    DELIVERY = "Delivery"
    BOUNCE = "Bounce"
    COMPLAINT = "Complaint"
    OPEN = "Open"
    CLICK = "Click"
    REJECT = "Reject"
    RENDERING_FAILURE = "Rendering Failure"
    DELIVERY_DELAY = "DeliveryDelay"
    SUBSCRIPTION = "Subscription"


def event_type_value(event_type) -> str:
    """Plain string form of an EventType member or raw type name."""
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)


class EmailEventBase(BaseModel):
    """Fields shared by every event type."""
    model_config = ConfigDict(frozen=True)

    message_id: str = Field(..., min_length=1)
    sent_at: int = Field(..., description="Event timestamp, epoch milliseconds")
    account_id: str
    source: str = ""
    destination: list[str] = Field(default_factory=list)
    subject: str = ""
    mail_timestamp: Optional[str] = None
    raw_event: dict
    expires_at: int = Field(..., description="TTL, epoch seconds")

    @property
    def key(self) -> tuple[str, int]:
        """The idempotent storage key."""
        return (self.message_id, self.sent_at)

    def additional_data(self) -> dict:
        """Type-specific fields only."""
        shared = set(EmailEventBase.model_fields) | {"event_type"}
        return self.model_dump(exclude=shared)


class SendEvent(EmailEventBase):
    event_type: Literal["Send"] = "Send"
    tags: dict = Field(default_factory=dict)


class DeliveryEvent(EmailEventBase):
    event_type: Literal["Delivery"] = "Delivery"
    processing_time_ms: Optional[int] = None
    recipients: list[str] = Field(default_factory=list)
    smtp_response: Optional[str] = None
    remote_mta_ip: Optional[str] = None


class BounceEvent(EmailEventBase):
    event_type: Literal["Bounce"] = "Bounce"
    bounce_type: Optional[str] = None
    bounce_sub_type: Optional[str] = None
    bounced_recipients: list[dict] = Field(default_factory=list)
    feedback_id: Optional[str] = None


class ComplaintEvent(EmailEventBase):
    event_type: Literal["Complaint"] = "Complaint"
    complaint_feedback_type: Optional[str] = None
    complained_recipients: list[dict] = Field(default_factory=list)
    feedback_id: Optional[str] = None
    user_agent: Optional[str] = None


class OpenEvent(EmailEventBase):
    event_type: Literal["Open"] = "Open"
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class ClickEvent(EmailEventBase):
    event_type: Literal["Click"] = "Click"
    link: Optional[str] = None
    link_tags: dict = Field(default_factory=dict)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class RejectEvent(EmailEventBase):
    event_type: Literal["Reject"] = "Reject"
    reason: Optional[str] = None


class RenderingFailureEvent(EmailEventBase):
    event_type: Literal["Rendering Failure"] = "Rendering Failure"
    error_message: Optional[str] = None
    template_name: Optional[str] = None


class DeliveryDelayEvent(EmailEventBase):
    event_type: Literal["DeliveryDelay"] = "DeliveryDelay"
    delay_type: Optional[str] = None
    expiration_time: Optional[str] = None
    delayed_recipients: list[dict] = Field(default_factory=list)


class SubscriptionEvent(EmailEventBase):
    event_type: Literal["Subscription"] = "Subscription"
    contact_list: Optional[str] = None
    new_topic_preferences: dict = Field(default_factory=dict)
    old_topic_preferences: dict = Field(default_factory=dict)


EmailEvent = Annotated[
    Union[
        SendEvent,
        DeliveryEvent,
        BounceEvent,
        ComplaintEvent,
        OpenEvent,
        ClickEvent,
        RejectEvent,
        RenderingFailureEvent,
        DeliveryDelayEvent,
        SubscriptionEvent,
    ],
    Field(discriminator="event_type"),
]

email_event_adapter: TypeAdapter[EmailEvent] = TypeAdapter(EmailEvent)
