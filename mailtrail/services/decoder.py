"""
Notification decoder - turns one raw queue payload into a typed EmailEvent.

Handles every wrapping the transport may add around the provider message:
- SNS record:          {"Sns": {"Message": "<json>"}}
- SNS notification:    {"Type": "Notification", "Message": "<json>"}
- EventBridge event:   {"detail": {...}}
- SQS record:          {"body": "<json>"}
- bare provider message

Any failure is a DecodeError and is permanent for that message.
"""
import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError

from mailtrail.errors import DecodeError
from mailtrail.schemas.email_event import EmailEvent, email_event_adapter

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
MAX_WRAPPING_DEPTH = 4

# Event type -> key of its type-specific section in the provider message
EVENT_SECTIONS = {
    "Send": "send",
    "Delivery": "delivery",
    "Bounce": "bounce",
    "Complaint": "complaint",
    "Open": "open",
    "Click": "click",
    "Reject": "reject",
    "Rendering Failure": "failure",
    "DeliveryDelay": "deliveryDelay",
    "Subscription": "subscription",
}

# Types whose section carries its own timestamp; the rest use the mail timestamp
TIMESTAMPED_SECTIONS = {
    "Delivery", "Bounce", "Complaint", "Open", "Click", "DeliveryDelay", "Subscription",
}


def _extract_send(mail: dict, section: dict) -> dict:
    return {"tags": mail.get("tags") or {}}


def _extract_delivery(mail: dict, section: dict) -> dict:
    return {
        "processing_time_ms": section.get("processingTimeMillis"),
        "recipients": section.get("recipients") or [],
        "smtp_response": section.get("smtpResponse"),
        "remote_mta_ip": section.get("remoteMtaIp"),
    }


def _extract_bounce(mail: dict, section: dict) -> dict:
    return {
        "bounce_type": section.get("bounceType"),
        "bounce_sub_type": section.get("bounceSubType"),
        "bounced_recipients": section.get("bouncedRecipients") or [],
        "feedback_id": section.get("feedbackId"),
    }


def _extract_complaint(mail: dict, section: dict) -> dict:
    return {
        "complaint_feedback_type": section.get("complaintFeedbackType"),
        "complained_recipients": section.get("complainedRecipients") or [],
        "feedback_id": section.get("feedbackId"),
        "user_agent": section.get("userAgent"),
    }


def _extract_open(mail: dict, section: dict) -> dict:
    return {
        "user_agent": section.get("userAgent"),
        "ip_address": section.get("ipAddress"),
    }


def _extract_click(mail: dict, section: dict) -> dict:
    return {
        "link": section.get("link"),
        "link_tags": section.get("linkTags") or {},
        "user_agent": section.get("userAgent"),
        "ip_address": section.get("ipAddress"),
    }


def _extract_reject(mail: dict, section: dict) -> dict:
    return {"reason": section.get("reason")}


def _extract_rendering_failure(mail: dict, section: dict) -> dict:
    return {
        "error_message": section.get("errorMessage"),
        "template_name": section.get("templateName"),
    }


def _extract_delivery_delay(mail: dict, section: dict) -> dict:
    return {
        "delay_type": section.get("delayType"),
        "expiration_time": section.get("expirationTime"),
        "delayed_recipients": section.get("delayedRecipients") or [],
    }


def _extract_subscription(mail: dict, section: dict) -> dict:
    return {
        "contact_list": section.get("contactList"),
        "new_topic_preferences": section.get("newTopicPreferences") or {},
        "old_topic_preferences": section.get("oldTopicPreferences") or {},
    }


EXTRACTORS: dict[str, Callable[[dict, dict], dict]] = {
    "Send": _extract_send,
    "Delivery": _extract_delivery,
    "Bounce": _extract_bounce,
    "Complaint": _extract_complaint,
    "Open": _extract_open,
    "Click": _extract_click,
    "Reject": _extract_reject,
    "Rendering Failure": _extract_rendering_failure,
    "DeliveryDelay": _extract_delivery_delay,
    "Subscription": _extract_subscription,
}


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """
    Convert a provider timestamp to epoch milliseconds.
    Numbers are taken as milliseconds; strings as ISO-8601 (a trailing Z is UTC).
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.lstrip("-").isdigit():
        try:
            return int(text)
        except ValueError:
            return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _load_json(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(DecodeError.MALFORMED_JSON, str(e)) from e
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(DecodeError.MALFORMED_JSON, str(e)) from e


def unwrap_notification(payload: Any) -> dict:
    """Peel transport wrappers until the provider message is reached."""
    for _ in range(MAX_WRAPPING_DEPTH):
        if isinstance(payload, (str, bytes, bytearray)):
            payload = _load_json(payload)
        if not isinstance(payload, dict):
            raise DecodeError(DecodeError.MALFORMED_JSON, "payload is not a JSON object")

        if "eventType" in payload or "notificationType" in payload:
            return payload
        if isinstance(payload.get("Sns"), dict):
            payload = payload["Sns"].get("Message")
        elif "Message" in payload:
            payload = payload["Message"]
        elif isinstance(payload.get("detail"), dict):
            payload = payload["detail"]
        elif "body" in payload:
            payload = payload["body"]
        else:
            return payload

    if isinstance(payload, (str, bytes, bytearray)):
        payload = _load_json(payload)
    if not isinstance(payload, dict):
        raise DecodeError(DecodeError.MALFORMED_JSON, "payload is not a JSON object")
    return payload


class NotificationDecoder:
    """Validates provider notifications into EmailEvent variants."""

    def __init__(
        self,
        retention_days: int = 90,
        default_account_id: str = "unknown",
        clock: Callable[[], float] = time.time,
    ):
        self.retention_days = retention_days
        self.default_account_id = default_account_id
        self._clock = clock

    def decode(self, raw: Any) -> EmailEvent:
        message = unwrap_notification(raw)

        event_type = message.get("eventType") or message.get("notificationType")
        if not isinstance(event_type, str) or event_type not in EXTRACTORS:
            raise DecodeError(
                DecodeError.MISSING_DISCRIMINATOR,
                f"unrecognized event type {event_type!r}",
            )

        mail = message.get("mail") or {}
        if not isinstance(mail, dict):
            raise DecodeError(DecodeError.INVALID_FIELDS, "mail is not an object")

        # A missing or non-object section still stores the event on its mail fields
        section = message.get(EVENT_SECTIONS[event_type])
        if not isinstance(section, dict):
            section = {}

        now = self._clock()
        message_id = mail.get("messageId")
        if not message_id:
            message_id = f"event-{int(now * 1000)}"
            logger.warning(
                "Notification without messageId, synthesized %s",
                message_id,
                extra={"message_id": message_id, "event_type": event_type},
            )

        mail_timestamp = mail.get("timestamp")
        sent_at = None
        if event_type in TIMESTAMPED_SECTIONS:
            sent_at = parse_timestamp_ms(section.get("timestamp"))
        if sent_at is None:
            sent_at = parse_timestamp_ms(mail_timestamp)
        if sent_at is None:
            sent_at = int(now * 1000)
            logger.warning(
                "Notification %s has no usable timestamp, using receive time",
                message_id,
                extra={"message_id": message_id, "event_type": event_type},
            )

        destination = mail.get("destination") or []
        if isinstance(destination, str):
            destination = [destination]
        headers = mail.get("commonHeaders")
        if not isinstance(headers, dict):
            headers = {}

        fields = {
            "event_type": event_type,
            "message_id": str(message_id),
            "sent_at": sent_at,
            "account_id": str(mail.get("sendingAccountId") or self.default_account_id),
            "source": mail.get("source") or "",
            "destination": destination,
            "subject": headers.get("subject") or "",
            "mail_timestamp": mail_timestamp if isinstance(mail_timestamp, str) else None,
            "raw_event": message,
            "expires_at": int(now) + self.retention_days * SECONDS_PER_DAY,
        }
        fields.update(EXTRACTORS[event_type](mail, section))

        try:
            return email_event_adapter.validate_python(fields)
        except ValidationError as e:
            raise DecodeError(DecodeError.INVALID_FIELDS, str(e)) from e
