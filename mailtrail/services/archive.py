"""
Archive fetcher - loads the raw RFC 822 content of a sent message from the
mail archive and parses it for display.

An archive location is opaque to callers. It may be:
  - a full http(s) URL of the archive
  - an ARN-style handle, e.g. arn:aws:ses:us-east-1:123:mailmanager-archive/a-1
    (the last "/" segment is the archive id)
  - a bare archive id
The last two resolve under ARCHIVE_BASE_URL.

A message that is not in the archive yields None. Permission and transport
failures raise.
"""
import logging
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Optional
from urllib.parse import quote

import httpx

from mailtrail.errors import ArchiveError, ArchivePermissionError
from mailtrail.schemas.archive import ArchivedAttachment, ArchivedEmail

logger = logging.getLogger(__name__)


def archive_id_from_location(location: str) -> str:
    """ARN or bare id -> archive id."""
    return location.rstrip("/").rsplit("/", 1)[-1]


def parse_raw_email(message_id: str, raw: bytes) -> ArchivedEmail:
    msg: EmailMessage = BytesParser(policy=policy.default).parsebytes(raw)

    html_part = msg.get_body(preferencelist=("html",))
    text_part = msg.get_body(preferencelist=("plain",))

    attachments = []
    for part in msg.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        attachments.append(ArchivedAttachment(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            size=len(payload),
        ))

    date_header = msg["Date"]
    timestamp = None
    if date_header is not None:
        timestamp = getattr(date_header, "datetime", None)

    to = []
    if msg["To"] is not None:
        to = [str(address) for address in msg["To"].addresses]

    return ArchivedEmail(
        message_id=message_id,
        from_address=str(msg["From"] or ""),
        to=to,
        subject=str(msg["Subject"] or ""),
        html=html_part.get_content() if html_part is not None else None,
        text=text_part.get_content() if text_part is not None else None,
        attachments=attachments,
        headers={name: str(value) for name, value in msg.items()},
        timestamp=timestamp,
    )


class ArchiveFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = "",
        timeout_seconds: float = 10.0,
    ):
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def resolve(self, archive_location: str) -> str:
        """Archive location -> archive root URL."""
        location = (archive_location or "").strip()
        if not location:
            raise ArchiveError("Archive location is empty")
        if location.startswith(("http://", "https://")):
            return location.rstrip("/")
        if not self.base_url:
            raise ArchiveError(f"Cannot resolve archive {location!r}: ARCHIVE_BASE_URL is not set")
        return f"{self.base_url}/archives/{quote(archive_id_from_location(location), safe='')}"

    async def fetch(self, message_id: str, archive_location: str) -> Optional[ArchivedEmail]:
        """Raw message parsed into ArchivedEmail, or None when the archive has no such message."""
        url = f"{self.resolve(archive_location)}/messages/{quote(message_id, safe='')}/raw"

        try:
            response = await self._client.get(url, timeout=self.timeout_seconds)
        except httpx.HTTPError as e:
            logger.warning("Archive request for %s failed: %s", message_id, str(e))
            raise ArchiveError(f"Archive request failed: {e}") from e

        if response.status_code == 404:
            logger.info("Message %s not found in archive", message_id)
            return None
        if response.status_code in (401, 403):
            raise ArchivePermissionError(
                f"Not allowed to read archive for {message_id}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise ArchiveError(
                f"Archive answered HTTP {response.status_code} for {message_id}",
                status_code=response.status_code,
            )

        return parse_raw_email(message_id, response.content)
