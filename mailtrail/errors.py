"""
Domain exceptions.

Decode errors are permanent for the message that caused them. Store errors
carry a ``transient`` flag that decides between redelivery and drop. Archive
errors propagate to the caller of the read path.
"""
from typing import Optional


class MailtrailError(Exception):
    """Base class for every error raised by the pipeline."""


class DecodeError(MailtrailError):
    MALFORMED_JSON = "malformed-json"
    MISSING_DISCRIMINATOR = "missing-discriminator"
    INVALID_FIELDS = "invalid-fields"

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class StoreError(MailtrailError):
    def __init__(self, message: str, transient: bool, code: Optional[str] = None):
        self.transient = transient
        self.code = code
        super().__init__(message)


class ArchiveError(MailtrailError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ArchivePermissionError(ArchiveError):
    """The archive refused access to the requested message."""
