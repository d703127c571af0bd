"""Mailtrail - delivery-status notification ingestion and email event monitoring."""

__version__ = "1.0.0"
