"""
Database models - import all models here so Alembic can discover them.
"""
from mailtrail.models.email_event import EmailEventRecord

__all__ = [
    "EmailEventRecord",
]
