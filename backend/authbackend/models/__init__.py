"""Database models"""

from authbackend.models.user import User
from authbackend.models.audit import AuditEvent

__all__ = ["User", "AuditEvent"]
