"""User model"""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from authbackend.core.database import Base


def _new_user_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Durable identity record: one row per account"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_user_id)
    identifier = Column(String(254), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    password_changed_at = Column(DateTime(timezone=True))
    last_login = Column(DateTime(timezone=True))

    # Relationships
    audit_events = relationship("AuditEvent", back_populates="user")

    __table_args__ = (
        Index('idx_users_identifier', 'identifier'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, identifier='{self.identifier}')>"
