"""
Identity - Database Models

SQLAlchemy model for the internally owned identity record.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Any

from sqlalchemy import Column, String, Text, DateTime, Uuid, CheckConstraint, UniqueConstraint

from database.connection import Base

from .roles import AccessRole


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityRecordDB(Base):
    """
    Identity Record - one row per person known to the identity provider.

    Email is unique and is the fallback correlation key; external_id is
    unique when present and may only be rebound through the email
    conflict path of the identity service.
    """
    __tablename__ = "identity_records"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_identity_records_external_id"),
        UniqueConstraint("email", name="uq_identity_records_email"),
        CheckConstraint(
            "role IN ('standard', 'vendor', 'admin')",
            name="ck_identity_records_role",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id = Column(String(255), nullable=True)
    email = Column(String(320), nullable=False)
    display_name = Column(String(255))
    avatar_ref = Column(Text)
    role = Column(String(20), nullable=False, default=AccessRole.STANDARD.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def access_role(self) -> AccessRole:
        return AccessRole.parse(self.role)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "external_id": self.external_id,
            "email": self.email,
            "display_name": self.display_name,
            "avatar_ref": self.avatar_ref,
            "role": self.access_role.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
