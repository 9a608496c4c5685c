"""
Time-boxed access grants

- AccessToken: the patient's semi-permanent QR / access key
- DoctorSession: 30-minute read access for one doctor to one patient
"""

from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Index, text
)
from sqlalchemy.orm import synonym
from medaccess.database import Base
from medaccess.utils.clock import utcnow
from datetime import datetime
from typing import Optional
import enum
import uuid
import secrets


class TokenStatus(str, enum.Enum):
    """Status of an access token"""
    ACTIVE = "active"
    EXPIRED = "expired"
    USED = "used"


class AccessToken(Base):
    """
    Token binding an unguessable value to a patient.

    At most one row per patient has status 'active'; the partial unique index
    enforces it at the store level. Rows are never deleted.
    """
    __tablename__ = "access_tokens"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)

    # Scannable code and typable key are the same value
    token = Column(String(128), unique=True, nullable=False, index=True)
    raw_value = synonym("token")
    access_key = synonym("token")

    status = Column(String(20), nullable=False, default=TokenStatus.ACTIVE.value, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index(
            "uq_access_tokens_one_active_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_access_tokens_status_expiry", "status", "expires_at"),
    )

    @staticmethod
    def generate_token_value(now: Optional[datetime] = None) -> str:
        """Timestamp component plus 128 bits of randomness"""
        now = now or utcnow()
        return f"{int(now.timestamp() * 1000):x}{secrets.token_hex(16)}"

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def __repr__(self):
        return f"<AccessToken {self.id} user={self.user_id} status={self.status}>"


class DoctorSession(Base):
    """
    Doctor read access to one patient's record.

    Only is_active ever changes after insert; expiry is never extended.
    """
    __tablename__ = "doctor_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    patient_id = Column(String, nullable=False, index=True)
    doctor_id = Column(String, nullable=False, index=True)
    token_id = Column(String, ForeignKey("access_tokens.id"), nullable=True)

    granted_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_doctor_sessions_doctor_live", "doctor_id", "is_active", "expires_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "token_id": self.token_id,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
        }
