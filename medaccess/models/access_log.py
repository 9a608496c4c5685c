"""
Append-only audit log for every grant, validation, access and failure event.
"""

from sqlalchemy import Column, String, DateTime, JSON, Index, event
from medaccess.database import Base
from medaccess.utils.clock import utcnow
import uuid


class AccessLog(Base):
    __tablename__ = "access_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    patient_id = Column(String, nullable=True, index=True)
    doctor_id = Column(String, nullable=True, index=True)
    admin_id = Column(String, nullable=True)

    action = Column(String(64), nullable=False, index=True)
    details = Column(JSON, nullable=True)

    # Origin channel tag ("camera_scan", "manual_entry", "system") or client address
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_access_logs_patient_date", "patient_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "admin_id": self.admin_id,
            "action": self.action,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(AccessLog, "before_update")
def _reject_update(mapper, connection, target):
    raise PermissionError("access_logs is append-only")


@event.listens_for(AccessLog, "before_delete")
def _reject_delete(mapper, connection, target):
    raise PermissionError("access_logs is append-only")
