"""
Access log writer
Append-only record of every grant, validation, access and failure event.
"""

import logging
from typing import Optional, Dict, Any, List

from sqlalchemy.orm import Session

from medaccess.core.logging import log_audit
from medaccess.models.access_log import AccessLog
from medaccess.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class AccessAction:
    """Action tags written to access_logs"""
    QR_CODE_GENERATED = "qr_code_generated"
    QR_CODE_REVOKED = "qr_code_revoked"
    QR_CODE_EXPIRED = "qr_code_expired"

    # Validation outcomes: "<channel>_granted" / "<channel>_attempt"
    QR_SCAN_GRANTED = "qr_scan_granted"
    QR_SCAN_ATTEMPT = "qr_scan_attempt"
    ACCESS_KEY_GRANTED = "access_key_granted"
    ACCESS_KEY_ATTEMPT = "access_key_attempt"

    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    SESSION_LIMIT_REACHED = "session_limit_reached"

    QR_PUBLIC_ACCESS = "qr_public_access"
    QR_PUBLIC_ACCESS_DENIED = "qr_public_access_denied"

    AUTO_LOGOUT = "auto_logout"


class OriginTag:
    """Origin channel recorded in ip_address when no network address applies"""
    CAMERA_SCAN = "camera_scan"
    MANUAL_ENTRY = "manual_entry"
    SYSTEM = "system"
    AUTO_LOGOUT = "auto_logout"
    UNKNOWN = "unknown"


UNKNOWN_PATIENT_ID = "unknown"


class AccessLogService:
    """
    Writes AccessLog rows in the caller's transaction.

    The caller owns the commit so an audit row and the state change it
    describes land together.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def log_access(
        self,
        db: Session,
        action: str,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AccessLog:
        """
        Append an audit entry

        Args:
            db: Database session (not committed here)
            action: Action tag (use AccessAction constants)
            patient_id: Patient the event concerns, if known
            doctor_id: Acting doctor, if any
            admin_id: Acting administrator, if any
            details: Structured payload; tokens must already be masked
            ip_address: Client address or origin tag
            user_agent: Client user agent
        """
        entry = AccessLog(
            patient_id=patient_id,
            doctor_id=doctor_id,
            admin_id=admin_id,
            action=action,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self.clock(),
        )
        db.add(entry)
        db.flush()

        log_audit(action, doctor_id or admin_id or patient_id, {
            "patient_id": patient_id,
            "origin": ip_address,
            **(details or {}),
        })
        return entry

    def list_access_logs(
        self,
        db: Session,
        limit: int = 100,
        patient_id: Optional[str] = None,
    ) -> List[AccessLog]:
        """Newest first, optionally restricted to one patient"""
        query = db.query(AccessLog)
        if patient_id:
            query = query.filter(AccessLog.patient_id == patient_id)
        return query.order_by(AccessLog.created_at.desc()).limit(limit).all()
