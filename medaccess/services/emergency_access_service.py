"""
Public Emergency Access
Anonymous, 3-minute grant to the reduced emergency-info view, triggered by
scanning a patient's public QR link.

Runs server-side only: the lookup needs the store's service credentials and
the grant must not be forgeable by the caller. Unlike the doctor flow there
is no decode chain here; the public client decodes the link before calling
and the value is matched exactly.

After the grant no server-side state exists. Expiry is enforced by the
client comparing EmergencyGrant.expires_at with its own clock on each read.
This is acceptable only for the emergency-info view.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from medaccess.config import settings
from medaccess.core.logging import mask_token
from medaccess.database import run_with_retry
from medaccess.models.access_grant import AccessToken, TokenStatus
from medaccess.services.access_log_service import AccessLogService, AccessAction, OriginTag
from medaccess.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

ACCESS_TYPE = "emergency_medical_record"


@dataclass
class EmergencyGrant:
    user_id: str
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        """Advisory check performed by the client before each read"""
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessGranted": True,
            "userId": self.user_id,
            "expiresAt": self.expires_at.isoformat() + "Z",
        }


def client_ip_from_headers(forwarded_for: Optional[str], peer: Optional[str] = None) -> str:
    """First X-Forwarded-For hop, else the connection peer, else 'unknown'"""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return peer or OriginTag.UNKNOWN


class EmergencyAccessService:

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        audit: Optional[AccessLogService] = None,
        grant_minutes: int = settings.EMERGENCY_ACCESS_MINUTES,
    ):
        self.db = db
        self.clock = clock
        self.audit = audit or AccessLogService(clock=clock)
        self.grant_duration = timedelta(minutes=grant_minutes)

    def request_access(
        self,
        raw_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[EmergencyGrant]:
        """
        Grant emergency access for an exact, active, unexpired token.

        Returns None for any failure; the anonymous caller is never told
        whether the token was unknown or expired.
        """
        now = self.clock()
        token = run_with_retry(
            self.db,
            lambda db: db.query(AccessToken)
            .filter(
                AccessToken.raw_value == raw_token,
                AccessToken.status == TokenStatus.ACTIVE.value,
            )
            .first(),
        ) if raw_token else None

        if token is None or token.is_expired(now):
            reason = "expired" if token is not None else "not_found"
            self.audit.log_access(
                self.db,
                action=AccessAction.QR_PUBLIC_ACCESS_DENIED,
                patient_id=token.user_id if token is not None else None,
                details={"submitted": mask_token(raw_token), "reason": reason},
                ip_address=ip_address or OriginTag.UNKNOWN,
                user_agent=user_agent,
            )
            self.db.commit()
            logger.info(f"Public QR access denied ({reason})")
            return None

        grant = EmergencyGrant(user_id=token.user_id, expires_at=now + self.grant_duration)
        self.audit.log_access(
            self.db,
            action=AccessAction.QR_PUBLIC_ACCESS,
            patient_id=token.user_id,
            details={
                "token_id": token.id,
                "access_type": ACCESS_TYPE,
                "expires_at": grant.expires_at.isoformat(),
                "grant_minutes": int(self.grant_duration.total_seconds() // 60),
            },
            ip_address=ip_address or OriginTag.UNKNOWN,
            user_agent=user_agent,
        )
        self.db.commit()
        logger.info(f"Public QR access granted for patient {token.user_id}")
        return grant
