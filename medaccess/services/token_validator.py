"""
Token Validator
Single chokepoint for every inbound QR payload or typed access key.

Decodes with each codec strategy in order (current, legacy, passthrough),
looks each candidate up in the token store and accepts the first active
match. Every call writes exactly one access log entry; the submitted value
only ever appears masked.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any
from urllib.parse import urlparse, unquote

from sqlalchemy.orm import Session

from medaccess.core.error_handling import INVALID_OR_EXPIRED_MESSAGE
from medaccess.core.logging import mask_token
from medaccess.services.access_log_service import AccessLogService, OriginTag
from medaccess.services.access_token_store import AccessTokenStore, LookupReason
from medaccess.services.token_codec import TokenCodec, PassthroughStrategy
from medaccess.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

QR_PATH_MARKER = "/qr/"


class AccessChannel(str, Enum):
    """How the opaque value reached the validator"""
    QR_SCAN = "qr_scan"
    ACCESS_KEY = "access_key"

    @property
    def origin_tag(self) -> str:
        return OriginTag.CAMERA_SCAN if self is AccessChannel.QR_SCAN else OriginTag.MANUAL_ENTRY

    @property
    def granted_action(self) -> str:
        return f"{self.value}_granted"

    @property
    def attempt_action(self) -> str:
        return f"{self.value}_attempt"


class FailureReason:
    """Internal-only distinction; callers always see the generic message"""
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    CORRUPTED = "corrupted"


@dataclass
class ValidationResult:
    valid: bool
    user_id: Optional[str] = None
    token_id: Optional[str] = None
    reason: Optional[str] = None
    scheme: Optional[str] = None
    # Owner of an expired match; recorded in the audit trail, never returned to callers
    owner_id: Optional[str] = None

    @property
    def error(self) -> Optional[str]:
        return None if self.valid else INVALID_OR_EXPIRED_MESSAGE

    def to_public_dict(self) -> Dict[str, Any]:
        if self.valid:
            return {"valid": True, "userId": self.user_id, "tokenId": self.token_id}
        return {"valid": False, "error": self.error}


def extract_token_candidate(value: str) -> str:
    """
    Strip routing structure from a scanned payload.

    "https://host/qr/<opaque>?x=1" and "/qr/<opaque>" both yield "<opaque>";
    a bare token is returned trimmed.
    """
    value = (value or "").strip()
    if QR_PATH_MARKER not in value:
        return value
    path = urlparse(value).path if "://" in value else value.split("?", 1)[0].split("#", 1)[0]
    tail = path.split(QR_PATH_MARKER, 1)[1] if QR_PATH_MARKER in path else ""
    return unquote(tail.strip("/").split("/", 1)[0])


class TokenValidator:
    """Stateless orchestration over codec, token store and access log"""

    def __init__(
        self,
        db: Session,
        codec: Optional[TokenCodec] = None,
        store: Optional[AccessTokenStore] = None,
        audit: Optional[AccessLogService] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.codec = codec or TokenCodec()
        self.audit = audit or AccessLogService(clock=clock)
        self.store = store or AccessTokenStore(db, clock=clock, audit=self.audit)

    def validate(
        self,
        submitted: str,
        channel: AccessChannel = AccessChannel.QR_SCAN,
        doctor_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ValidationResult:
        result = self._resolve(submitted)

        details = {
            "channel": channel.value,
            "submitted": mask_token(extract_token_candidate(submitted)),
            "success": result.valid,
        }
        if result.valid:
            details["token_id"] = result.token_id
            details["scheme"] = result.scheme
        else:
            details["reason"] = result.reason

        self.audit.log_access(
            self.db,
            action=channel.granted_action if result.valid else channel.attempt_action,
            patient_id=result.user_id or result.owner_id,
            doctor_id=doctor_id,
            details=details,
            ip_address=channel.origin_tag,
            user_agent=user_agent,
        )
        self.db.commit()

        if result.valid:
            logger.info(f"{channel.value} validated for patient {result.user_id}")
        else:
            logger.info(f"{channel.value} rejected ({result.reason})")
        return result

    def _resolve(self, submitted: str) -> ValidationResult:
        candidate = extract_token_candidate(submitted)
        if not candidate:
            return ValidationResult(valid=False, reason=FailureReason.CORRUPTED)

        decoded_any = False
        expired_owner = None
        tried = set()

        for strategy in self.codec.decode_strategies():
            raw = strategy.try_decode(candidate)
            if raw is None or raw in tried:
                continue
            tried.add(raw)
            if not isinstance(strategy, PassthroughStrategy):
                decoded_any = True

            lookup = self.store.lookup(raw)
            if lookup.found:
                return ValidationResult(
                    valid=True,
                    user_id=lookup.token.user_id,
                    token_id=lookup.token.id,
                    scheme=strategy.name,
                )
            if lookup.reason == LookupReason.EXPIRED:
                expired_owner = lookup.user_id

        if expired_owner is not None:
            return ValidationResult(valid=False, reason=FailureReason.EXPIRED, owner_id=expired_owner)
        if decoded_any:
            return ValidationResult(valid=False, reason=FailureReason.NOT_FOUND)
        return ValidationResult(valid=False, reason=FailureReason.CORRUPTED)
