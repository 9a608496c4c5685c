"""
Access Token Store
Issues, looks up and expires patient access tokens.

Invariant: at most one token per patient has status 'active'. Issuance
demotes any lingering active tokens and inserts the new one in a single
transaction; the partial unique index on (user_id WHERE status='active')
turns a lost race into an IntegrityError, after which the winner's token
is returned.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, List

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medaccess.config import settings
from medaccess.core.logging import mask_token
from medaccess.database import run_with_retry
from medaccess.models.access_grant import AccessToken, TokenStatus
from medaccess.services.access_log_service import AccessLogService, AccessAction, OriginTag
from medaccess.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class LookupReason:
    FOUND = "found"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


@dataclass
class TokenLookup:
    token: Optional[AccessToken]
    reason: str
    # Owner of a matched but expired token, for audit attribution only
    user_id: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.token is not None


class AccessTokenStore:
    """
    Request-scoped store over access_tokens.

    Every public method commits its own transaction.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        audit: Optional[AccessLogService] = None,
        ttl_days: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.audit = audit or AccessLogService(clock=clock)
        self.ttl = timedelta(days=ttl_days if ttl_days is not None else settings.ACCESS_TOKEN_TTL_DAYS)

    def get_active_for_patient(self, patient_id: str) -> Optional[AccessToken]:
        return (
            self.db.query(AccessToken)
            .filter(
                AccessToken.user_id == patient_id,
                AccessToken.status == TokenStatus.ACTIVE.value,
            )
            .first()
        )

    def issue(self, patient_id: str, created_by: Optional[str] = None) -> AccessToken:
        """
        Return the patient's live token, creating one if none exists.

        Repeated calls return the same token until it expires or is revoked.
        """
        now = self.clock()
        existing = run_with_retry(self.db, lambda db: self.get_active_for_patient(patient_id))
        if existing is not None and not existing.is_expired(now):
            return existing

        def _demote_and_insert(db: Session) -> AccessToken:
            self._demote_active(db, patient_id)
            token = AccessToken(
                user_id=patient_id,
                token=AccessToken.generate_token_value(now),
                status=TokenStatus.ACTIVE.value,
                expires_at=now + self.ttl,
                created_by=created_by,
                created_at=now,
            )
            db.add(token)
            db.flush()
            self.audit.log_access(
                db,
                action=AccessAction.QR_CODE_GENERATED,
                patient_id=patient_id,
                admin_id=created_by if created_by and created_by != patient_id else None,
                details={"token_id": token.id, "expires_at": token.expires_at.isoformat()},
                ip_address=OriginTag.SYSTEM,
            )
            db.commit()
            return token

        try:
            token = run_with_retry(self.db, _demote_and_insert)
        except IntegrityError:
            # A concurrent issue() for this patient committed first
            self.db.rollback()
            winner = self.get_active_for_patient(patient_id)
            if winner is None:
                raise
            logger.info(f"Concurrent token issuance for patient {patient_id}; returning existing token")
            return winner

        logger.info(f"Issued access token {token.id} for patient {patient_id}")
        return token

    def _demote_active(self, db: Session, patient_id: str) -> int:
        result = db.execute(
            update(AccessToken)
            .where(
                AccessToken.user_id == patient_id,
                AccessToken.status == TokenStatus.ACTIVE.value,
            )
            .values(status=TokenStatus.EXPIRED.value)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def revoke_all_for_patient(self, patient_id: str, revoked_by: Optional[str] = None) -> int:
        """Expire every active token for the patient; returns how many changed"""
        def _revoke(db: Session) -> int:
            count = self._demote_active(db, patient_id)
            if count:
                self.audit.log_access(
                    db,
                    action=AccessAction.QR_CODE_REVOKED,
                    patient_id=patient_id,
                    admin_id=revoked_by if revoked_by and revoked_by != patient_id else None,
                    details={"revoked_count": count},
                    ip_address=OriginTag.SYSTEM,
                )
            db.commit()
            return count

        return run_with_retry(self.db, _revoke)

    def lookup(self, raw_value: str) -> TokenLookup:
        """
        Find an active token by exact value.

        A match whose expiry has passed is demoted to 'expired' before being
        reported, so later lookups see the correct status.
        """
        if not raw_value:
            return TokenLookup(None, LookupReason.NOT_FOUND)

        token = run_with_retry(
            self.db,
            lambda db: db.query(AccessToken)
            .filter(
                AccessToken.raw_value == raw_value,
                AccessToken.status == TokenStatus.ACTIVE.value,
            )
            .first(),
        )
        if token is None:
            return TokenLookup(None, LookupReason.NOT_FOUND)

        if token.is_expired(self.clock()):
            owner_id = token.user_id
            self._mark_expired(token)
            return TokenLookup(None, LookupReason.EXPIRED, user_id=owner_id)

        return TokenLookup(token, LookupReason.FOUND)

    def find_by_raw_value(self, raw_value: str) -> Optional[AccessToken]:
        return self.lookup(raw_value).token

    def _mark_expired(self, token: AccessToken):
        token_id, patient_id, masked = token.id, token.user_id, mask_token(token.token)

        def _expire(db: Session) -> int:
            result = db.execute(
                update(AccessToken)
                .where(
                    AccessToken.id == token_id,
                    AccessToken.status == TokenStatus.ACTIVE.value,
                )
                .values(status=TokenStatus.EXPIRED.value)
                .execution_options(synchronize_session="fetch")
            )
            changed = result.rowcount or 0
            # Only the lookup that demoted the row records the expiry
            if changed:
                self._log_expiry(db, token_id, patient_id, trigger="lookup")
            db.commit()
            return changed

        if run_with_retry(self.db, _expire):
            logger.info(f"Access token {token_id} ({masked}) expired on lookup")

    def _log_expiry(self, db: Session, token_id: str, patient_id: str, trigger: str):
        self.audit.log_access(
            db,
            action=AccessAction.QR_CODE_EXPIRED,
            patient_id=patient_id,
            details={"token_id": token_id, "trigger": trigger},
            ip_address=OriginTag.SYSTEM,
        )

    def list_for_patient(self, patient_id: str) -> List[AccessToken]:
        return (
            self.db.query(AccessToken)
            .filter(AccessToken.user_id == patient_id)
            .order_by(AccessToken.created_at.desc())
            .all()
        )

    def expire_stale_tokens(self) -> int:
        """Periodic sweep: active tokens past their expiry become 'expired'"""
        now = self.clock()

        def _sweep(db: Session) -> int:
            stale = (
                db.query(AccessToken.id, AccessToken.user_id)
                .filter(
                    AccessToken.status == TokenStatus.ACTIVE.value,
                    AccessToken.expires_at < now,
                )
                .all()
            )
            count = 0
            for token_id, patient_id in stale:
                result = db.execute(
                    update(AccessToken)
                    .where(
                        AccessToken.id == token_id,
                        AccessToken.status == TokenStatus.ACTIVE.value,
                    )
                    .values(status=TokenStatus.EXPIRED.value)
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount:
                    self._log_expiry(db, token_id, patient_id, trigger="sweep")
                    count += 1
            db.commit()
            return count

        count = run_with_retry(self.db, _sweep)
        if count:
            logger.info(f"Expired {count} stale access tokens")
        return count
