"""
Doctor Session Manager

Creates, validates and revokes 30-minute doctor sessions on a patient
record, caps concurrent sessions per doctor and revokes idle sessions
from a background sweep.

The persisted doctor_sessions row is the only basis for granting access.
The in-memory activity cache exists so the idle sweep does not have to
query the store; it is populated only after a row is durably committed.

One instance per process, constructed at startup and held on app.state.
Cache mutations are guarded by a lock because request handlers run in a
thread pool alongside the scheduler thread.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Any, List, Optional, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import update, func
from sqlalchemy.orm import Session

from medaccess.config import settings
from medaccess.core.error_handling import SessionCapacityError
from medaccess.database import SessionLocal, session_scope, run_with_retry
from medaccess.models.access_grant import DoctorSession
from medaccess.services.access_log_service import (
    AccessLogService, AccessAction, OriginTag, UNKNOWN_PATIENT_ID
)
from medaccess.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "doctor_session_idle_sweep"


class RevokeReason:
    EXPLICIT = "explicit"
    EXPIRED = "expired"
    INACTIVITY_TIMEOUT = "inactivity_timeout"


@dataclass
class SessionActivity:
    session_id: str
    patient_id: str
    doctor_id: str
    expires_at: datetime
    last_activity: datetime


class DoctorSessionManager:
    """
    Session lifecycle: created (is_active=True) -> revoked (is_active=False).

    Sessions never extend their own expiry. Idle revocation is a secondary
    path on top of the hard expiry, not a renewal mechanism.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utcnow,
        audit: Optional[AccessLogService] = None,
        max_sessions_per_doctor: int = settings.MAX_SESSIONS_PER_DOCTOR,
        session_minutes: int = settings.DOCTOR_SESSION_MINUTES,
        idle_minutes: int = settings.DOCTOR_SESSION_IDLE_MINUTES,
        sweep_interval_seconds: int = settings.SESSION_SWEEP_INTERVAL_SECONDS,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.audit = audit or AccessLogService(clock=clock)
        self.max_sessions_per_doctor = max_sessions_per_doctor
        self.session_duration = timedelta(minutes=session_minutes)
        self.idle_timeout = timedelta(minutes=idle_minutes)
        self.sweep_interval_seconds = sweep_interval_seconds

        self._activity: Dict[str, SessionActivity] = {}
        self._lock = Lock()
        self._create_lock = Lock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._owns_scheduler = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, scheduler: Optional[BackgroundScheduler] = None):
        """Start the idle sweep on the given (or a private) scheduler"""
        if self._scheduler is not None:
            return
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or BackgroundScheduler()
        self._scheduler.add_job(
            self.sweep_inactive_sessions,
            IntervalTrigger(seconds=self.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            name="Doctor Session Idle Sweep",
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(f"Doctor session sweep started (every {self.sweep_interval_seconds}s)")

    def stop(self):
        if self._scheduler is None:
            return
        if self._scheduler.get_job(SWEEP_JOB_ID):
            self._scheduler.remove_job(SWEEP_JOB_ID)
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Doctor session sweep stopped")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _count_live_sessions(self, db: Session, doctor_id: str, now: datetime) -> int:
        return (
            db.query(func.count(DoctorSession.id))
            .filter(
                DoctorSession.doctor_id == doctor_id,
                DoctorSession.is_active.is_(True),
                DoctorSession.expires_at > now,
            )
            .scalar()
        ) or 0

    def create_session(self, patient_id: str, doctor_id: str, token_id: Optional[str] = None) -> str:
        """
        Persist a new session and start tracking its activity.

        Raises:
            SessionCapacityError: doctor already holds the maximum live sessions
            StoreUnavailableError: persistence failed after the bounded retry
        """
        now = self.clock()
        session_id = str(uuid.uuid4())
        expires_at = now + self.session_duration

        # Count and insert must not interleave for the same doctor
        with self._create_lock, session_scope(self.session_factory) as db:
            live = run_with_retry(db, lambda d: self._count_live_sessions(d, doctor_id, now))
            if live >= self.max_sessions_per_doctor:
                self.audit.log_access(
                    db,
                    action=AccessAction.SESSION_LIMIT_REACHED,
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    details={"active_sessions": live, "max_sessions": self.max_sessions_per_doctor},
                    ip_address=OriginTag.SYSTEM,
                )
                db.commit()
                logger.warning(f"Doctor {doctor_id} reached session limit ({live})")
                raise SessionCapacityError(self.max_sessions_per_doctor)

            def _insert(d: Session):
                d.add(DoctorSession(
                    id=session_id,
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    token_id=token_id,
                    granted_at=now,
                    expires_at=expires_at,
                    is_active=True,
                    created_at=now,
                ))
                d.flush()
                self.audit.log_access(
                    d,
                    action=AccessAction.SESSION_CREATED,
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    details={
                        "session_id": session_id,
                        "token_id": token_id,
                        "expires_at": expires_at.isoformat(),
                    },
                    ip_address=OriginTag.SYSTEM,
                )
                d.commit()

            run_with_retry(db, _insert)

        with self._lock:
            self._activity[session_id] = SessionActivity(
                session_id=session_id,
                patient_id=patient_id,
                doctor_id=doctor_id,
                expires_at=expires_at,
                last_activity=now,
            )

        logger.info(f"Doctor session {session_id} created for doctor {doctor_id}")
        return session_id

    def validate_session(self, session_id: str) -> bool:
        """
        Gate for every doctor read. Checks the persisted row, never the cache.

        An expired session is revoked on the spot. A live one has its
        activity timestamp refreshed; the expiry itself is untouched.
        """
        now = self.clock()
        with session_scope(self.session_factory) as db:
            row = run_with_retry(db, lambda d: d.get(DoctorSession, session_id))
            if row is None or not row.is_active:
                return False
            snapshot = SessionActivity(
                session_id=row.id,
                patient_id=row.patient_id,
                doctor_id=row.doctor_id,
                expires_at=row.expires_at,
                last_activity=now,
            )

        if snapshot.expires_at < now:
            self.revoke_session(session_id, reason=RevokeReason.EXPIRED)
            return False

        with self._lock:
            entry = self._activity.get(session_id)
            if entry is None:
                # Row outlived the cache (e.g. restart): resume idle tracking
                self._activity[session_id] = snapshot
            else:
                entry.last_activity = now
        return True

    def revoke_session(self, session_id: str, reason: str = RevokeReason.EXPLICIT) -> bool:
        """
        Deactivate a session. Idempotent: revoking an already revoked or
        unknown session is a no-op and returns False.
        """
        with self._lock:
            cached = self._activity.get(session_id)

        with session_scope(self.session_factory) as db:
            def _deactivate(d: Session) -> int:
                result = d.execute(
                    update(DoctorSession)
                    .where(
                        DoctorSession.id == session_id,
                        DoctorSession.is_active.is_(True),
                    )
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount or 0

            changed = run_with_retry(db, _deactivate)
            if changed:
                self._audit_revocation(db, session_id, cached, reason)

        # Stop idle tracking only once the row is durably inactive
        with self._lock:
            self._activity.pop(session_id, None)

        if not changed:
            return False
        logger.info(f"Doctor session {session_id} revoked ({reason})")
        return True

    def _audit_revocation(self, db: Session, session_id: str, cached: Optional[SessionActivity], reason: str):
        # Attribution: cache, then stored row, then the unknown sentinel
        if cached is not None:
            patient_id, doctor_id = cached.patient_id, cached.doctor_id
        else:
            row = db.get(DoctorSession, session_id)
            patient_id = row.patient_id if row else UNKNOWN_PATIENT_ID
            doctor_id = row.doctor_id if row else None

        self.audit.log_access(
            db,
            action=AccessAction.SESSION_REVOKED,
            patient_id=patient_id,
            doctor_id=doctor_id,
            details={"session_id": session_id, "reason": reason},
            ip_address=OriginTag.SYSTEM,
        )

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            row = run_with_retry(db, lambda d: d.get(DoctorSession, session_id))
            return row.to_dict() if row else None

    def get_active_doctor_sessions(self, doctor_id: str) -> List[Dict[str, Any]]:
        """Live sessions for a doctor, newest first"""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            rows = run_with_retry(
                db,
                lambda d: d.query(DoctorSession)
                .filter(
                    DoctorSession.doctor_id == doctor_id,
                    DoctorSession.is_active.is_(True),
                    DoctorSession.expires_at > now,
                )
                .order_by(DoctorSession.created_at.desc())
                .all(),
            )
            return [row.to_dict() for row in rows]

    def get_activity(self, session_id: str) -> Optional[SessionActivity]:
        with self._lock:
            return self._activity.get(session_id)

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    def sweep_inactive_sessions(self) -> int:
        """
        Revoke cached sessions idle longer than the threshold, or past their
        hard expiry. A failure on one session does not stop the sweep.
        """
        now = self.clock()
        with self._lock:
            due = [
                (entry.session_id, RevokeReason.EXPIRED if entry.expires_at <= now
                 else RevokeReason.INACTIVITY_TIMEOUT)
                for entry in self._activity.values()
                if entry.expires_at <= now or now - entry.last_activity > self.idle_timeout
            ]

        revoked = 0
        for session_id, reason in due:
            try:
                if self.revoke_session(session_id, reason=reason):
                    revoked += 1
            except Exception as e:
                logger.error(f"Idle sweep failed for session {session_id}: {type(e).__name__}: {e}")

        if revoked:
            logger.info(f"Idle sweep revoked {revoked} doctor sessions")
        return revoked

    def expire_overdue_sessions(self) -> int:
        """Deactivate persisted sessions past their expiry, cached or not"""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            overdue = run_with_retry(
                db,
                lambda d: [
                    row[0] for row in d.query(DoctorSession.id)
                    .filter(
                        DoctorSession.is_active.is_(True),
                        DoctorSession.expires_at < now,
                    )
                    .all()
                ],
            )

        expired = 0
        for session_id in overdue:
            try:
                if self.revoke_session(session_id, reason=RevokeReason.EXPIRED):
                    expired += 1
            except Exception as e:
                logger.error(f"Overdue cleanup failed for session {session_id}: {type(e).__name__}: {e}")
        return expired
