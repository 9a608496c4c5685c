"""
Auto-Logout Monitor
Ends a patient's own authenticated session after a period of inactivity.

Independent of the doctor-session idle sweep; it only shares the shape:
activity resets a timer, the timer firing ends the session. A one-time
warning fires `warning_minutes` before the logout.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.orm import Session

from medaccess.database import SessionLocal, session_scope
from medaccess.services.access_log_service import AccessLogService, AccessAction, OriginTag
from medaccess.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset({
    "mousedown",
    "mousemove",
    "pointerdown",
    "pointermove",
    "keypress",
    "scroll",
    "touchstart",
    "click",
})

WARNING_JOB_ID = "auto_logout_warning"
LOGOUT_JOB_ID = "auto_logout"


class AutoLogoutMonitor:

    def __init__(
        self,
        user_id: str,
        sign_out: Callable[[], None],
        notify: Optional[Callable[[str, str], None]] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        audit: Optional[AccessLogService] = None,
        timeout_minutes: int = 20,
        warning_minutes: int = 3,
        throttle_seconds: int = 5,
        clock: Clock = utcnow,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        if warning_minutes >= timeout_minutes:
            raise ValueError("warning_minutes must be smaller than timeout_minutes")

        self.user_id = user_id
        self.sign_out = sign_out
        self.notify = notify or (lambda title, message: logger.info(f"{title}: {message}"))
        self.session_factory = session_factory
        self.audit = audit or AccessLogService(clock=clock)
        self.timeout_minutes = timeout_minutes
        self.warning_minutes = warning_minutes
        self.throttle = timedelta(seconds=throttle_seconds)
        self.clock = clock
        # Keyed per user so monitors can share one scheduler
        self.warning_job_id = f"{WARNING_JOB_ID}:{user_id}"
        self.logout_job_id = f"{LOGOUT_JOB_ID}:{user_id}"

        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._enabled = False
        self._warning_shown = False
        self._last_reset: Optional[datetime] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self):
        if self._enabled:
            return
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler()
        if not self._scheduler.running:
            self._scheduler.start()
        self._enabled = True
        self.reset_timeout()

    def stop(self):
        """Tear down timers; the monitor can be started again later"""
        self._enabled = False
        self._clear_timeouts()
        if self._owns_scheduler and self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

    def record_activity(self, event: str) -> bool:
        """
        Handle a user-activity signal. Resets happen at most once per
        throttle window; returns True when the timers were reset.
        """
        if not self._enabled or event not in ACTIVITY_EVENTS:
            return False
        now = self.clock()
        if self._last_reset is not None and now - self._last_reset <= self.throttle:
            return False
        self.reset_timeout()
        return True

    def reset_timeout(self):
        if not self._enabled:
            return
        self._clear_timeouts()
        self._last_reset = self.clock()

        start = datetime.now(timezone.utc)
        self._scheduler.add_job(
            self._show_warning,
            DateTrigger(run_date=start + timedelta(minutes=self.timeout_minutes - self.warning_minutes)),
            id=self.warning_job_id,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._perform_logout,
            DateTrigger(run_date=start + timedelta(minutes=self.timeout_minutes)),
            id=self.logout_job_id,
            replace_existing=True,
        )

    def _clear_timeouts(self):
        if self._scheduler is not None:
            for job_id in (self.warning_job_id, self.logout_job_id):
                if self._scheduler.get_job(job_id):
                    self._scheduler.remove_job(job_id)
        self._warning_shown = False

    def _show_warning(self):
        if self._warning_shown:
            return
        self._warning_shown = True
        self.notify(
            "Session expiring soon",
            f"Your session will end in {self.warning_minutes} minutes of inactivity. "
            "Move the mouse or press a key to stay signed in.",
        )

    def _perform_logout(self):
        logger.info(f"Auto-logout after {self.timeout_minutes} minutes of inactivity")
        try:
            with session_scope(self.session_factory) as db:
                self.audit.log_access(
                    db,
                    action=AccessAction.AUTO_LOGOUT,
                    patient_id=self.user_id,
                    details={
                        "reason": "inactivity_timeout",
                        "timeout_minutes": self.timeout_minutes,
                        "timestamp": self.clock().isoformat(),
                    },
                    ip_address=OriginTag.AUTO_LOGOUT,
                )
        except Exception as e:
            # The sign-out must happen even if the audit write fails
            logger.error(f"Failed to record auto-logout: {type(e).__name__}: {e}")

        self._enabled = False
        self._clear_timeouts()
        self.sign_out()
        self.notify(
            "Session expired",
            f"You were signed out after {self.timeout_minutes} minutes of inactivity.",
        )
