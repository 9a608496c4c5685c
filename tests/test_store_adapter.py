"""
Store adapter tests

Tests verify that:
1. Transient store failures are retried exactly once
2. A second failure surfaces as a retryable StoreUnavailableError
3. Non-transient errors propagate unchanged
4. The access log refuses updates and deletes
"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import IntegrityError, OperationalError

from medaccess.core.error_handling import ErrorSanitizer, StoreUnavailableError
from medaccess.core.logging import mask_token
from medaccess.database import run_with_retry, session_scope
from medaccess.models.access_log import AccessLog


def operational_error():
    return OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))


class TestRunWithRetry:

    def setup_method(self):
        self.db = MagicMock()

    def test_success_first_time(self):
        operation = MagicMock(return_value="ok")

        assert run_with_retry(self.db, operation, backoff_seconds=0) == "ok"
        assert operation.call_count == 1
        self.db.rollback.assert_not_called()

    def test_transient_failure_retried_once(self):
        operation = MagicMock(side_effect=[operational_error(), "ok"])

        assert run_with_retry(self.db, operation, backoff_seconds=0) == "ok"
        assert operation.call_count == 2
        self.db.rollback.assert_called_once()

    def test_second_failure_is_store_unavailable(self):
        operation = MagicMock(side_effect=[operational_error(), operational_error()])

        with pytest.raises(StoreUnavailableError) as exc_info:
            run_with_retry(self.db, operation, backoff_seconds=0)

        assert operation.call_count == 2
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

    def test_integrity_error_not_retried(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        operation = MagicMock(side_effect=error)

        with pytest.raises(IntegrityError):
            run_with_retry(self.db, operation, backoff_seconds=0)

        assert operation.call_count == 1

    def test_store_unavailable_sanitized_for_client(self):
        sanitized = ErrorSanitizer.sanitize_error(StoreUnavailableError("pool exhausted"))

        assert sanitized["status_code"] == 503
        assert sanitized["retryable"] is True
        assert "pool exhausted" not in str(sanitized)


class TestAccessLogAppendOnly:

    def test_update_rejected(self, session_factory, audit):
        with session_scope(session_factory) as db:
            entry = audit.log_access(db, action="qr_scan_attempt", details={"success": False})
            entry_id = entry.id

        db = session_factory()
        try:
            entry = db.get(AccessLog, entry_id)
            entry.action = "qr_scan_granted"
            with pytest.raises(PermissionError):
                db.flush()
        finally:
            db.rollback()
            db.close()

    def test_delete_rejected(self, session_factory, audit):
        with session_scope(session_factory) as db:
            entry_id = audit.log_access(db, action="qr_scan_attempt").id

        db = session_factory()
        try:
            db.delete(db.get(AccessLog, entry_id))
            with pytest.raises(PermissionError):
                db.flush()
        finally:
            db.rollback()
            db.close()


class TestMaskToken:

    @pytest.mark.parametrize("value,expected", [
        ("abcdefghijklmnop", "abcd********"),
        ("abcde", "abcd********"),
        ("abc", "********"),
        ("", ""),
        (None, ""),
    ])
    def test_mask_token(self, value, expected):
        assert mask_token(value) == expected
