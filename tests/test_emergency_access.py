"""
Public emergency access tests

Tests verify that:
1. An exact, active, unexpired token grants 3 minutes of access
2. Anything else is refused without saying why
3. Grants and refusals are both audited with the caller's address
"""

import pytest
from datetime import timedelta

from medaccess.models.access_grant import TokenStatus
from medaccess.models.access_log import AccessLog
from medaccess.services.access_log_service import AccessAction
from medaccess.services.access_token_store import AccessTokenStore
from medaccess.services.emergency_access_service import (
    EmergencyAccessService, EmergencyGrant, ACCESS_TYPE, client_ip_from_headers
)


class TestEmergencyAccess:

    @pytest.fixture(autouse=True)
    def setup_service(self, db_session, clock, audit):
        self.db = db_session
        self.clock = clock
        self.store = AccessTokenStore(db_session, clock=clock, audit=audit, ttl_days=365)
        self.service = EmergencyAccessService(db_session, clock=clock, audit=audit, grant_minutes=3)
        self.token = self.store.issue("patient-1")
        self.raw = self.token.raw_value

    def public_logs(self):
        return (
            self.db.query(AccessLog)
            .filter(AccessLog.action.in_([AccessAction.QR_PUBLIC_ACCESS, AccessAction.QR_PUBLIC_ACCESS_DENIED]))
            .all()
        )

    def test_exact_token_granted(self):
        grant = self.service.request_access(self.raw, ip_address="203.0.113.7", user_agent="pytest")

        assert grant is not None
        assert grant.user_id == "patient-1"
        assert grant.expires_at == self.clock() + timedelta(minutes=3)

        log = self.public_logs()[0]
        assert log.action == AccessAction.QR_PUBLIC_ACCESS
        assert log.patient_id == "patient-1"
        assert log.ip_address == "203.0.113.7"
        assert log.details["access_type"] == ACCESS_TYPE
        assert log.details["token_id"] == self.token.id

    def test_unknown_token_denied(self):
        grant = self.service.request_access("unknown-token-value", ip_address="203.0.113.7")

        assert grant is None
        log = self.public_logs()[0]
        assert log.action == AccessAction.QR_PUBLIC_ACCESS_DENIED
        assert log.patient_id is None
        assert log.details["reason"] == "not_found"
        assert "unknown-token-value" not in str(log.details)

    def test_encoded_value_is_not_decoded(self, codec):
        """The public client decodes the link; the server matches exactly"""
        assert self.service.request_access(codec.encode(self.raw)) is None

    def test_expired_token_denied_without_status_change(self):
        self.clock.advance(days=366)

        assert self.service.request_access(self.raw) is None

        self.db.refresh(self.token)
        assert self.token.status == TokenStatus.ACTIVE.value
        assert self.public_logs()[0].details["reason"] == "expired"

    def test_revoked_token_denied(self):
        self.store.revoke_all_for_patient("patient-1")
        assert self.service.request_access(self.raw) is None

    def test_empty_token_denied(self):
        assert self.service.request_access("") is None
        assert len(self.public_logs()) == 1

    def test_missing_address_recorded_as_unknown(self):
        self.service.request_access(self.raw)
        assert self.public_logs()[0].ip_address == "unknown"


class TestEmergencyGrant:

    def test_grant_window(self, clock):
        grant = EmergencyGrant(user_id="patient-1", expires_at=clock() + timedelta(minutes=3))

        assert grant.is_active(clock())
        clock.advance(minutes=2, seconds=59)
        assert grant.is_active(clock())
        clock.advance(seconds=1)
        assert not grant.is_active(clock())

    def test_to_dict(self, clock):
        grant = EmergencyGrant(user_id="patient-1", expires_at=clock() + timedelta(minutes=3))

        assert grant.to_dict() == {
            "accessGranted": True,
            "userId": "patient-1",
            "expiresAt": "2026-01-15T12:03:00Z",
        }


class TestClientIp:

    @pytest.mark.parametrize("forwarded,peer,expected", [
        ("203.0.113.7, 10.0.0.1", "10.0.0.2", "203.0.113.7"),
        ("203.0.113.7", None, "203.0.113.7"),
        (None, "10.0.0.2", "10.0.0.2"),
        ("", None, "unknown"),
        (None, None, "unknown"),
    ])
    def test_client_ip_from_headers(self, forwarded, peer, expected):
        assert client_ip_from_headers(forwarded, peer) == expected
