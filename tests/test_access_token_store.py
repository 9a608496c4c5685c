"""
Access token store tests

Tests verify that:
1. Issuance is idempotent while the patient's token is live
2. At most one token per patient is ever active
3. Expired tokens are demoted on lookup and by the sweep, each expiry audited once
4. Revocation expires every active token and is audited once
"""

import pytest
from datetime import timedelta
from sqlalchemy.exc import IntegrityError

from medaccess.models.access_grant import AccessToken, TokenStatus
from medaccess.models.access_log import AccessLog
from medaccess.services.access_log_service import AccessAction
from medaccess.services.access_token_store import AccessTokenStore, LookupReason


def active_count(db, patient_id):
    return (
        db.query(AccessToken)
        .filter(AccessToken.user_id == patient_id, AccessToken.status == TokenStatus.ACTIVE.value)
        .count()
    )


def actions(db):
    return [log.action for log in db.query(AccessLog).order_by(AccessLog.created_at).all()]


class TestIssue:

    @pytest.fixture(autouse=True)
    def setup_store(self, db_session, clock, audit):
        self.db = db_session
        self.clock = clock
        self.store = AccessTokenStore(db_session, clock=clock, audit=audit, ttl_days=365)

    def test_issue_creates_active_token(self):
        token = self.store.issue("patient-1", created_by="patient-1")

        assert token.user_id == "patient-1"
        assert token.status == TokenStatus.ACTIVE.value
        assert token.expires_at == self.clock() + timedelta(days=365)
        assert len(token.raw_value) >= 32
        assert token.access_key == token.raw_value
        assert actions(self.db) == [AccessAction.QR_CODE_GENERATED]

    def test_issue_is_idempotent(self):
        """Second call returns the same token and writes nothing"""
        first = self.store.issue("patient-1")
        second = self.store.issue("patient-1")

        assert first.id == second.id
        assert active_count(self.db, "patient-1") == 1
        assert actions(self.db) == [AccessAction.QR_CODE_GENERATED]

    def test_issue_after_expiry_replaces_token(self):
        old = self.store.issue("patient-1")
        self.clock.advance(days=366)

        new = self.store.issue("patient-1")

        assert new.id != old.id
        self.db.refresh(old)
        assert old.status == TokenStatus.EXPIRED.value
        assert active_count(self.db, "patient-1") == 1

    def test_tokens_are_per_patient(self):
        a = self.store.issue("patient-a")
        b = self.store.issue("patient-b")

        assert a.id != b.id
        assert a.raw_value != b.raw_value

    def test_lost_race_returns_winner(self, monkeypatch):
        """A concurrent insert for the same patient surfaces the committed token"""
        winner = AccessToken(
            user_id="patient-1",
            token="winner-token-value-0123456789abcdef",
            status=TokenStatus.ACTIVE.value,
            expires_at=self.clock() + timedelta(days=365),
        )
        self.db.add(winner)
        self.db.commit()
        winner_id = winner.id

        real_get = self.store.get_active_for_patient
        calls = {"n": 0}

        def stale_read(patient_id):
            calls["n"] += 1
            return None if calls["n"] == 1 else real_get(patient_id)

        monkeypatch.setattr(self.store, "get_active_for_patient", stale_read)
        monkeypatch.setattr(self.store, "_demote_active", lambda db, patient_id: 0)

        token = self.store.issue("patient-1")

        assert token.id == winner_id
        assert active_count(self.db, "patient-1") == 1


class TestOneActivePerPatient:

    def test_store_rejects_second_active_token(self, db_session, clock):
        expires = clock() + timedelta(days=1)
        db_session.add(AccessToken(user_id="p", token="value-one-0123456789", expires_at=expires))
        db_session.commit()

        db_session.add(AccessToken(user_id="p", token="value-two-0123456789", expires_at=expires))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_expired_tokens_do_not_conflict(self, db_session, clock):
        expires = clock() + timedelta(days=1)
        db_session.add(AccessToken(
            user_id="p", token="value-one-0123456789", status=TokenStatus.EXPIRED.value, expires_at=expires
        ))
        db_session.add(AccessToken(user_id="p", token="value-two-0123456789", expires_at=expires))
        db_session.commit()

        assert active_count(db_session, "p") == 1


class TestLookupAndRevoke:

    @pytest.fixture(autouse=True)
    def setup_store(self, db_session, clock, audit):
        self.db = db_session
        self.clock = clock
        self.store = AccessTokenStore(db_session, clock=clock, audit=audit, ttl_days=365)

    def test_lookup_found(self):
        token = self.store.issue("patient-1")

        result = self.store.lookup(token.raw_value)

        assert result.found
        assert result.reason == LookupReason.FOUND
        assert result.token.id == token.id

    def test_lookup_unknown(self):
        result = self.store.lookup("does-not-exist")
        assert not result.found
        assert result.reason == LookupReason.NOT_FOUND

    def test_lookup_expired_demotes_token(self):
        token = self.store.issue("patient-1")
        raw = token.raw_value
        self.clock.advance(days=366)

        result = self.store.lookup(raw)

        assert result.reason == LookupReason.EXPIRED
        self.db.refresh(token)
        assert token.status == TokenStatus.EXPIRED.value
        assert result.user_id == "patient-1"
        # Later lookups no longer see it as active
        assert self.store.lookup(raw).reason == LookupReason.NOT_FOUND

        expired = self.db.query(AccessLog).filter(AccessLog.action == AccessAction.QR_CODE_EXPIRED).one()
        assert expired.patient_id == "patient-1"
        assert expired.details == {"token_id": token.id, "trigger": "lookup"}

    def test_revoke_all_for_patient(self):
        token = self.store.issue("patient-1")

        count = self.store.revoke_all_for_patient("patient-1", revoked_by="admin-1")

        assert count == 1
        self.db.refresh(token)
        assert token.status == TokenStatus.EXPIRED.value
        assert self.store.find_by_raw_value(token.raw_value) is None

        revoked = self.db.query(AccessLog).filter(AccessLog.action == AccessAction.QR_CODE_REVOKED).one()
        assert revoked.admin_id == "admin-1"
        assert revoked.details["revoked_count"] == 1

    def test_revoke_twice_audits_once(self):
        self.store.issue("patient-1")

        assert self.store.revoke_all_for_patient("patient-1") == 1
        assert self.store.revoke_all_for_patient("patient-1") == 0
        assert actions(self.db).count(AccessAction.QR_CODE_REVOKED) == 1

    def test_issue_after_revoke_creates_new_token(self):
        old = self.store.issue("patient-1")
        self.store.revoke_all_for_patient("patient-1")

        new = self.store.issue("patient-1")

        assert new.id != old.id
        assert new.status == TokenStatus.ACTIVE.value

    def test_list_for_patient_newest_first(self):
        first = self.store.issue("patient-1")
        self.store.revoke_all_for_patient("patient-1")
        self.clock.advance(minutes=1)
        second = self.store.issue("patient-1")

        listed = self.store.list_for_patient("patient-1")

        assert [t.id for t in listed] == [second.id, first.id]

    def test_expire_stale_tokens(self):
        self.store.issue("patient-a")
        self.store.issue("patient-b")
        self.clock.advance(days=400)

        assert self.store.expire_stale_tokens() == 2
        assert active_count(self.db, "patient-a") == 0
        assert self.store.expire_stale_tokens() == 0

        expired = self.db.query(AccessLog).filter(AccessLog.action == AccessAction.QR_CODE_EXPIRED).all()
        assert sorted(log.patient_id for log in expired) == ["patient-a", "patient-b"]
        assert {log.details["trigger"] for log in expired} == {"sweep"}
