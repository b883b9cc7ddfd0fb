"""Unit tests for SessionLifecycleManager.

Tests for:
- Session creation for anonymous, pending and verified states
- Sliding idle expiry capped by the absolute expiry
- Revocation, lazy expiry and the per-user session cap
- Pending -> Verified upgrade under a new id
"""

from datetime import timedelta

from tenantgate.service.audit import RequestContext
from tenantgate.service.errors import AuthFailure, Failure
from tenantgate.service.sessions import MfaEvidence
from tenantgate.storage.models import Session, SessionState


class TestCreation:
    def test_anonymous_session(self, components):
        session = components.sessions.open_anonymous(RequestContext(ip_addr="10.0.0.1"))

        assert session.state == SessionState.ANONYMOUS
        assert session.user_id is None
        assert session.ip_addr == "10.0.0.1"
        assert components.sessions.validate(session.id) is None
        assert components.sessions.validate(session.id, require_verified=False).id == session.id

    def test_login_without_mfa_is_verified(self, components, make_user):
        user = make_user()

        session = components.sessions.create_for_login(user, False)

        assert session.state == SessionState.VERIFIED
        assert session.mfa_verified is False
        assert session.idle_expires_at == components.clock() + timedelta(
            minutes=components.settings.session_idle_minutes
        )

    def test_remember_me_extends_idle_within_absolute(self, components, make_user):
        user = make_user()

        session = components.sessions.create_for_login(user, True)

        assert session.remember_me is True
        assert session.idle_expires_at <= session.absolute_expires_at
        assert session.idle_expires_at > components.clock() + timedelta(
            minutes=components.settings.session_idle_minutes
        )

    def test_login_with_mfa_is_pending(self, components, make_user):
        user = make_user(mfa=True)

        session = components.sessions.create_for_login(user, False)

        assert session.state == SessionState.PENDING
        assert session.pending_mfa_user_id == user.id
        assert session.expires_at() == components.clock() + timedelta(
            minutes=components.settings.pending_session_minutes
        )
        assert components.sessions.validate(session.id) is None

    def test_trusted_device_skips_pending(self, components, make_user):
        user = make_user(mfa=True)

        session = components.sessions.create_for_login(user, False, device_trusted=True)

        assert session.state == SessionState.VERIFIED
        assert session.mfa_verified is True
        assert session.data["device_trusted"] is True

    def test_prior_session_is_revoked_not_reused(self, components, make_user):
        user = make_user()
        anonymous = components.sessions.open_anonymous()

        session = components.sessions.create_for_login(
            user, False, prior_session_id=anonymous.id
        )

        assert session.id != anonymous.id
        assert components.store.get_session(anonymous.id).state == SessionState.REVOKED


class TestTouchAndExpiry:
    """Tests for sliding expiry and lazy expiration."""

    def test_touch_slides_idle_expiry(self, components, make_user):
        user = make_user()
        session = components.sessions.create_for_login(user, False)

        later = components.clock.advance(hours=2)
        touched = components.sessions.touch(session.id)

        assert touched.idle_expires_at == later + timedelta(
            minutes=components.settings.session_idle_minutes
        )
        assert touched.last_activity_at == later

    def test_touch_never_passes_absolute_expiry(self, components, make_user):
        user = make_user()
        session = components.sessions.create_for_login(user, True)

        for _ in range(20):
            components.clock.advance(days=3)
            touched = components.sessions.touch(session.id)
            if touched is None:
                break
            assert touched.idle_expires_at <= touched.absolute_expires_at

        assert components.clock() >= session.absolute_expires_at
        assert components.sessions.validate(session.id) is None

    def test_idle_timeout_expires_lazily(self, components, make_user):
        user = make_user()
        session = components.sessions.create_for_login(user, False)

        components.clock.advance(minutes=components.settings.session_idle_minutes, seconds=1)

        assert components.sessions.validate(session.id) is None
        assert components.store.get_session(session.id).state == SessionState.EXPIRED
        assert components.sessions.touch(session.id) is None

    def test_touch_ignores_pending_sessions(self, components, make_user):
        user = make_user(mfa=True)
        session = components.sessions.create_for_login(user, False)

        assert components.sessions.touch(session.id) is None

    def test_expiry_does_not_depend_on_purge(self, components, make_user):
        user = make_user()
        session = components.sessions.create_for_login(user, False)

        components.clock.advance(days=365)

        assert components.sessions.is_valid(components.store.get_session(session.id)) is False


class TestRevocation:
    """Tests for revoking sessions."""

    def test_revoke_is_idempotent(self, components, make_user):
        user = make_user()
        session = components.sessions.create_for_login(user, False)

        assert components.sessions.revoke(session.id) is True
        assert components.sessions.revoke(session.id) is False
        assert components.sessions.revoke("missing") is False

    def test_revoke_beats_later_touch(self, components, make_user):
        """A touch after revocation never resurrects the session."""
        user = make_user()
        session = components.sessions.create_for_login(user, False)

        components.sessions.revoke(session.id)

        assert components.sessions.touch(session.id) is None
        stored = components.store.get_session(session.id)
        assert stored.state == SessionState.REVOKED
        assert stored.revoked_at == components.clock()

    def test_revoke_all_keeps_current(self, components, make_user):
        user = make_user()
        keep = components.sessions.create_for_login(user, False)
        others = [components.sessions.create_for_login(user, False) for _ in range(3)]

        count = components.sessions.revoke_all(user.id, except_session_id=keep.id)

        assert count == 3
        live = components.sessions.list_for_user(user.id)
        assert [s.id for s in live] == [keep.id]
        assert all(components.sessions.validate(s.id) is None for s in others)

    def test_session_cap_evicts_oldest(self, components, make_user):
        user = make_user()
        components.settings.max_sessions_per_user = 3
        created = []
        for _ in range(4):
            created.append(components.sessions.create_for_login(user, False))
            components.clock.advance(seconds=1)

        live_ids = [s.id for s in components.sessions.list_for_user(user.id)]

        assert created[0].id not in live_ids
        assert live_ids == [s.id for s in created[1:]]


class TestUpgrade:
    """Tests for the Pending -> Verified upgrade."""

    def test_upgrade_with_code_rotates_id(self, components, make_user):
        user = make_user(mfa=True)
        pending = components.sessions.create_for_login(user, True)
        issued = components.mfa.send(user.id)

        upgraded = components.sessions.upgrade(pending.id, MfaEvidence.code(issued.code))

        assert isinstance(upgraded, Session)
        assert upgraded.id != pending.id
        assert upgraded.state == SessionState.VERIFIED
        assert upgraded.mfa_verified is True
        assert upgraded.remember_me is True
        assert components.sessions.validate(pending.id, require_verified=False) is None
        assert components.sessions.validate(upgraded.id).id == upgraded.id

    def test_upgrade_with_recovery_code(self, components, make_user):
        user = make_user()
        codes = components.mfa.enable(user.id)
        user = components.store.get_user(user.id)
        pending = components.sessions.create_for_login(user, False)

        assert pending.state == SessionState.PENDING
        upgraded = components.sessions.upgrade(pending.id, MfaEvidence.recovery_code(codes[3]))

        assert isinstance(upgraded, Session)
        assert upgraded.state == SessionState.VERIFIED

    def test_wrong_code_keeps_session_pending(self, components, make_user):
        user = make_user(mfa=True)
        pending = components.sessions.create_for_login(user, False)
        issued = components.mfa.send(user.id)
        wrong = "000000" if issued.code != "000000" else "111111"

        result = components.sessions.upgrade(pending.id, MfaEvidence.code(wrong))

        assert result == Failure(AuthFailure.INVALID_CODE)
        assert components.store.get_session(pending.id).state == SessionState.PENDING

    def test_upgrade_requires_pending_session(self, components, make_user):
        user = make_user()
        verified = components.sessions.create_for_login(user, False)

        assert components.sessions.upgrade(verified.id, MfaEvidence.code("123456")) == Failure(
            AuthFailure.NO_PENDING_MFA
        )
        assert components.sessions.upgrade("missing", MfaEvidence.code("123456")) == Failure(
            AuthFailure.NO_PENDING_MFA
        )

    def test_upgrade_after_pending_window(self, components, make_user):
        user = make_user(mfa=True)
        pending = components.sessions.create_for_login(user, False)
        issued = components.mfa.send(user.id)

        components.clock.advance(minutes=components.settings.pending_session_minutes)

        assert components.sessions.upgrade(pending.id, MfaEvidence.code(issued.code)) == Failure(
            AuthFailure.NO_PENDING_MFA
        )

    def test_revoked_pending_session_cannot_upgrade(self, components, make_user):
        user = make_user(mfa=True)
        pending = components.sessions.create_for_login(user, False)
        issued = components.mfa.send(user.id)
        components.sessions.revoke(pending.id)

        assert components.sessions.upgrade(pending.id, MfaEvidence.code(issued.code)) == Failure(
            AuthFailure.NO_PENDING_MFA
        )


class TestPurge:
    def test_purge_drops_terminal_rows(self, components, make_user):
        user = make_user()
        live = components.sessions.create_for_login(user, False)
        dead = components.sessions.create_for_login(user, False)
        components.sessions.revoke(dead.id)
        components.mfa.send(user.id)
        components.clock.advance(minutes=11)

        purged = components.sessions.purge_expired()

        assert purged == {"sessions": 1, "mfa_codes": 1, "device_trust": 0}
        assert components.store.get_session(dead.id) is None
        assert components.store.get_session(live.id) is not None
