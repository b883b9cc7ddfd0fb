"""Unit tests for MfaChallengeEngine.

Tests for:
- One-time code issue and verification
- Expiry, supersession, reuse and the attempt limit
- Recovery codes
- Enable / disable / regenerate and status
"""

import pytest

from tenantgate.service.errors import AuthFailure, Failure
from tenantgate.service.mfa import (
    RECOVERY_ALPHABET,
    format_recovery_code,
    normalize_recovery_code,
)
from tenantgate.storage.models import LoginEventType


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestSendAndVerify:
    """Tests for the email code flow."""

    def test_send_issues_six_digit_code_and_notifies(self, components, make_user, notifications):
        user = make_user()

        issued = components.mfa.send(user.id)
        components.background.drain()

        assert issued.expires_in == 600
        assert issued.code is not None and len(issued.code) == 6 and issued.code.isdigit()
        assert notifications == [(user.id, issued.code, 600)]

    def test_code_is_stored_hashed(self, components, make_user):
        user = make_user()

        issued = components.mfa.send(user.id)
        record = components.store.get_latest_mfa_code(user.id)

        assert record.code_hash != issued.code
        assert len(record.code_hash) == 64

    def test_code_hidden_unless_exposed(self, components, make_user):
        user = make_user()
        components.settings.expose_mfa_codes = False

        issued = components.mfa.send(user.id)

        assert issued.code is None

    def test_correct_code_verifies_once(self, components, make_user):
        user = make_user()
        issued = components.mfa.send(user.id)

        assert components.mfa.verify(user.id, issued.code) is None
        assert components.mfa.verify(user.id, issued.code) == Failure(AuthFailure.INVALID_CODE)

    def test_expired_code_is_rejected(self, components, make_user):
        """A correct code submitted after its TTL reports expiry."""
        user = make_user()
        issued = components.mfa.send(user.id)

        components.clock.advance(minutes=10, seconds=1)

        assert components.mfa.verify(user.id, issued.code) == Failure(AuthFailure.CODE_EXPIRED)

    def test_code_valid_just_before_expiry(self, components, make_user):
        user = make_user()
        issued = components.mfa.send(user.id)

        components.clock.advance(minutes=9, seconds=59)

        assert components.mfa.verify(user.id, issued.code) is None

    def test_new_code_supersedes_previous(self, components, make_user):
        user = make_user()
        first = components.mfa.send(user.id)
        second = components.mfa.send(user.id)

        if first.code != second.code:
            assert components.mfa.verify(user.id, first.code) == Failure(AuthFailure.INVALID_CODE)
        assert components.mfa.verify(user.id, second.code) is None

    def test_no_outstanding_code(self, components, make_user):
        user = make_user()

        assert components.mfa.verify(user.id, "123456") == Failure(AuthFailure.INVALID_CODE)

    def test_attempt_limit_burns_the_code(self, components, make_user):
        user = make_user()
        issued = components.mfa.send(user.id)
        wrong = _wrong(issued.code)

        for _ in range(components.settings.mfa_code_max_attempts):
            assert components.mfa.verify(user.id, wrong) == Failure(AuthFailure.INVALID_CODE)

        assert components.mfa.verify(user.id, issued.code) == Failure(AuthFailure.INVALID_CODE)
        assert components.store.get_latest_mfa_code(user.id) is None

    def test_code_is_bound_to_user(self, components, make_user):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        issued = components.mfa.send(alice.id)
        components.mfa.send(bob.id)

        assert components.mfa.verify(bob.id, issued.code) == Failure(AuthFailure.INVALID_CODE)

    def test_failures_are_audited(self, components, make_user):
        user = make_user()
        issued = components.mfa.send(user.id)
        components.mfa.verify(user.id, _wrong(issued.code))

        events = [e.event_type for e in components.audit.recent(user.id)]

        assert LoginEventType.MFA_CHALLENGE_SENT in events
        assert LoginEventType.MFA_FAILED in events


class TestRecoveryCodes:
    """Tests for single-use recovery codes."""

    def test_normalize_strips_separators_and_case(self):
        assert normalize_recovery_code("abcd-efgh") == "ABCDEFGH"
        assert normalize_recovery_code(" AB CD-EF GH ") == "ABCDEFGH"
        assert normalize_recovery_code(None) == ""

    def test_format_splits_in_half(self):
        assert format_recovery_code("ABCDEFGH") == "ABCD-EFGH"

    def test_enable_returns_formatted_codes(self, components, make_user):
        user = make_user()

        codes = components.mfa.enable(user.id)

        assert len(codes) == components.settings.recovery_code_count
        assert len(set(codes)) == len(codes)
        for code in codes:
            left, right = code.split("-")
            assert len(left) == len(right) == 4
            assert all(ch in RECOVERY_ALPHABET for ch in left + right)

    def test_recovery_code_is_single_use(self, components, make_user):
        user = make_user()
        codes = components.mfa.enable(user.id)

        assert components.mfa.verify_recovery(user.id, codes[0].lower()) is None
        assert components.mfa.verify_recovery(user.id, codes[0]) == Failure(
            AuthFailure.INVALID_RECOVERY_CODE
        )
        assert components.mfa.recovery_codes_remaining(user.id) == len(codes) - 1

    def test_malformed_recovery_code(self, components, make_user):
        user = make_user(mfa=True)

        result = components.mfa.verify_recovery(user.id, "ABC")

        assert result == Failure(AuthFailure.INVALID_RECOVERY_CODE)

    def test_regenerate_invalidates_old_codes(self, components, make_user):
        user = make_user()
        old_codes = components.mfa.enable(user.id)

        new_codes = components.mfa.regenerate_recovery_codes(user.id)

        assert components.mfa.verify_recovery(user.id, old_codes[0]) == Failure(
            AuthFailure.INVALID_RECOVERY_CODE
        )
        assert components.mfa.verify_recovery(user.id, new_codes[0]) is None

    def test_regenerate_requires_mfa(self, components, make_user):
        user = make_user()

        assert components.mfa.regenerate_recovery_codes(user.id) == Failure(
            AuthFailure.MFA_NOT_ENABLED
        )


class TestEnableDisable:
    """Tests for toggling MFA on a user."""

    def test_enable_twice_conflicts(self, components, make_user):
        user = make_user(mfa=True)

        assert components.mfa.enable(user.id) == Failure(AuthFailure.MFA_ALREADY_ENABLED)

    def test_status_reflects_enablement(self, components, make_user):
        user = make_user()
        assert components.mfa.status(user.id).enabled is False

        components.mfa.enable(user.id)
        status = components.mfa.status(user.id)

        assert status.enabled is True
        assert status.enabled_at == components.clock()
        assert status.recovery_codes_remaining == components.settings.recovery_code_count

    def test_disable_clears_codes_and_device_trust(self, components, make_user):
        user = make_user(mfa=True)
        token, _ = components.device_trust.issue(user.id, "fp-1")
        components.mfa.send(user.id)

        assert components.mfa.disable(user.id) is None

        assert components.store.get_user(user.id).mfa_enabled is False
        assert components.mfa.recovery_codes_remaining(user.id) == 0
        assert components.store.get_latest_mfa_code(user.id) is None
        assert components.device_trust.validate(user.id, token) is False

    def test_disable_when_off(self, components, make_user):
        user = make_user()

        assert components.mfa.disable(user.id) == Failure(AuthFailure.MFA_NOT_ENABLED)

    @pytest.mark.parametrize(
        "operation, event",
        [
            ("enable", LoginEventType.MFA_ENABLED),
            ("disable", LoginEventType.MFA_DISABLED),
        ],
    )
    def test_toggle_is_audited(self, components, make_user, operation, event):
        user = make_user(mfa=operation == "disable")

        getattr(components.mfa, operation)(user.id)

        assert event in [e.event_type for e in components.audit.recent(user.id)]
