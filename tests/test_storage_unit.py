from datetime import datetime, timedelta, timezone

import pytest

from familyhub.storage.errors import ConstraintViolation
from familyhub.storage.memory import MemoryStore
from familyhub.storage.models import EmailTokenType, MemberRole, OAuthProvider


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("Owner@Example.com ", "Owners")


def test_emails_are_unique_case_insensitively(store, user):
    assert user.email == "owner@example.com"
    assert store.get_user_by_email("OWNER@example.com").id == user.id
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("owner@EXAMPLE.com", "Again")
    assert excinfo.value.field == "email"


def test_update_email_marks_verified_and_checks_uniqueness(store, user):
    store.create_user("taken@example.com", "Others")
    with pytest.raises(ConstraintViolation):
        store.update_user_email(user.id, "Taken@example.com")

    updated = store.update_user_email(user.id, "New@Example.com")
    assert updated.email == "new@example.com"
    assert updated.email_verified is True


def test_members_belong_to_existing_household(store, user):
    admin = store.create_member(user.id, "Alex", role=MemberRole.ADMIN, pin_hash="h")
    store.create_member(user.id, "Robin")
    assert [m.name for m in store.list_members(user.id)] == ["Alex", "Robin"]
    assert store.get_member(admin.id).role == MemberRole.ADMIN
    with pytest.raises(ConstraintViolation):
        store.create_member("missing", "Nobody")


def test_identity_links_are_unique_per_provider(store, user):
    other = store.create_user("other@example.com", "Others")
    store.create_oauth_account(user.id, OAuthProvider.GOOGLE, "sub-1")
    store.create_oauth_account(other.id, OAuthProvider.MICROSOFT, "sub-1")
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_oauth_account(other.id, "google", "sub-1")
    assert excinfo.value.field == "provider_account"

    assert store.delete_oauth_account(user.id, OAuthProvider.GOOGLE) is True
    assert store.delete_oauth_account(user.id, OAuthProvider.GOOGLE) is False


def test_unused_tokens_of_one_type_are_cleared(store, user):
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    used = store.create_email_token(user.id, "h1", EmailTokenType.PASSWORD_RESET, expires)
    store.mark_email_token_used(used.id, datetime.now(timezone.utc))
    store.create_email_token(user.id, "h2", EmailTokenType.PASSWORD_RESET, expires)
    store.create_email_token(user.id, "h3", EmailTokenType.VERIFICATION, expires)

    assert store.delete_unused_email_tokens(user.id, EmailTokenType.PASSWORD_RESET) == 1
    assert store.get_email_token_by_hash("h1") is not None
    assert store.get_email_token_by_hash("h2") is None
    assert store.get_email_token_by_hash("h3") is not None


def test_recovery_codes_replace_and_single_use(store, user):
    first = store.replace_recovery_codes(user.id, ["a", "b"])
    assert store.mark_recovery_code_used(first[0].id, datetime.now(timezone.utc))
    assert not store.mark_recovery_code_used(first[0].id, datetime.now(timezone.utc))

    store.replace_recovery_codes(user.id, ["c"])
    assert [c.code_hash for c in store.list_recovery_codes(user.id)] == ["c"]


def test_user_sessions_revoked_together(store, user):
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    store.create_active_session(user.id, "tok-1", expires)
    store.create_active_session(user.id, "tok-2", expires)
    store.create_active_session("someone-else", "tok-3", expires)

    assert store.delete_user_active_sessions(user.id) == 2
    assert list(store.active_sessions) == ["tok-3"]


def test_active_sessions_listing_skips_expired_and_foreign(store, user):
    now = datetime.now(timezone.utc)
    live = store.create_active_session(user.id, "tok-1", now + timedelta(hours=1))
    store.create_active_session(user.id, "tok-2", now - timedelta(seconds=1))
    store.create_active_session("someone-else", "tok-3", now + timedelta(hours=1))

    assert [s.id for s in store.list_active_sessions(user.id, now)] == [live.id]


def test_single_session_delete_is_scoped(store, user):
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    record = store.create_active_session(user.id, "tok-1", expires)

    assert store.delete_user_active_session("someone-else", record.id) is False
    assert store.delete_user_active_session(user.id, record.id) is True
    assert store.delete_user_active_session(user.id, record.id) is False


def test_login_attempts_newest_first(store, user):
    for reason in ("INVALID_PASSWORD", "INVALID_PASSWORD", None):
        store.record_login_attempt(
            user.email, success=reason is None, user_id=user.id, failure_reason=reason
        )
    store.record_login_attempt("ghost@example.com", success=False)

    attempts = store.list_login_attempts(user.id, limit=2)
    assert [a.success for a in attempts] == [True, False]
    assert len(store.list_login_attempts(user.id)) == 3
