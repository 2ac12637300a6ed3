"""Resolution of OAuth identities onto household accounts."""

import pytest

from familyhub.service.errors import ConflictError
from familyhub.service.identity import (
    IdentityResolver,
    OAuthIdentity,
    Resolution,
    ResolutionAction,
)
from familyhub.storage.memory import MemoryStore
from familyhub.storage.models import OAuthProvider


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send_account_linked(self, email, provider):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((email, provider))


def google(sub="g-123", email="owner@example.com", verified=True):
    return OAuthIdentity(
        provider=OAuthProvider.GOOGLE,
        provider_account_id=sub,
        email=email,
        email_verified=verified,
        display_name="Owner",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def resolver(store, notifier):
    return IdentityResolver(store, notifier=notifier)


class TestResolve:
    def test_unknown_identity_goes_to_registration(self, resolver):
        assert resolver.resolve(google()) == Resolution(ResolutionAction.REGISTER)

    def test_linked_identity_logs_in_regardless_of_email(self, store, resolver):
        user = store.create_user("owner@example.com", "Owners")
        store.create_oauth_account(user.id, OAuthProvider.GOOGLE, "g-123")

        result = resolver.resolve(google(email="renamed@elsewhere.test", verified=False))
        assert result == Resolution(ResolutionAction.LOGIN, user.id)

    def test_verified_email_match_links_and_logs_in(self, store, resolver, notifier):
        user = store.create_user("owner@example.com", "Owners")
        assert not user.email_verified

        result = resolver.resolve(google(email="Owner@Example.com"))

        assert result == Resolution(ResolutionAction.LINK_AND_LOGIN, user.id)
        linked = store.get_oauth_account(OAuthProvider.GOOGLE, "g-123")
        assert linked.user_id == user.id
        assert store.get_user(user.id).email_verified
        assert notifier.sent == [("owner@example.com", "google")]

    def test_unverified_email_never_auto_links(self, store, resolver):
        store.create_user("owner@example.com", "Owners")

        result = resolver.resolve(google(verified=False))

        assert result.action == ResolutionAction.REGISTER
        assert store.get_oauth_account(OAuthProvider.GOOGLE, "g-123") is None

    def test_repeat_resolution_is_stable(self, store, resolver):
        user = store.create_user("owner@example.com", "Owners")
        first = resolver.resolve(google())
        second = resolver.resolve(google())
        assert first.action == ResolutionAction.LINK_AND_LOGIN
        assert second == Resolution(ResolutionAction.LOGIN, user.id)

    def test_notifier_failure_does_not_block_login(self, store):
        user = store.create_user("owner@example.com", "Owners")
        resolver = IdentityResolver(store, notifier=RecordingNotifier(fail=True))
        result = resolver.resolve(google())
        assert result == Resolution(ResolutionAction.LINK_AND_LOGIN, user.id)


class TestExplicitLink:
    def test_links_to_session_user(self, store, resolver, notifier):
        user = store.create_user("owner@example.com", "Owners")
        result = resolver.resolve(google(email="other@example.com"), link_to_user_id=user.id)
        assert result == Resolution(ResolutionAction.LOGIN, user.id)
        assert store.get_oauth_account(OAuthProvider.GOOGLE, "g-123").user_id == user.id
        assert notifier.sent == [("owner@example.com", "google")]

    def test_relinking_own_identity_is_idempotent(self, store, resolver):
        user = store.create_user("owner@example.com", "Owners")
        store.create_oauth_account(user.id, OAuthProvider.GOOGLE, "g-123")
        result = resolver.resolve(google(), link_to_user_id=user.id)
        assert result == Resolution(ResolutionAction.LOGIN, user.id)

    def test_identity_owned_by_other_household_conflicts(self, store, resolver):
        owner = store.create_user("owner@example.com", "Owners")
        other = store.create_user("other@example.com", "Others")
        store.create_oauth_account(owner.id, OAuthProvider.GOOGLE, "g-123")

        with pytest.raises(ConflictError):
            resolver.resolve(google(), link_to_user_id=other.id)
        assert store.get_oauth_account(OAuthProvider.GOOGLE, "g-123").user_id == owner.id


class RacingStore(MemoryStore):
    """Another callback links the identity between lookup and insert."""

    def __init__(self, winner_id=None):
        super().__init__()
        self.winner_id = winner_id

    def create_oauth_account(self, user_id, provider, provider_account_id, **kwargs):
        if self.winner_id is not None:
            winner, self.winner_id = self.winner_id, None
            super().create_oauth_account(winner, provider, provider_account_id, **kwargs)
        return super().create_oauth_account(
            user_id, provider, provider_account_id, **kwargs
        )


def test_concurrent_auto_link_resolves_to_winner():
    store = RacingStore()
    user = store.create_user("owner@example.com", "Owners")
    store.winner_id = user.id
    resolver = IdentityResolver(store)

    result = resolver.resolve(google())

    assert result == Resolution(ResolutionAction.LOGIN, user.id)
    assert len(store.list_oauth_accounts(user.id)) == 1
