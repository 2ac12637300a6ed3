from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from familyhub.logging import get_logger, redact_email
from familyhub.service.errors import ConflictError
from familyhub.storage.errors import ConstraintViolation
from familyhub.storage.models import OAuthProvider, User

logger = get_logger(__name__)


class OAuthIdentity(BaseModel):
    """Identity asserted by an OAuth provider after a successful code exchange."""

    model_config = ConfigDict(extra="ignore")

    provider: OAuthProvider
    provider_account_id: str
    email: str
    email_verified: bool = False
    display_name: Optional[str] = None


class ResolutionAction(str, Enum):
    LOGIN = "login"
    LINK_AND_LOGIN = "link_and_login"
    REGISTER = "register"


@dataclass(frozen=True)
class Resolution:
    action: ResolutionAction
    user_id: Optional[str] = None


class IdentityResolver:
    """Maps an OAuth identity onto a household account.

    Resolution order:

    1. an explicit link request from an authenticated session binds the
       identity to that account;
    2. an identity that is already linked logs its owner in, whatever email
       the provider reports this time;
    3. a provider-verified email matching an existing account links the
       identity and logs in, marking the account email verified;
    4. anything else goes to registration.

    Unverified provider emails never reach step 3.
    """

    def __init__(self, store, notifier=None):
        self.store = store
        self.notifier = notifier

    def resolve(
        self, identity: OAuthIdentity, link_to_user_id: Optional[str] = None
    ) -> Resolution:
        if link_to_user_id:
            return self._link_to_session_user(identity, link_to_user_id)

        existing = self.store.get_oauth_account(
            identity.provider, identity.provider_account_id
        )
        if existing:
            return Resolution(ResolutionAction.LOGIN, existing.user_id)

        if identity.email and identity.email_verified:
            user = self.store.get_user_by_email(identity.email)
            if user:
                return self._auto_link(identity, user)

        return Resolution(ResolutionAction.REGISTER)

    def _link_to_session_user(
        self, identity: OAuthIdentity, user_id: str
    ) -> Resolution:
        try:
            self._create_link(identity, user_id)
        except ConstraintViolation as exc:
            if exc.field != "provider_account":
                raise
            existing = self.store.get_oauth_account(
                identity.provider, identity.provider_account_id
            )
            if existing and existing.user_id == user_id:
                return Resolution(ResolutionAction.LOGIN, user_id)
            logger.warning(
                "oauth_link_conflict",
                provider=identity.provider.value,
                user_id=user_id,
            )
            raise ConflictError(
                "this account is already linked to another household",
                detail={"provider": identity.provider.value},
            ) from exc
        user = self.store.get_user(user_id)
        self._notify_linked(user, identity.provider)
        return Resolution(ResolutionAction.LOGIN, user_id)

    def _auto_link(self, identity: OAuthIdentity, user: User) -> Resolution:
        try:
            self._create_link(identity, user.id)
        except ConstraintViolation as exc:
            if exc.field != "provider_account":
                raise
            # A concurrent callback linked the same identity first.
            existing = self.store.get_oauth_account(
                identity.provider, identity.provider_account_id
            )
            if existing:
                logger.info(
                    "oauth_link_race_resolved",
                    provider=identity.provider.value,
                    user_id=existing.user_id,
                )
                return Resolution(ResolutionAction.LOGIN, existing.user_id)
            raise
        if not user.email_verified:
            self.store.mark_email_verified(user.id)
        logger.info(
            "oauth_auto_linked",
            provider=identity.provider.value,
            user_id=user.id,
            account=redact_email(user.email),
        )
        self._notify_linked(user, identity.provider)
        return Resolution(ResolutionAction.LINK_AND_LOGIN, user.id)

    def _create_link(self, identity: OAuthIdentity, user_id: str) -> None:
        self.store.create_oauth_account(
            user_id,
            identity.provider,
            identity.provider_account_id,
            email=identity.email,
            display_name=identity.display_name,
        )

    def _notify_linked(self, user: Optional[User], provider: OAuthProvider) -> None:
        if not user or not self.notifier:
            return
        try:
            self.notifier.send_account_linked(user.email, provider.value)
        except Exception as exc:
            logger.warning(
                "oauth_link_notification_failed",
                provider=provider.value,
                user_id=user.id,
                error=str(exc),
            )
