from __future__ import annotations

import base64
import json
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict

from familyhub.config import Settings
from familyhub.logging import get_logger
from familyhub.service.identity import OAuthIdentity
from familyhub.storage.models import OAuthProvider

logger = get_logger(__name__)

OAUTH_STATE_TTL_SECONDS = 600
GRAPH_ME_URL = (
    "https://graph.microsoft.com/v1.0/me?$select=id,displayName,mail,userPrincipalName"
)


class OAuthStateData(BaseModel):
    """Sealed into the ``state`` parameter of the authorization redirect."""

    model_config = ConfigDict(extra="ignore")

    nonce: str
    user_id: Optional[str] = None
    redirect_to: Optional[str] = None


@dataclass(frozen=True)
class ProviderConfig:
    auth_url: str
    token_url: str
    scope: str
    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: Optional[str]

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


def _decode_jwt_payload(token: str) -> dict:
    """Read the claims of an ID token received directly from the token endpoint."""
    parts = token.split(".")
    if len(parts) < 2:
        raise ValueError("malformed id_token")
    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
    if not isinstance(payload, dict):
        raise ValueError("id_token payload is not an object")
    return payload


def _claim_text(value) -> str:
    """String claim, stripped; any other JSON type reads as absent."""
    return value.strip() if isinstance(value, str) else ""


class OAuthClient:
    """Authorization URLs and code exchange for Google and Microsoft sign-in."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = timeout
        self._code_registry: Dict[Tuple[str, str], OAuthIdentity] = {}
        self._registry_lock = threading.Lock()
        tenant = settings.microsoft_tenant or "common"
        self.providers: Dict[OAuthProvider, ProviderConfig] = {
            OAuthProvider.GOOGLE: ProviderConfig(
                auth_url="https://accounts.google.com/o/oauth2/v2/auth",
                token_url="https://oauth2.googleapis.com/token",
                scope="openid email profile",
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                redirect_uri=settings.google_redirect_uri,
            ),
            OAuthProvider.MICROSOFT: ProviderConfig(
                auth_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
                token_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
                scope="openid email profile User.Read",
                client_id=settings.microsoft_client_id,
                client_secret=settings.microsoft_client_secret,
                redirect_uri=settings.microsoft_redirect_uri,
            ),
        }

    def is_configured(self, provider: OAuthProvider) -> bool:
        return self.providers[OAuthProvider(provider)].configured

    def build_authorization_url(self, provider: OAuthProvider, state: str) -> str:
        provider = OAuthProvider(provider)
        config = self.providers[provider]
        if not config.configured:
            raise ValueError(f"OAuth provider {provider.value} is not configured")
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": config.scope,
            "state": state,
        }
        if provider == OAuthProvider.GOOGLE:
            params["access_type"] = "online"
            params["prompt"] = "select_account"
        else:
            params["response_mode"] = "query"
        return f"{config.auth_url}?{urlencode(params)}"

    def register_oauth_code(
        self, provider: OAuthProvider, code: str, identity: OAuthIdentity
    ) -> None:
        """Record an exchanged identity for testing or offline flows."""

        with self._registry_lock:
            self._code_registry[(OAuthProvider(provider).value, code)] = identity

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=False, transport=self._transport
        )

    async def exchange_code(
        self, provider: OAuthProvider, code: str
    ) -> Optional[OAuthIdentity]:
        """Exchange an authorization code for the caller's identity.

        Returns None on any provider, transport or payload failure.
        """
        provider = OAuthProvider(provider)
        with self._registry_lock:
            registered = self._code_registry.pop((provider.value, code), None)
        if registered is not None:
            return registered

        config = self.providers[provider]
        if not config.configured:
            logger.error("oauth_credentials_missing", provider=provider.value)
            return None

        try:
            async with self._client() as client:
                token_response = await client.post(
                    config.token_url,
                    data={
                        "client_id": config.client_id,
                        "client_secret": config.client_secret,
                        "code": code,
                        "redirect_uri": config.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                tokens = token_response.json()
                if not isinstance(tokens, dict):
                    logger.error("oauth_token_parse_error", provider=provider.value)
                    return None
                if provider == OAuthProvider.GOOGLE:
                    identity = self._google_identity(tokens)
                else:
                    identity = await self._microsoft_identity(client, tokens)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider.value,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider.value, error=str(exc))
            return None

        if identity is None:
            logger.error("oauth_identity_incomplete", provider=provider.value)
            return None
        logger.info(
            "oauth_exchange_success",
            provider=provider.value,
            email_verified=identity.email_verified,
        )
        return identity

    @staticmethod
    def _google_identity(tokens: dict) -> Optional[OAuthIdentity]:
        id_token = tokens.get("id_token")
        if not id_token or not isinstance(id_token, str):
            return None
        claims = _decode_jwt_payload(id_token)
        subject = _claim_text(claims.get("sub"))
        email = _claim_text(claims.get("email")).lower()
        if not subject or not email:
            return None
        return OAuthIdentity(
            provider=OAuthProvider.GOOGLE,
            provider_account_id=subject,
            email=email,
            email_verified=claims.get("email_verified") is True,
            display_name=_claim_text(claims.get("name")) or None,
        )

    @staticmethod
    async def _microsoft_identity(
        client: httpx.AsyncClient, tokens: dict
    ) -> Optional[OAuthIdentity]:
        access_token = tokens.get("access_token")
        if not access_token or not isinstance(access_token, str):
            return None
        response = await client.get(
            GRAPH_ME_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
        response.raise_for_status()
        profile = response.json()
        if not isinstance(profile, dict):
            return None
        email = (
            _claim_text(profile.get("mail")) or _claim_text(profile.get("userPrincipalName"))
        ).lower()
        account_id = _claim_text(profile.get("id"))
        if not email or not account_id:
            return None
        return OAuthIdentity(
            provider=OAuthProvider.MICROSOFT,
            provider_account_id=account_id,
            email=email,
            # Microsoft verifies mailbox ownership for managed accounts
            email_verified=True,
            display_name=_claim_text(profile.get("displayName")) or None,
        )
