import logging
from typing import Optional

import httpx

from config import settings
from librarian.models import UserContext
from librarian.services.http_client import StoreHTTPClient, get_http_client

logger = logging.getLogger(__name__)

IDENTITY_URL = "https://identitytoolkit.googleapis.com/v1"


class NotAuthenticatedError(Exception):
    """No signed-in user (or the user may not use the core yet)."""
    pass


class IdentityServiceError(Exception):
    """The identity provider could not be reached."""
    pass


class IdentityProvider:
    async def current_user(self) -> Optional[UserContext]:
        raise NotImplementedError


class StaticIdentityProvider(IdentityProvider):
    """Always reports the same user (or nobody). Used for local installs and tests."""

    def __init__(self, user: Optional[UserContext] = None) -> None:
        self.user = user

    @classmethod
    def from_settings(cls) -> "StaticIdentityProvider":
        if not settings.default_user_id:
            return cls(None)
        return cls(UserContext(
            id=settings.default_user_id,
            display_name=settings.default_user_name,
            email=settings.default_user_email,
            email_verified=True,
        ))

    async def current_user(self) -> Optional[UserContext]:
        return self.user


class FirebaseIdentityProvider(IdentityProvider):
    """Resolves an id token to the account it belongs to via ``accounts:lookup``."""

    def __init__(self, id_token: Optional[str], api_key: Optional[str] = None,
                 client: Optional[StoreHTTPClient] = None) -> None:
        self.id_token = id_token
        self.api_key = api_key or settings.firebase_api_key
        self._client = client

    async def current_user(self) -> Optional[UserContext]:
        if not self.id_token:
            return None
        client = self._client or await get_http_client()
        try:
            response = await client.post(
                f"{IDENTITY_URL}/accounts:lookup",
                params={"key": self.api_key},
                json={"idToken": self.id_token},
            )
        except httpx.HTTPError as exc:
            logger.error(f"Identity lookup failed: {exc}")
            raise IdentityServiceError("Identity provider unreachable") from exc

        if response.status_code in (400, 401, 403):
            # Expired or forged token: treat as signed out
            logger.info("Identity lookup rejected the token")
            return None
        if response.status_code != 200:
            logger.error(f"Identity lookup returned {response.status_code}")
            raise IdentityServiceError("Identity provider error")

        users = response.json().get("users") or []
        if not users:
            return None
        account = users[0]
        return UserContext(
            id=account["localId"],
            display_name=account.get("displayName"),
            email=account.get("email"),
            email_verified=bool(account.get("emailVerified", False)),
        )


async def require_user(provider: IdentityProvider, require_verified: bool = False) -> UserContext:
    """Return the current user or raise NotAuthenticatedError."""
    user = await provider.current_user()
    if user is None:
        raise NotAuthenticatedError("Not signed in.")
    if require_verified and not user.email_verified:
        raise NotAuthenticatedError("Email address is not verified.")
    return user
