import asyncio
import json

import httpx
import pytest

from librarian.models import UserContext
from librarian.services.http_client import StoreHTTPClient
from librarian.services.identity import (
    FirebaseIdentityProvider,
    IdentityServiceError,
    NotAuthenticatedError,
    StaticIdentityProvider,
    require_user,
)


def make_provider(handler, token="id-token"):
    client = StoreHTTPClient(transport=httpx.MockTransport(handler))
    return FirebaseIdentityProvider(token, api_key="web-key", client=client)


def test_lookup_builds_user_context():
    def handler(request):
        assert request.url.path.endswith("/accounts:lookup")
        assert request.url.params["key"] == "web-key"
        assert json.loads(request.content) == {"idToken": "id-token"}
        return httpx.Response(200, json={"users": [
            {"localId": "uid-9", "displayName": "Ann", "email": "ann@example.com", "emailVerified": True},
        ]})

    user = asyncio.run(make_provider(handler).current_user())
    assert user == UserContext(id="uid-9", display_name="Ann", email="ann@example.com", email_verified=True)
    assert user.collection_path("books") == "users/uid-9/books"


@pytest.mark.parametrize("status", [400, 401, 403])
def test_rejected_token_means_signed_out(status):
    provider = make_provider(lambda request: httpx.Response(status, json={"error": {"message": "INVALID_ID_TOKEN"}}))
    assert asyncio.run(provider.current_user()) is None


def test_missing_token_skips_lookup():
    def handler(request):
        raise AssertionError("no request expected")

    assert asyncio.run(make_provider(handler, token=None).current_user()) is None


def test_service_failure_raises():
    provider = make_provider(lambda request: httpx.Response(500))
    with pytest.raises(IdentityServiceError):
        asyncio.run(provider.current_user())


def test_require_user():
    user = UserContext(id="u1", email_verified=False)
    assert asyncio.run(require_user(StaticIdentityProvider(user))) is user
    with pytest.raises(NotAuthenticatedError, match="Not signed in"):
        asyncio.run(require_user(StaticIdentityProvider(None)))
    with pytest.raises(NotAuthenticatedError, match="not verified"):
        asyncio.run(require_user(StaticIdentityProvider(user), require_verified=True))


def test_static_provider_from_settings(monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "default_user_id", "local")
    user = asyncio.run(StaticIdentityProvider.from_settings().current_user())
    assert user.id == "local"
    monkeypatch.setattr(settings, "default_user_id", "")
    assert asyncio.run(StaticIdentityProvider.from_settings().current_user()) is None
