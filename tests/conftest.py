import asyncio
import logging
from urllib.parse import parse_qsl

import httpx
import pytest

from config import LOGGER_NAME

ISSUER = "https://auth.example.com"
CLIENT_ID = "test-client-id"
DISCOVERY = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/authorize",
    "token_endpoint": f"{ISSUER}/token",
    "code_challenge_methods_supported": ["S256"],
}


@pytest.fixture(autouse=True)
def home(tmp_path, monkeypatch):
    """Keep the token file inside a temp home directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


@pytest.fixture(autouse=True)
def reset_logger():
    logger = logging.getLogger(LOGGER_NAME)
    yield
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


class FakeProvider:
    """OIDC provider behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.discovery = dict(DISCOVERY)
        self.discovery_status = 200
        self.token_status = 200
        self.token_response: dict = {
            "access_token": "new-access-token",
            "refresh_token": "new-refresh-token",
            "token_type": "Bearer",
            "expires_in": 3600,
        }
        self.delay = 0.0
        self.discoveries = 0
        self.grants: list[dict[str, str]] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/.well-known/openid-configuration":
            self.discoveries += 1
            return httpx.Response(self.discovery_status, json=self.discovery)
        if request.url.path == "/token":
            self.grants.append(dict(parse_qsl(request.content.decode())))
            if self.delay:
                await asyncio.sleep(self.delay)
            return httpx.Response(self.token_status, json=self.token_response)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def provider():
    return FakeProvider()
