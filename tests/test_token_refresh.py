"""Tests for OIDC token refresh: expiry buffer, single-flight, failure kinds."""

import asyncio
import gc
import time

import pytest

import token_refresh
from conftest import CLIENT_ID, ISSUER
from errors import JMAPError
from token_refresh import (
    TOKEN_EXPIRY_BUFFER,
    TokenRefresher,
    create_token_refresher,
)
from token_store import StoredTokens, load_tokens, save_tokens, token_path

NOW = 1_700_000_000


@pytest.fixture
def frozen_time(monkeypatch):
    monkeypatch.setattr(token_refresh.time, "time", lambda: float(NOW))
    return NOW


@pytest.fixture
def refresher(provider):
    return TokenRefresher(ISSUER, CLIENT_ID, transport=provider.transport)


def expiring_tokens(**overrides):
    fields = {
        "access_token": "expiring-token",
        "refresh_token": "refresh-token",
        "expires_at": int(time.time()) + 30,
    }
    fields.update(overrides)
    return StoredTokens(**fields)


def test_buffer_is_60_seconds():
    assert TOKEN_EXPIRY_BUFFER == 60


def test_factory_creates_refresher():
    assert isinstance(create_token_refresher(ISSUER, CLIENT_ID), TokenRefresher)


class TestIsTokenValid:
    def test_no_expiry_is_valid(self, refresher):
        assert refresher.is_token_valid(StoredTokens(access_token="t")) is True

    @pytest.mark.parametrize(
        "offset,expected",
        [(3600, True), (61, True), (60, False), (59, False), (0, False), (-10, False)],
    )
    def test_expiry_buffer_boundary(self, refresher, frozen_time, offset, expected):
        tokens = StoredTokens(access_token="t", expires_at=frozen_time + offset)
        assert refresher.is_token_valid(tokens) is expected


class TestEnsureValidToken:
    @pytest.mark.asyncio
    async def test_no_stored_tokens(self, refresher):
        with pytest.raises(JMAPError) as exc:
            await refresher.ensure_valid_token()
        assert exc.value.type == "noStoredTokens"

    @pytest.mark.asyncio
    async def test_corrupt_token_file(self, refresher, provider):
        token_path().parent.mkdir(parents=True)
        token_path().write_text("{not json")

        with pytest.raises(JMAPError) as exc:
            await refresher.ensure_valid_token()

        assert exc.value.type == "storedTokensUnreadable"
        assert "mcp-twake-mail auth" in exc.value.fix
        assert provider.grants == []

    @pytest.mark.asyncio
    async def test_unreadable_token_file(self, refresher):
        token_path().mkdir(parents=True)

        with pytest.raises(JMAPError) as exc:
            await refresher.ensure_valid_token()
        assert exc.value.type == "storedTokensUnreadable"

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_network(self, refresher, provider):
        tokens = StoredTokens(
            access_token="valid-token",
            refresh_token="refresh-token",
            expires_at=int(time.time()) + 300,
        )
        save_tokens(tokens)

        assert await refresher.ensure_valid_token() == tokens
        assert provider.discoveries == 0
        assert provider.grants == []

    @pytest.mark.asyncio
    async def test_expiring_without_refresh_token_fails_fast(self, refresher, provider):
        save_tokens(expiring_tokens(refresh_token=None))

        with pytest.raises(JMAPError) as exc:
            await refresher.ensure_valid_token()
        assert exc.value.type == "tokenExpired"
        assert "mcp-twake-mail auth" in exc.value.fix
        assert provider.grants == []

    @pytest.mark.asyncio
    async def test_refreshes_and_persists(self, refresher, provider, frozen_time):
        save_tokens(expiring_tokens(expires_at=frozen_time + 30))

        result = await refresher.ensure_valid_token()

        assert result.access_token == "new-access-token"
        assert result.refresh_token == "new-refresh-token"
        assert result.expires_at == frozen_time + 3600
        assert load_tokens() == result
        assert provider.grants == [
            {
                "grant_type": "refresh_token",
                "refresh_token": "refresh-token",
                "client_id": CLIENT_ID,
            }
        ]

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(self, refresher, provider):
        save_tokens(expiring_tokens())
        provider.token_response = {"access_token": "new-access-token", "expires_in": 3600}

        result = await refresher.ensure_valid_token()

        assert result.refresh_token == "refresh-token"
        assert load_tokens().refresh_token == "refresh-token"

    @pytest.mark.asyncio
    async def test_no_expires_in_leaves_expiry_unset(self, refresher, provider):
        save_tokens(expiring_tokens())
        provider.token_response = {"access_token": "new-access-token"}

        result = await refresher.ensure_valid_token()

        assert result.expires_at is None
        assert refresher.is_token_valid(result)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, refresher, provider):
        save_tokens(expiring_tokens())
        provider.delay = 0.05

        results = await asyncio.gather(
            *(refresher.ensure_valid_token() for _ in range(5))
        )

        assert {r.access_token for r in results} == {"new-access-token"}
        assert len(provider.grants) == 1
        assert provider.discoveries == 1

    @pytest.mark.asyncio
    async def test_later_expiry_triggers_a_new_refresh(self, refresher, provider):
        save_tokens(expiring_tokens())
        await refresher.ensure_valid_token()

        save_tokens(expiring_tokens(refresh_token="new-refresh-token"))
        provider.token_response = {
            "access_token": "second-access-token",
            "expires_in": 3600,
        }
        result = await refresher.ensure_valid_token()

        assert result.access_token == "second-access-token"
        assert len(provider.grants) == 2
        assert provider.grants[1]["refresh_token"] == "new-refresh-token"
        # discovery is cached across refreshes
        assert provider.discoveries == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_carries_provider_detail(self, refresher, provider):
        save_tokens(expiring_tokens())
        provider.token_status = 400
        provider.token_response = {
            "error": "invalid_grant",
            "error_description": "Token has been revoked",
        }

        with pytest.raises(JMAPError) as exc:
            await refresher.ensure_valid_token()

        assert exc.value.type == "refreshFailed"
        assert exc.value.message == "Token refresh failed: Token has been revoked"
        # stored tokens are untouched
        assert load_tokens().access_token == "expiring-token"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_failure(self, refresher, provider):
        save_tokens(expiring_tokens())
        provider.delay = 0.05
        provider.token_status = 400
        provider.token_response = {"error": "invalid_grant"}

        results = await asyncio.gather(
            *(refresher.ensure_valid_token() for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, JMAPError) for r in results)
        assert {r.type for r in results} == {"refreshFailed"}
        assert len(provider.grants) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_clears_in_flight_slot(self, refresher, provider):
        save_tokens(expiring_tokens())
        provider.token_status = 400
        provider.token_response = {"error": "invalid_grant"}
        with pytest.raises(JMAPError):
            await refresher.ensure_valid_token()

        provider.token_status = 200
        provider.token_response = {"access_token": "recovered", "expires_in": 3600}
        result = await refresher.ensure_valid_token()

        assert result.access_token == "recovered"
        assert len(provider.grants) == 2

    @pytest.mark.asyncio
    async def test_discovery_failure_is_refresh_failed(self, refresher, provider):
        save_tokens(expiring_tokens())
        provider.discovery_status = 500

        with pytest.raises(JMAPError) as exc:
            await refresher.ensure_valid_token()
        assert exc.value.type == "refreshFailed"
        assert "HTTP 500" in exc.value.message
        assert provider.grants == []

    @pytest.mark.asyncio
    async def test_slow_token_endpoint_times_out(self, provider):
        refresher = TokenRefresher(
            ISSUER, CLIENT_ID, transport=provider.transport, timeout=0.1
        )
        save_tokens(expiring_tokens())
        provider.delay = 1.0

        started = time.monotonic()
        with pytest.raises(JMAPError) as exc:
            await refresher.ensure_valid_token()

        assert exc.value.message == "Token refresh failed: timed out"
        assert time.monotonic() - started < 0.8
        assert load_tokens().access_token == "expiring-token"

    @pytest.mark.asyncio
    async def test_failure_with_all_callers_cancelled_is_not_reported(
        self, refresher, provider
    ):
        save_tokens(expiring_tokens())
        provider.delay = 0.05
        provider.token_status = 400
        provider.token_response = {"error": "invalid_grant"}
        loop = asyncio.get_running_loop()
        unhandled = []
        loop.set_exception_handler(lambda loop, context: unhandled.append(context))
        try:
            caller = asyncio.create_task(refresher.ensure_valid_token())
            await asyncio.sleep(0.01)
            refresh = refresher._refresh_task
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            await asyncio.wait({refresh})
            assert refresh.done() and not refresh.cancelled()
            assert refresher._refresh_task is None
            del caller, refresh
            gc.collect()
            await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(None)

        assert unhandled == []


class TestIssuerConfig:
    @pytest.mark.asyncio
    async def test_discovery_is_cached(self, refresher, provider):
        first = await refresher.get_issuer_config()
        second = await refresher.get_issuer_config()

        assert first.token_endpoint == f"{ISSUER}/token"
        assert first is second
        assert provider.discoveries == 1

    @pytest.mark.asyncio
    async def test_clear_cache_forces_rediscovery(self, refresher, provider):
        await refresher.get_issuer_config()
        refresher.clear_cache()
        await refresher.get_issuer_config()
        assert provider.discoveries == 2

    @pytest.mark.asyncio
    async def test_issuer_mismatch_is_rejected(self, provider):
        provider.discovery["issuer"] = "https://evil.example.com"
        refresher = TokenRefresher(ISSUER, CLIENT_ID, transport=provider.transport)

        with pytest.raises(JMAPError, match="issuer mismatch") as exc:
            await refresher.get_issuer_config()
        assert exc.value.type == "refreshFailed"

    @pytest.mark.asyncio
    async def test_discovery_errors_are_converted(self, refresher, provider):
        provider.discovery_status = 404

        with pytest.raises(JMAPError) as exc:
            await refresher.get_issuer_config()

        assert exc.value.type == "refreshFailed"
        assert exc.value.message == "Token refresh failed: discovery returned HTTP 404"
        # failures are not cached
        provider.discovery_status = 200
        await refresher.get_issuer_config()
        assert provider.discoveries == 2

    @pytest.mark.asyncio
    async def test_trailing_slash_on_issuer_is_ignored(self, provider):
        refresher = TokenRefresher(f"{ISSUER}/", CLIENT_ID, transport=provider.transport)
        metadata = await refresher.get_issuer_config()
        assert metadata.issuer == ISSUER
