import asyncio
import time

import httpx
from pydantic import ValidationError

from auth import (
    IssuerMetadata,
    OIDCRequestError,
    fetch_issuer_metadata,
    request_tokens,
    tokens_from_response,
)
from config import get_logger
from errors import JMAPError
from token_store import StoredTokens, load_tokens, save_tokens

# Refresh tokens this many seconds before they actually expire
TOKEN_EXPIRY_BUFFER = 60

logger = get_logger(__name__)


def _describe(error: Exception) -> str:
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return "timed out"
    return str(error) or type(error).__name__


class TokenRefresher:
    """Keeps the stored OIDC access token fresh.

    When the MCP server handles several tool calls at once, each may notice
    that the token is about to expire. Sending one refresh grant per caller
    makes providers that rotate refresh tokens answer ``invalid_grant`` to
    all but the first, so only one refresh task runs at a time and every
    concurrent caller awaits that same task.
    """

    def __init__(
        self,
        issuer_url: str,
        client_id: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.issuer_url = issuer_url
        self.client_id = client_id
        self._transport = transport
        self._timeout = timeout
        self._issuer_cache: dict[tuple[str, str], IssuerMetadata] = {}
        self._refresh_task: asyncio.Task[StoredTokens] | None = None

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def get_issuer_config(self) -> IssuerMetadata:
        """Discover issuer metadata once per (issuer, client id).

        Raises:
            JMAPError: ``refreshFailed`` when discovery fails or times out.
        """
        key = (self.issuer_url, self.client_id)
        if key not in self._issuer_cache:
            try:
                async with asyncio.timeout(self._timeout):
                    async with self._http() as client:
                        metadata = await fetch_issuer_metadata(client, self.issuer_url)
            except (OIDCRequestError, httpx.HTTPError, TimeoutError) as e:
                logger.warning("OIDC discovery failed: %s", e)
                raise JMAPError.refresh_failed(_describe(e)) from e
            self._issuer_cache[key] = metadata
            logger.debug("Discovered OIDC issuer %s", self.issuer_url)
        return self._issuer_cache[key]

    def is_token_valid(self, tokens: StoredTokens) -> bool:
        """False when the token expires within TOKEN_EXPIRY_BUFFER seconds."""
        if tokens.expires_at is None:
            # Some providers omit expiry; the server rejects the token if stale
            return True
        return tokens.expires_at - int(time.time()) > TOKEN_EXPIRY_BUFFER

    async def ensure_valid_token(self) -> StoredTokens:
        """Return usable tokens, refreshing them first if they are expiring.

        Raises:
            JMAPError: ``noStoredTokens``, ``storedTokensUnreadable``,
                ``tokenExpired`` (no refresh token) or ``refreshFailed``.
        """
        try:
            tokens = load_tokens()
        except ValidationError as e:
            raise JMAPError.stored_tokens_unreadable("invalid token file contents") from e
        except OSError as e:
            raise JMAPError.stored_tokens_unreadable(_describe(e)) from e
        if tokens is None:
            raise JMAPError.no_stored_tokens()

        if self.is_token_valid(tokens):
            return tokens

        if not tokens.refresh_token:
            raise JMAPError.token_expired(refresh_available=False)

        if self._refresh_task is None:
            logger.info("Access token expiring, refreshing")
            task = asyncio.create_task(self._do_refresh(tokens.refresh_token))
            task.add_done_callback(self._release)
            self._refresh_task = task

        # shield: a cancelled caller must not cancel the refresh others await
        return await asyncio.shield(self._refresh_task)

    def _release(self, task: asyncio.Task[StoredTokens]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        # Every waiter may have been cancelled; mark the outcome as retrieved
        if not task.cancelled():
            task.exception()

    async def _do_refresh(self, refresh_token: str) -> StoredTokens:
        metadata = await self.get_issuer_config()
        try:
            async with asyncio.timeout(self._timeout):
                async with self._http() as client:
                    response = await request_tokens(
                        client,
                        metadata,
                        {
                            "grant_type": "refresh_token",
                            "refresh_token": refresh_token,
                            "client_id": self.client_id,
                        },
                    )
            tokens = tokens_from_response(response, previous_refresh_token=refresh_token)
            save_tokens(tokens)
        except (OIDCRequestError, httpx.HTTPError, TimeoutError, OSError) as e:
            logger.warning("Token refresh failed: %s", e)
            raise JMAPError.refresh_failed(_describe(e)) from e

        logger.info("Access token refreshed")
        return tokens

    def clear_cache(self) -> None:
        """Forget discovered metadata and any in-flight refresh."""
        self._issuer_cache.clear()
        self._refresh_task = None


def create_token_refresher(issuer_url: str, client_id: str) -> TokenRefresher:
    return TokenRefresher(issuer_url, client_id)


async def ensure_valid_token(issuer_url: str, client_id: str) -> StoredTokens:
    """One-off variant for callers that do not keep a refresher around."""
    return await create_token_refresher(issuer_url, client_id).ensure_valid_token()
