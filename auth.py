import time

import httpx
from pydantic import BaseModel, ConfigDict

from token_store import StoredTokens

DISCOVERY_PATH = "/.well-known/openid-configuration"


class IssuerMetadata(BaseModel):
    """OpenID Provider metadata. Unlisted fields are kept as extras."""

    model_config = ConfigDict(extra="allow")

    issuer: str
    token_endpoint: str
    authorization_endpoint: str | None = None
    code_challenge_methods_supported: list[str] | None = None


class TokenResponse(BaseModel):
    """Successful token endpoint response (RFC 6749 section 5.1)."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


class OIDCRequestError(Exception):
    """Discovery or token endpoint failure, carrying the provider's detail."""


def _same_issuer(a: str, b: str) -> bool:
    return a.rstrip("/") == b.rstrip("/")


async def fetch_issuer_metadata(
    client: httpx.AsyncClient, issuer_url: str
) -> IssuerMetadata:
    """Fetch and validate the issuer's discovery document."""
    r = await client.get(
        f"{issuer_url.rstrip('/')}{DISCOVERY_PATH}",
        headers={"Accept": "application/json"},
        follow_redirects=True,
    )
    if r.status_code != 200:
        raise OIDCRequestError(f"discovery returned HTTP {r.status_code}")
    try:
        metadata = IssuerMetadata.model_validate(r.json())
    except ValueError as e:
        raise OIDCRequestError(f"invalid discovery document: {e}") from e

    # RFC 8414 requires the advertised issuer to match the one we asked for
    if not _same_issuer(metadata.issuer, issuer_url):
        raise OIDCRequestError(
            f"issuer mismatch: expected {issuer_url}, got {metadata.issuer}"
        )
    return metadata


def _error_detail(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("error_description") or body.get("error")
        if detail:
            return str(detail)
    return f"HTTP {r.status_code}"


async def request_tokens(
    client: httpx.AsyncClient, metadata: IssuerMetadata, form: dict[str, str]
) -> TokenResponse:
    """POST a grant to the token endpoint and decode the response."""
    r = await client.post(
        metadata.token_endpoint,
        data=form,
        headers={"Accept": "application/json"},
    )
    if r.is_error:
        raise OIDCRequestError(_error_detail(r))
    try:
        return TokenResponse.model_validate(r.json())
    except ValueError as e:
        raise OIDCRequestError(f"invalid token response: {e}") from e


def tokens_from_response(
    response: TokenResponse,
    previous_refresh_token: str | None = None,
    now: int | None = None,
) -> StoredTokens:
    """Build StoredTokens; a missing refresh_token keeps the previous one."""
    now = int(time.time()) if now is None else now
    return StoredTokens(
        access_token=response.access_token,
        # Many providers do not rotate refresh tokens
        refresh_token=response.refresh_token or previous_refresh_token,
        id_token=response.id_token,
        expires_at=now + response.expires_in if response.expires_in else None,
    )
