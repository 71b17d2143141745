import asyncio
import base64
import hashlib
import secrets
import socket
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlencode, urlparse

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse
from starlette.routing import Route

from auth import (
    IssuerMetadata,
    OIDCRequestError,
    fetch_issuer_metadata,
    request_tokens,
    tokens_from_response,
)
from config import Config, get_logger
from errors import JMAPError
from token_store import StoredTokens, save_tokens

# Time the user has to complete the login in the browser
CALLBACK_TIMEOUT = 120.0

# Deadline for each call to the provider (discovery, code exchange)
HTTP_TIMEOUT = 30.0

logger = get_logger(__name__)

_SUCCESS_PAGE = (
    "<html><body><h1>Authentication successful</h1>"
    "<p>You can close this window and return to the terminal.</p></body></html>"
)
_FAILURE_PAGE = (
    "<html><body><h1>Authentication failed</h1>"
    "<p>Check the terminal for details.</p></body></html>"
)


@dataclass(frozen=True)
class OIDCFlowOptions:
    issuer_url: str
    client_id: str
    # space separated
    scope: str
    # must be registered with the provider
    redirect_uri: str
    # local listener port; differs from the redirect URI port behind a tunnel
    callback_port: int


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge), RFC 7636."""
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def build_authorization_url(
    metadata: IssuerMetadata, options: OIDCFlowOptions, code_challenge: str, state: str
) -> str:
    if not metadata.authorization_endpoint:
        raise JMAPError.oidc_flow_error(
            "discovery", "Provider metadata has no authorization_endpoint"
        )
    params = {
        "response_type": "code",
        "client_id": options.client_id,
        "redirect_uri": options.redirect_uri,
        "scope": options.scope,
        "code_challenge": code_challenge,
        # never "plain"
        "code_challenge_method": "S256",
        "state": state,
    }
    separator = "&" if "?" in metadata.authorization_endpoint else "?"
    return f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"


def _describe(error: Exception) -> str:
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return "timed out"
    return str(error) or type(error).__name__


def _bind_callback_socket(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind(("127.0.0.1", port))
        sock.listen(8)
    except OSError as e:
        sock.close()
        raise JMAPError.oidc_flow_error(
            "callback", f"Cannot listen on port {port}: {e}"
        ) from e
    return sock


async def wait_for_callback(
    port: int,
    path: str,
    authorization_url: str,
    launch: Callable[[str], object],
    timeout: float = CALLBACK_TIMEOUT,
) -> dict[str, str]:
    """Serve ``path`` on localhost until the provider redirects back once.

    Returns the callback's query parameters.
    """
    loop = asyncio.get_running_loop()
    received: asyncio.Future[dict[str, str]] = loop.create_future()

    async def callback(request: Request) -> HTMLResponse:
        params = dict(request.query_params)
        if not received.done():
            received.set_result(params)
        if "error" in params or "code" not in params:
            return HTMLResponse(_FAILURE_PAGE, status_code=400)
        return HTMLResponse(_SUCCESS_PAGE)

    app = Starlette(routes=[Route(path, callback, methods=["GET"])])
    sock = _bind_callback_socket(port)
    server = uvicorn.Server(
        uvicorn.Config(app, log_config=None, log_level="warning", lifespan="off")
    )
    serve_task = asyncio.create_task(server.serve(sockets=[sock]))
    try:
        logger.info("Waiting for OIDC callback on port %d", port)
        launch(authorization_url)
        return await asyncio.wait_for(received, timeout)
    except asyncio.TimeoutError as e:
        raise JMAPError.oidc_flow_error(
            "callback", f"No callback received within {int(timeout)} seconds"
        ) from e
    finally:
        server.should_exit = True
        await serve_task
        sock.close()


async def perform_oidc_flow(
    options: OIDCFlowOptions,
    *,
    launch: Callable[[str], object] = webbrowser.open,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = CALLBACK_TIMEOUT,
) -> StoredTokens:
    """Run discovery, PKCE, browser login and code exchange; persist the tokens.

    Raises:
        JMAPError: ``oidcError`` naming the failed stage.
    """
    async with httpx.AsyncClient(transport=transport, timeout=HTTP_TIMEOUT) as client:
        try:
            async with asyncio.timeout(HTTP_TIMEOUT):
                metadata = await fetch_issuer_metadata(client, options.issuer_url)
        except (OIDCRequestError, httpx.HTTPError, TimeoutError) as e:
            raise JMAPError.oidc_flow_error("discovery", _describe(e)) from e

        code_verifier, code_challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(32)
        authorization_url = build_authorization_url(
            metadata, options, code_challenge, state
        )

        params = await wait_for_callback(
            options.callback_port,
            urlparse(options.redirect_uri).path or "/",
            authorization_url,
            launch,
            timeout,
        )

        if "error" in params:
            raise JMAPError.oidc_flow_error(
                "authorization", params.get("error_description") or params["error"]
            )
        # CSRF protection
        if params.get("state") != state:
            raise JMAPError.oidc_flow_error(
                "state validation", "State parameter mismatch. Possible CSRF attack."
            )
        if not params.get("code"):
            raise JMAPError.oidc_flow_error(
                "callback", "No authorization code in callback"
            )

        try:
            async with asyncio.timeout(HTTP_TIMEOUT):
                response = await request_tokens(
                    client,
                    metadata,
                    {
                        "grant_type": "authorization_code",
                        "code": params["code"],
                        "redirect_uri": options.redirect_uri,
                        "client_id": options.client_id,
                        "code_verifier": code_verifier,
                    },
                )
        except (OIDCRequestError, httpx.HTTPError, TimeoutError) as e:
            raise JMAPError.oidc_flow_error("token exchange", _describe(e)) from e

    tokens = tokens_from_response(response)
    save_tokens(tokens)
    logger.info("OIDC authentication complete")
    return tokens


def get_oidc_options_from_config(config: Config) -> OIDCFlowOptions | None:
    """Flow options for an OIDC config, or None when OIDC is not configured."""
    if config.auth_method != "oidc":
        return None
    if not config.oidc_issuer or not config.oidc_client_id:
        return None
    return OIDCFlowOptions(
        issuer_url=config.oidc_issuer,
        client_id=config.oidc_client_id,
        scope=config.oidc_scope,
        redirect_uri=config.redirect_uri,
        callback_port=config.oidc_redirect_port,
    )
