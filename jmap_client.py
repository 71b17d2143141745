import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from config import Config, get_logger
from errors import JMAPError
from token_refresh import TokenRefresher, create_token_refresher

MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"
DEFAULT_USING = ["urn:ietf:params:jmap:core", MAIL_CAPABILITY]

# Session fetch is a quick reachability check (seconds)
SESSION_TIMEOUT = 5.0

# JMAP reserves this method name for method-level errors (RFC 8620 section 3.6.2)
ERROR_METHOD = "error"

MethodCall = list[Any]  # [name, arguments, call_id]
MethodResponse = list[Any]


class JMAPSession(BaseModel):
    """Session data extracted from the JMAP session resource."""

    api_url: str
    download_url: str
    account_id: str
    state: str
    capabilities: dict[str, Any]


@dataclass(frozen=True)
class MethodError:
    type: str
    description: str | None = None


@dataclass(frozen=True)
class MethodSuccess:
    method: str
    data: dict[str, Any]
    call_id: str
    success: Literal[True] = True


@dataclass(frozen=True)
class MethodFailure:
    error: MethodError
    call_id: str
    success: Literal[False] = False

    def to_error(self) -> JMAPError:
        return JMAPError.method_error(self.error.type, self.error.description)


def parse_method_response(response: MethodResponse) -> MethodSuccess | MethodFailure:
    """Decode a ``[name, arguments, call_id]`` triple into success or failure."""
    method_name, data, call_id = response
    if method_name == ERROR_METHOD:
        return MethodFailure(
            error=MethodError(
                type=data.get("type") or "unknownError",
                description=data.get("description"),
            ),
            call_id=call_id,
        )
    return MethodSuccess(method=method_name, data=data, call_id=call_id)


class JMAPClient:
    """JMAP client with session caching and per-type state tracking.

    Usage:
        client = JMAPClient(load_config())
        await client.fetch_session()
        body = await client.request([["Mailbox/get", {...}, "0"]])
    """

    def __init__(
        self,
        config: Config,
        logger: logging.Logger | None = None,
        *,
        token_refresher: TokenRefresher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or get_logger(__name__)
        self._transport = transport
        self._session: JMAPSession | None = None
        self._states: dict[str, str] = {}
        self._token_refresher = token_refresher
        if (
            self._token_refresher is None
            and config.auth_method == "oidc"
            and config.oidc_issuer
            and config.oidc_client_id
        ):
            self._token_refresher = create_token_refresher(
                config.oidc_issuer, config.oidc_client_id
            )

    async def _headers(self) -> dict[str, str]:
        """Authorization headers; OIDC tokens are checked on every call."""
        if self.config.auth_method == "basic":
            credentials = f"{self.config.username}:{self.config.password}"
            authorization = "Basic " + base64.b64encode(credentials.encode()).decode()
        elif self.config.auth_method == "oidc":
            if self._token_refresher is None:
                raise JMAPError.oidc_config_error()
            tokens = await self._token_refresher.ensure_valid_token()
            authorization = f"Bearer {tokens.access_token}"
        else:
            authorization = f"Bearer {self.config.token}"
        return {
            "Authorization": authorization,
            "Content-Type": "application/json",
        }

    async def _send(
        self, operation: str, method: str, url: str, timeout: float, **kwargs: Any
    ) -> httpx.Response:
        headers = await self._headers()
        try:
            # Deadline for the whole call; httpx timeouts only bound each phase
            async with asyncio.timeout(timeout):
                async with httpx.AsyncClient(
                    transport=self._transport, timeout=timeout
                ) as client:
                    r = await client.request(
                        method, url, headers=headers, follow_redirects=True, **kwargs
                    )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise JMAPError.timeout(operation) from e
        except httpx.TransportError as e:
            raise JMAPError.network_error(operation, str(e) or type(e).__name__) from e

        if r.is_error:
            raise JMAPError.http_error(r.status_code, r.reason_phrase)
        return r

    async def fetch_session(self) -> JMAPSession:
        """Discover apiUrl, accountId and capabilities from the session resource.

        Raises:
            JMAPError: On HTTP errors, timeouts, or when the server has no
                primary mail account (``noMailAccount``).
        """
        self.logger.info("Fetching JMAP session from %s", self.config.session_url)
        r = await self._send(
            "session fetch", "GET", self.config.session_url, SESSION_TIMEOUT
        )
        data = r.json()

        account_id = data.get("primaryAccounts", {}).get(MAIL_CAPABILITY)
        if not account_id:
            raise JMAPError.method_error(
                "noMailAccount",
                "No mail account found in JMAP session. The server may not support JMAP Mail.",
            )

        if not data.get("downloadUrl"):
            self.logger.warning(
                "No downloadUrl in JMAP session - attachment downloads will not work"
            )

        self._session = JMAPSession(
            api_url=data["apiUrl"],
            download_url=data.get("downloadUrl") or "",
            account_id=account_id,
            state=data.get("state", ""),
            capabilities=data.get("capabilities", {}),
        )
        self.logger.info(
            "JMAP session established (account %s, api %s)",
            account_id,
            self._session.api_url,
        )
        return self._session

    def get_session(self) -> JMAPSession:
        if self._session is None:
            raise JMAPError.session_not_initialized()
        return self._session

    async def request(
        self, method_calls: list[MethodCall], using: list[str] | None = None
    ) -> dict[str, Any]:
        """Send a batch of method calls in one POST.

        Returns the decoded body (``methodResponses`` and ``sessionState``).
        Method-level errors are not raised; check each entry with
        parse_method_response().
        """
        session = self.get_session()
        body = {
            "using": using if using is not None else DEFAULT_USING,
            "methodCalls": method_calls,
        }
        self.logger.debug(
            "Sending JMAP request: %s", ", ".join(str(mc[0]) for mc in method_calls)
        )

        r = await self._send(
            "JMAP request",
            "POST",
            session.api_url,
            self.config.request_timeout / 1000,
            json=body,
        )
        response = r.json()

        session_state = response.get("sessionState")
        if session_state and session_state != session.state:
            # Warn only; callers doing incremental sync decide when to refetch
            self.logger.warning(
                "Session state changed (%s -> %s) - session refresh may be needed",
                session.state,
                session_state,
            )

        for method_response in response.get("methodResponses", []):
            self._track_state(method_response)

        return response

    def parse_method_response(
        self, response: MethodResponse
    ) -> MethodSuccess | MethodFailure:
        result = parse_method_response(response)
        if not result.success:
            self.logger.debug(
                "JMAP method error: %s %s", result.error.type, result.error.description
            )
        return result

    def _track_state(self, response: MethodResponse) -> None:
        method_name, data, _ = response
        if method_name == ERROR_METHOD or not isinstance(data, dict):
            return
        object_type = method_name.split("/")[0]
        state = data.get("newState") or data.get("state")
        if state and object_type:
            self.update_state(object_type, state)

    def update_state(self, type: str, state: str) -> None:
        self._states[type] = state
        self.logger.debug("State updated: %s=%s", type, state)

    def get_state(self, type: str) -> str | None:
        return self._states.get(type)

    def clear_state(self, type: str | None = None) -> None:
        """Clear tracked state for one type, or for all types."""
        if type:
            self._states.pop(type, None)
            self.logger.debug("State cleared: %s", type)
        else:
            self._states.clear()
            self.logger.debug("All state cleared")

    async def download_blob(
        self, blob_id: str, name: str | None = None, type: str | None = None
    ) -> bytes:
        """Download a blob through the session's downloadUrl template."""
        session = self.get_session()
        if not session.download_url:
            raise JMAPError(
                "Download URL not available",
                "downloadUrlMissing",
                "The JMAP server did not provide a download URL in the session.",
            )

        url = (
            session.download_url.replace("{accountId}", quote(session.account_id, safe=""))
            .replace("{blobId}", quote(blob_id, safe=""))
            .replace("{name}", quote(name or "attachment", safe=""))
            .replace("{type}", quote(type or "application/octet-stream", safe=""))
        )
        self.logger.debug("Downloading blob %s", blob_id)

        r = await self._send(
            "blob download", "GET", url, self.config.request_timeout / 1000
        )
        return r.content
