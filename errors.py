from pydantic import ValidationError

AUTH_COMMAND = "mcp-twake-mail auth"

# Default remediation for JMAP method-level error types (RFC 8620 section 3.6.2)
METHOD_ERROR_FIXES: dict[str, str] = {
    "stateMismatch": "The state is stale. Refetch the data and try again.",
    "cannotCalculateChanges": "State is too old. Perform a full sync instead of incremental.",
    "notFound": "The requested item was not found. It may have been deleted.",
    "forbidden": "You do not have permission for this operation.",
    "accountNotFound": "The account ID is invalid. Refetch the session.",
    "noMailAccount": "The server does not have a mail account. Check the JMAP server configuration.",
    "unknownCapability": "The server does not support the requested capability.",
    "invalidArguments": "The request arguments are invalid. Check the request parameters.",
}


class JMAPError(Exception):
    """A failure with a machine-readable ``type`` and a human-actionable ``fix``."""

    def __init__(self, message: str, type: str, fix: str) -> None:
        super().__init__(message)
        self.message = message
        self.type = type
        self.fix = fix

    def __repr__(self) -> str:
        return f"JMAPError(type={self.type!r}, message={self.message!r})"

    @classmethod
    def http_error(cls, status: int, status_text: str) -> "JMAPError":
        """Map an HTTP status (4xx, 5xx) to an error kind."""
        message = f"HTTP {status}: {status_text}"

        if status == 401:
            return cls(
                message,
                "unauthorized",
                "Check your credentials. For basic auth: verify JMAP_USERNAME and "
                "JMAP_PASSWORD. For bearer: verify JMAP_TOKEN is valid.",
            )
        if status == 403:
            return cls(
                message,
                "forbidden",
                "You do not have permission to access this resource. "
                "Check your account permissions.",
            )
        if status == 404:
            return cls(
                message,
                "notFound",
                "The JMAP endpoint was not found. Verify JMAP_SESSION_URL is correct.",
            )
        if status >= 500:
            return cls(
                message,
                "serverError",
                "The JMAP server encountered an error. Try again later or contact "
                "the server administrator.",
            )
        return cls(
            message,
            "httpError",
            "An HTTP error occurred. Check the server URL and try again.",
        )

    @classmethod
    def method_error(cls, type: str, description: str | None = None) -> "JMAPError":
        """Error for a JMAP method response named ``error``; ``type`` is the server's."""
        message = description or f"JMAP method error: {type}"
        fix = METHOD_ERROR_FIXES.get(
            type, "A JMAP error occurred. Check the error details and try again."
        )
        return cls(message, type, fix)

    @classmethod
    def timeout(cls, operation: str) -> "JMAPError":
        return cls(
            f"{operation} timed out",
            "timeout",
            "The operation took too long. Check your network connection and try "
            "again. If the issue persists, increase JMAP_REQUEST_TIMEOUT.",
        )

    @classmethod
    def network_error(cls, operation: str, detail: str) -> "JMAPError":
        return cls(
            f"{operation} failed: {detail}",
            "networkError",
            "Could not reach the server. Check JMAP_SESSION_URL and your network "
            "connection.",
        )

    @classmethod
    def token_expired(cls, refresh_available: bool) -> "JMAPError":
        if refresh_available:
            return cls(
                "Access token expired. Will attempt automatic refresh.",
                "tokenExpired",
                "The access token has expired. Automatic refresh will be attempted.",
            )
        return cls(
            "Access token expired and no refresh token available. "
            f"Re-authenticate using: {AUTH_COMMAND}",
            "tokenExpired",
            f"Your session has expired. Re-authenticate using: {AUTH_COMMAND}",
        )

    @classmethod
    def refresh_failed(cls, reason: str | None = None) -> "JMAPError":
        message = f"Token refresh failed: {reason}" if reason else "Token refresh failed"
        return cls(
            message,
            "refreshFailed",
            f"Your session has expired. Re-authenticate using: {AUTH_COMMAND}",
        )

    @classmethod
    def oidc_flow_error(cls, stage: str, details: str | None = None) -> "JMAPError":
        message = (
            f"OIDC authentication failed at {stage}: {details}"
            if details
            else f"OIDC authentication failed at {stage}"
        )
        return cls(
            message,
            "oidcError",
            "Check your OIDC provider configuration. Verify JMAP_OIDC_ISSUER is "
            "correct and the provider supports PKCE.",
        )

    @classmethod
    def oidc_config_error(cls) -> "JMAPError":
        return cls(
            "OIDC configuration incomplete",
            "oidcConfigError",
            "Ensure JMAP_OIDC_ISSUER and JMAP_OIDC_CLIENT_ID are configured.",
        )

    @classmethod
    def no_stored_tokens(cls) -> "JMAPError":
        return cls(
            "No stored authentication tokens found",
            "noStoredTokens",
            f"Authenticate first using: {AUTH_COMMAND}",
        )

    @classmethod
    def stored_tokens_unreadable(cls, detail: str) -> "JMAPError":
        return cls(
            f"Stored authentication tokens could not be read: {detail}",
            "storedTokensUnreadable",
            f"The token file is corrupt or inaccessible. Re-authenticate using: {AUTH_COMMAND}",
        )

    @classmethod
    def session_not_initialized(cls) -> "JMAPError":
        return cls(
            "Session not initialized",
            "sessionNotInitialized",
            "Call fetch_session() before making requests.",
        )


def format_startup_error(error: BaseException, session_url: str | None = None) -> str:
    """Render a startup failure as actionable text for stderr."""
    if isinstance(error, ValidationError):
        issues = []
        for issue in error.errors():
            field = ".".join(str(part) for part in issue["loc"]) or "config"
            issues.append(f"  {field}: {issue['msg']}")
        return "\n".join(
            [
                "Configuration validation failed:",
                *issues,
                "",
                "Fix: Check your environment variables.",
                "For basic auth: JMAP_SESSION_URL, JMAP_USERNAME, JMAP_PASSWORD",
                "For bearer auth: JMAP_SESSION_URL, JMAP_AUTH_METHOD=bearer, JMAP_TOKEN",
                "For OIDC auth: JMAP_SESSION_URL, JMAP_AUTH_METHOD=oidc, "
                "JMAP_OIDC_ISSUER, JMAP_OIDC_CLIENT_ID",
            ]
        )

    message = str(error).lower()

    if "token" in message and "expired" in message:
        return "\n".join(
            [
                "Authentication token has expired.",
                "",
                f"Fix: Re-authenticate using: {AUTH_COMMAND}",
            ]
        )

    if "oidc" in message or "oauth" in message:
        return "\n".join(
            [
                "OIDC authentication error.",
                "",
                "Fix: Check your OIDC configuration:",
                "- Verify JMAP_OIDC_ISSUER is correct and accessible",
                "- Verify JMAP_OIDC_CLIENT_ID is valid",
                "- Ensure the OIDC provider supports PKCE",
                "",
                f"Try re-authenticating: {AUTH_COMMAND}",
            ]
        )

    if "401" in message or "unauthorized" in message:
        return "\n".join(
            [
                "Authentication failed for JMAP server.",
                "",
                "Fix: Verify your credentials are correct.",
                "If using basic auth: check JMAP_USERNAME and JMAP_PASSWORD.",
                "If using bearer: check JMAP_TOKEN is valid and not expired.",
                f"If using OIDC: try re-authenticating with {AUTH_COMMAND}",
            ]
        )

    if "timed out" in message or "timeout" in message:
        url_context = f" {session_url}" if session_url else ""
        return "\n".join(
            [
                f"Connection to{url_context} timed out.",
                "",
                "Fix: Check the JMAP server is running and accessible.",
                "Try accessing the session URL in a browser to verify it responds.",
            ]
        )

    fix = (
        error.fix
        if isinstance(error, JMAPError)
        else "Check your configuration and try again."
    )
    return "\n".join(
        [
            f"Unexpected error: {error}",
            "",
            f"Fix: {fix}",
            "Verify JMAP_SESSION_URL and authentication settings.",
        ]
    )
