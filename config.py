import logging
import os
import sys
from collections.abc import Mapping
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LOGGER_NAME = "mcp_twake_mail"

LogLevel = Literal["fatal", "error", "warn", "info", "debug", "trace"]

_LEVELS = {
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


class Config(BaseModel):
    """Validated server configuration, populated from ``JMAP_*`` variables."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_url: str = Field(alias="JMAP_SESSION_URL")
    auth_method: Literal["basic", "bearer", "oidc"] = Field(
        "basic", alias="JMAP_AUTH_METHOD"
    )
    username: str | None = Field(None, alias="JMAP_USERNAME")
    password: str | None = Field(None, alias="JMAP_PASSWORD")
    token: str | None = Field(None, alias="JMAP_TOKEN")
    oidc_issuer: str | None = Field(None, alias="JMAP_OIDC_ISSUER")
    oidc_client_id: str | None = Field(None, alias="JMAP_OIDC_CLIENT_ID")
    oidc_scope: str = Field("openid email offline_access", alias="JMAP_OIDC_SCOPE")
    oidc_redirect_port: int = Field(3000, alias="JMAP_OIDC_REDIRECT_PORT")
    oidc_redirect_uri: str | None = Field(None, alias="JMAP_OIDC_REDIRECT_URI")
    # milliseconds
    request_timeout: int = Field(30000, alias="JMAP_REQUEST_TIMEOUT", gt=0)
    log_level: LogLevel = Field("info", alias="LOG_LEVEL")

    @field_validator("session_url")
    @classmethod
    def _require_https(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError("JMAP_SESSION_URL must be a valid URL")
        if parsed.scheme != "https" and parsed.hostname not in ("localhost", "127.0.0.1"):
            raise ValueError(
                "URL must use HTTPS. Only localhost allowed over HTTP for development."
            )
        return value

    @field_validator("oidc_issuer")
    @classmethod
    def _issuer_is_url(cls, value: str | None) -> str | None:
        if value is not None:
            parsed = urlparse(value)
            if parsed.scheme not in ("http", "https") or not parsed.hostname:
                raise ValueError("JMAP_OIDC_ISSUER must be a valid URL")
        return value

    @model_validator(mode="after")
    def _check_auth_fields(self) -> "Config":
        required = {
            "basic": ("username", "password"),
            "bearer": ("token",),
            "oidc": ("oidc_issuer", "oidc_client_id"),
        }[self.auth_method]
        missing = [
            type(self).model_fields[name].alias
            for name in required
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                f"{', '.join(missing)} required when using {self.auth_method} auth"
            )
        return self

    @property
    def redirect_uri(self) -> str:
        """OIDC redirect URI; the local callback listener serves its path."""
        return self.oidc_redirect_uri or (
            f"http://localhost:{self.oidc_redirect_port}/callback"
        )


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from the environment.

    Raises:
        pydantic.ValidationError: On missing or invalid variables.
    """
    environ = os.environ if environ is None else environ
    aliases = {field.alias for field in Config.model_fields.values()}
    return Config.model_validate(
        {key: value for key, value in environ.items() if key in aliases and value != ""}
    )


def create_logger(level: str = "info") -> logging.Logger:
    """Configure the package logger to write to stderr only.

    stdout carries the MCP stdio protocol and must never receive log lines.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_LEVELS.get(level, logging.INFO))
    if not any(h.get_name() == "stderr" for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name("stderr")
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child of the package logger for a module."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
