import logging

import pytest
from pydantic import ValidationError

from config import LOGGER_NAME, create_logger, load_config

BASIC_ENV = {
    "JMAP_SESSION_URL": "https://jmap.example.com/session",
    "JMAP_USERNAME": "u",
    "JMAP_PASSWORD": "p",
}


def test_defaults():
    config = load_config(BASIC_ENV)
    assert config.auth_method == "basic"
    assert config.request_timeout == 30000
    assert config.log_level == "info"
    assert config.oidc_scope == "openid email offline_access"
    assert config.redirect_uri == "http://localhost:3000/callback"


def test_ignores_unrelated_and_empty_variables():
    config = load_config({**BASIC_ENV, "PATH": "/usr/bin", "JMAP_TOKEN": ""})
    assert config.token is None


def test_basic_requires_username_and_password():
    with pytest.raises(ValidationError) as exc:
        load_config({"JMAP_SESSION_URL": "https://jmap.example.com/session"})
    message = str(exc.value)
    assert "JMAP_USERNAME" in message
    assert "JMAP_PASSWORD" in message


def test_bearer_requires_token():
    env = {"JMAP_SESSION_URL": "https://jmap.example.com/session", "JMAP_AUTH_METHOD": "bearer"}
    with pytest.raises(ValidationError, match="JMAP_TOKEN"):
        load_config(env)
    assert load_config({**env, "JMAP_TOKEN": "t"}).token == "t"


def test_oidc_requires_issuer_and_client_id():
    env = {"JMAP_SESSION_URL": "https://jmap.example.com/session", "JMAP_AUTH_METHOD": "oidc"}
    with pytest.raises(ValidationError, match="JMAP_OIDC_ISSUER"):
        load_config(env)
    config = load_config(
        {
            **env,
            "JMAP_OIDC_ISSUER": "https://auth.example.com",
            "JMAP_OIDC_CLIENT_ID": "client",
            "JMAP_OIDC_REDIRECT_PORT": "8765",
        }
    )
    assert config.oidc_redirect_port == 8765
    assert config.redirect_uri == "http://localhost:8765/callback"


def test_redirect_uri_override():
    config = load_config(
        {**BASIC_ENV, "JMAP_OIDC_REDIRECT_URI": "https://tunnel.example.com/callback"}
    )
    assert config.redirect_uri == "https://tunnel.example.com/callback"


def test_rejects_plain_http_for_remote_hosts():
    with pytest.raises(ValidationError, match="HTTPS"):
        load_config({**BASIC_ENV, "JMAP_SESSION_URL": "http://jmap.example.com/session"})


@pytest.mark.parametrize("host", ["localhost", "127.0.0.1"])
def test_allows_http_on_localhost(host):
    config = load_config({**BASIC_ENV, "JMAP_SESSION_URL": f"http://{host}:8080/session"})
    assert config.session_url == f"http://{host}:8080/session"


def test_rejects_invalid_auth_method_and_timeout():
    with pytest.raises(ValidationError):
        load_config({**BASIC_ENV, "JMAP_AUTH_METHOD": "kerberos"})
    with pytest.raises(ValidationError):
        load_config({**BASIC_ENV, "JMAP_REQUEST_TIMEOUT": "0"})


def test_create_logger_writes_to_stderr_only(capsys):
    logger = create_logger("debug")
    logger.info("hello from the logger")
    captured = capsys.readouterr()
    assert "hello from the logger" in captured.err
    assert captured.out == ""


def test_create_logger_maps_levels_and_is_idempotent():
    logger = create_logger("fatal")
    assert logger.level == logging.CRITICAL
    assert create_logger("warn").level == logging.WARNING
    assert len(logging.getLogger(LOGGER_NAME).handlers) == 1
