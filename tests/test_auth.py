"""Tests for configuration loading and the bearer token lifecycle."""

from datetime import timedelta

import pytest
import requests

from conftest import T0, FakeResponse, FakeSession, token_payload
from eseis_auth import (
    DEFAULT_BASE_URL,
    DEFAULT_BASE_WEB_URL,
    TOKEN_SAFETY_MARGIN,
    EseisConfig,
    SessionToken,
    TokenAuthority,
    get_credentials_from_prompt,
    load_config,
)
from eseis_errors import AuthError, ConfigError

FULL_ENV = {
    "ESEIS_CLIENT_ID": "cid",
    "ESEIS_USERNAME": "user",
    "ESEIS_PASSWORD": "pass",
    "ESEIS_SCRAPPER_OUT_DIR": "/tmp/out",
}


def test_load_config_applies_url_defaults():
    config = load_config(env=FULL_ENV)
    assert config.client_id == "cid"
    assert config.out_dir == "/tmp/out"
    assert config.base_url == DEFAULT_BASE_URL
    assert config.base_web_url == DEFAULT_BASE_WEB_URL


def test_load_config_reports_every_missing_variable():
    with pytest.raises(ConfigError) as excinfo:
        load_config(env={"ESEIS_CLIENT_ID": "cid"})
    message = str(excinfo.value)
    assert "ESEIS_USERNAME" in message
    assert "ESEIS_PASSWORD" in message
    assert "ESEIS_SCRAPPER_OUT_DIR" in message
    assert "ESEIS_CLIENT_ID" not in message


def test_load_config_out_dir_optional_when_given_elsewhere():
    env = dict(FULL_ENV)
    del env["ESEIS_SCRAPPER_OUT_DIR"]
    config = load_config(env=env, require_out_dir=False)
    assert config.out_dir is None


def test_load_config_overrides_urls():
    env = dict(FULL_ENV, ESEIS_BASE_URL="https://api.test", ESEIS_BASE_WEB_URL="https://web.test/")
    config = load_config(env=env)
    assert config.build_url("/v1/x") == "https://api.test/v1/x"
    assert config.build_web_url("/y") == "https://web.test/y"


def test_load_config_reads_dotenv_from_working_directory(monkeypatch, tmp_path):
    for name in list(FULL_ENV) + ["ESEIS_BASE_URL", "ESEIS_BASE_WEB_URL"]:
        # setenv first so the values loaded from .env are removed after the test
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    (tmp_path / ".env").write_text(
        "".join(f"{name}={value}\n" for name, value in FULL_ENV.items()),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.client_id == "cid"
    assert config.username == "user"
    assert config.out_dir == "/tmp/out"


def test_prompt_fills_missing_credentials(monkeypatch):
    config = EseisConfig(client_id="cid", username="", password="")
    monkeypatch.setattr("builtins.input", lambda prompt: " someone@example.com ")
    monkeypatch.setattr("getpass.getpass", lambda prompt: "hunter2")
    filled = get_credentials_from_prompt(config)
    assert filled.username == "someone@example.com"
    assert filled.password == "hunter2"
    assert filled.client_id == "cid"


def test_authenticate_sends_password_grant(config, clock):
    session = FakeSession(lambda *args: FakeResponse(200, token_payload(expires_in=7200)))
    tokens = TokenAuthority(config, session, clock=clock)

    token = tokens.ensure_valid()

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api.example.com/v1/oauth/token"
    assert call["json"] == {
        "username": "owner@example.com",
        "password": "secret",
        "client_id": "client-id",
        "grant_type": "password",
        "scope": "eseis",
    }
    assert token.value == "token-1"
    assert token.issued_at == T0
    assert token.expires_at == T0 + timedelta(seconds=7200)
    assert token.refresh_value == "refresh-token-1"


def test_no_token_means_no_authorization_header(config, clock):
    tokens = TokenAuthority(config, FakeSession(), clock=clock)
    assert tokens.authorization_headers() == {}
    with pytest.raises(AuthError):
        tokens.access_token


def test_token_reused_before_safety_margin(config, clock):
    session = FakeSession(lambda *args: FakeResponse(200, token_payload(expires_in=3600)))
    tokens = TokenAuthority(config, session, clock=clock)
    tokens.ensure_valid()

    # One second before the 10 minute margin starts
    clock.now = T0 + timedelta(seconds=3600) - TOKEN_SAFETY_MARGIN - timedelta(seconds=1)
    tokens.ensure_valid()

    assert len(session.calls) == 1
    assert tokens.authorization_headers() == {"Authorization": "Bearer token-1"}


def test_token_refreshed_at_safety_margin(config, clock):
    issued = []

    def handler(*args):
        issued.append(clock.now)
        return FakeResponse(200, token_payload(f"token-{len(issued)}", created_at=clock.now, expires_in=3600))

    session = FakeSession(handler)
    tokens = TokenAuthority(config, session, clock=clock)
    first = tokens.ensure_valid()

    clock.now = first.expires_at - TOKEN_SAFETY_MARGIN
    second = tokens.ensure_valid()

    assert len(session.calls) == 2
    assert second.value == "token-2"
    assert second.expires_at > first.expires_at
    assert tokens.token is second


def test_session_token_usable_window():
    token = SessionToken("v", T0, T0 + timedelta(hours=1))
    assert token.is_usable(T0 + timedelta(minutes=49))
    assert not token.is_usable(T0 + timedelta(minutes=50))


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(401, {"error": "invalid_grant"}),
        FakeResponse(200, text="<html>maintenance</html>"),
        FakeResponse(200, {"access_token": "x"}),
        FakeResponse(200, {"access_token": "", "created_at": 1, "expires_in": 10}),
    ],
    ids=["rejected", "not-json", "missing-expiry", "empty-token"],
)
def test_authenticate_failures_raise_auth_error(config, clock, response):
    tokens = TokenAuthority(config, FakeSession(lambda *args: response), clock=clock)
    with pytest.raises(AuthError):
        tokens.ensure_valid()
    assert tokens.token is None


def test_authenticate_transport_failure_is_auth_error(config, clock):
    session = FakeSession(lambda *args: requests.ConnectionError("connection refused"))
    tokens = TokenAuthority(config, session, clock=clock)
    with pytest.raises(AuthError, match="connection refused"):
        tokens.ensure_valid()
