"""Tests for MSAL token acquisition."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from mailpilot.auth.msal_auth import GraphAuth
from mailpilot.core.errors import AuthenticationError


@pytest.fixture
def msal_app():
    with patch("mailpilot.auth.msal_auth.msal.PublicClientApplication") as factory:
        app = MagicMock()
        factory.return_value = app
        yield app


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("mailpilot.auth.msal_auth.time.sleep", lambda _: None)


def _auth(tmp_path: Path) -> GraphAuth:
    return GraphAuth(
        client_id="client-1",
        tenant_id="common",
        scopes=["Mail.ReadWrite"],
        token_cache_path=str(tmp_path / "data" / "token_cache.json"),
    )


def test_cached_account_skips_device_flow(tmp_path, msal_app):
    msal_app.get_accounts.return_value = [{"username": "me@example.com"}]
    msal_app.acquire_token_silent.return_value = {"access_token": "cached"}

    assert _auth(tmp_path).get_access_token() == "cached"
    msal_app.initiate_device_flow.assert_not_called()


def test_silent_network_failure_falls_back_to_device_flow(tmp_path, msal_app):
    msal_app.get_accounts.return_value = [{"username": "me@example.com"}]
    msal_app.acquire_token_silent.side_effect = requests.ConnectionError("offline")
    msal_app.initiate_device_flow.return_value = {
        "user_code": "ABC123",
        "verification_uri": "https://microsoft.com/devicelogin",
    }
    msal_app.acquire_token_by_device_flow.return_value = {"access_token": "fresh"}

    assert _auth(tmp_path).get_access_token() == "fresh"
    assert msal_app.acquire_token_silent.call_count == 3


def test_declined_device_flow_is_actionable(tmp_path, msal_app):
    msal_app.get_accounts.return_value = []
    msal_app.initiate_device_flow.return_value = {
        "user_code": "ABC123",
        "verification_uri": "https://microsoft.com/devicelogin",
    }
    msal_app.acquire_token_by_device_flow.return_value = {"error": "authorization_declined"}

    with pytest.raises(AuthenticationError, match="declined"):
        _auth(tmp_path).get_access_token()


def test_device_flow_not_allowed(tmp_path, msal_app):
    msal_app.get_accounts.return_value = []
    msal_app.initiate_device_flow.return_value = {"error_description": "AADSTS7000218"}

    with pytest.raises(AuthenticationError, match="public client flows"):
        _auth(tmp_path).get_access_token()


def test_blank_client_id_rejected(tmp_path, msal_app):
    with pytest.raises(ValueError, match="mail.client_id"):
        GraphAuth("  ", "common", ["Mail.ReadWrite"], str(tmp_path / "cache.json"))
