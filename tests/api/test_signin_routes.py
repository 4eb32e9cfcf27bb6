import asyncio

import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from conftest import AUTH, SETUP, authenticated_data
from hme.api.auth import require_api_key
from hme.api.routes import get_http_client, get_session_store
from hme.core.state_machine import Phase
from hme.main import app
from hme.settings import settings

client = TestClient(app)


@pytest.fixture(autouse=True)
def overrides(fake_icloud, store):
    app.dependency_overrides[require_api_key] = lambda: None
    app.dependency_overrides[get_session_store] = lambda: store
    app.dependency_overrides[get_http_client] = lambda: fake_icloud.client()
    yield
    app.dependency_overrides = {}


def test_health_and_root():
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/").status_code == 200


def test_sign_in_requiring_2fa_persists_session(fake_icloud, store):
    fake_icloud.on(
        "POST",
        f"{AUTH}/signin",
        status=409,
        headers={"X-Apple-ID-Session-Id": "sess-1", "X-Apple-Session-Token": "tok-1", "scnt": "scnt-1"},
    )

    response = client.post("/auth/signin", json={"email": "user@example.com", "password": "hunter2"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "action": "SUCCESSFUL_SIGN_IN"}
    stored = asyncio.run(store.get_session_data())
    assert stored["headers"]["X-Apple-ID-Session-Id"] == "sess-1"
    assert "hunter2" not in str(stored)
    # The phase belongs to the surface; the component only writes session data
    assert asyncio.run(store.get_phase()) is Phase.SIGNED_OUT


def test_trusted_sign_in_finishes_account_login(fake_icloud, store):
    fake_icloud.on("POST", f"{AUTH}/signin", status=200, headers={"X-Apple-Session-Token": "tok-1"})
    fake_icloud.on(
        "POST",
        f"{SETUP}/accountLogin",
        json_body={"dsInfo": {"dsid": "123"}, "webservices": authenticated_data()["webservices"]},
    )

    response = client.post("/auth/signin", json={"email": "user@example.com", "password": "pw"})

    assert response.json()["success"] is True
    assert fake_icloud.urls() == [f"{AUTH}/signin", f"{SETUP}/accountLogin"]
    assert asyncio.run(store.get_session_data())["dsInfo"] == {"dsid": "123"}


def test_sign_in_rejected(fake_icloud):
    fake_icloud.on("POST", f"{AUTH}/signin", status=401)

    response = client.post("/auth/signin", json={"email": "user@example.com", "password": "wrong"})

    assert response.status_code == 200
    assert response.json() == {"success": False, "action": None}


def test_new_sign_in_reuses_trust_token_but_not_old_login(fake_icloud, store):
    previous = authenticated_data()
    previous["headers"]["X-Apple-TwoSV-Trust-Token"] = "trust-1"
    asyncio.run(store.set_session_data(previous))
    fake_icloud.on("POST", f"{AUTH}/signin", status=409, headers={"scnt": "scnt-2"})

    client.post("/auth/signin", json={"email": "user@example.com", "password": "pw"})

    assert fake_icloud.calls[0]["json"]["trustTokens"] == ["trust-1"]
    stored = asyncio.run(store.get_session_data())
    assert stored["webservices"] == {}
    assert "dsInfo" not in stored


def test_empty_credentials_are_rejected_before_any_request(fake_icloud):
    response = client.post("/auth/signin", json={"email": "", "password": "pw"})

    assert response.status_code == 422
    assert fake_icloud.calls == []


def test_api_key_is_enforced_when_configured(fake_icloud):
    del app.dependency_overrides[require_api_key]
    fake_icloud.on("POST", f"{AUTH}/signin", status=401)

    with patch.object(settings, "API_KEY", "secret"):
        denied = client.post("/auth/signin", json={"email": "user@example.com", "password": "pw"})
        allowed = client.post(
            "/auth/signin",
            json={"email": "user@example.com", "password": "pw"},
            headers={"x-api-key": "secret"},
        )

    assert denied.status_code == 401
    assert allowed.status_code == 200



@patch("hme.api.auth.log")
def test_rejected_api_key_is_logged_without_the_key(mock_log, fake_icloud):
    del app.dependency_overrides[require_api_key]

    with patch.object(settings, "API_KEY", "secret"):
        response = client.post(
            "/auth/signin",
            json={"email": "user@example.com", "password": "pw"},
            headers={"x-api-key": "guess"},
        )

    assert response.status_code == 401
    mock_log.assert_called_once_with(event="api_key_rejected", path="/auth/signin", keyPresent=True)
    assert fake_icloud.calls == []


def test_session_status_never_exposes_tokens(store):
    asyncio.run(store.set_session_data(authenticated_data()))
    asyncio.run(store.set_phase(Phase.VERIFIED))

    body = client.get("/session/status").json()

    assert body["phase"] == "Verified"
    assert body["sessionPresent"] is True
    assert body["authenticated"] is True
    assert body["sessionWriter"] == "surface-a"
    assert "tok-1" not in str(body)
