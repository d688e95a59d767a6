"""
Test bearer JWT auth and the X-User-Id development fallback.
"""
import time

import jwt
import pytest

SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"


@pytest.fixture
def jwt_secret(monkeypatch):
    from soundstage.core.config import settings

    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", SECRET)
    return SECRET


def _token(sub="user_jwt", secret=SECRET, **claims):
    payload = {"sub": sub, "exp": int(time.time()) + 300, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def test_valid_bearer_token(client, jwt_secret):
    response = client.get("/api/user/credits", headers={"Authorization": f"Bearer {_token()}"})
    assert response.status_code == 200
    assert response.json()["account_id"] == "user_jwt"


def test_bearer_token_wins_over_header(client, jwt_secret):
    response = client.get(
        "/api/user/credits",
        headers={"Authorization": f"Bearer {_token()}", "X-User-Id": "user_spoofed"},
    )
    assert response.json()["account_id"] == "user_jwt"


def test_expired_token(client, jwt_secret):
    token = _token(exp=int(time.time()) - 10)
    response = client.get("/api/user/credits", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Token expired"


def test_token_signed_with_other_secret(client, jwt_secret):
    token = _token(secret="another-secret-that-is-also-long-enough")
    response = client.get("/api/user/credits", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_token_without_subject(client, jwt_secret):
    token = jwt.encode({"exp": int(time.time()) + 300}, SECRET, algorithm="HS256")
    response = client.get("/api/user/credits", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_header_auth_can_be_disabled(client, monkeypatch):
    from soundstage.core.config import settings

    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)
    response = client.get("/api/user/credits", headers={"X-User-Id": "user_alice"})
    assert response.status_code == 401
