"""Tests for JWT access-token handling and the REST auth dependency."""
from datetime import timedelta

import pytest
from jose import jwt

from roomwire.auth import TokenService
from roomwire.config import JWTSecrets
from roomwire.errors import AuthenticationError

from conftest import SECRET


class TestTokenService:
    def test_round_trip(self, tokens):
        token = tokens.create_access_token("user-1")
        assert tokens.verify(token) == "user-1"

    def test_from_secrets(self):
        service = TokenService.from_secrets(JWTSecrets(secret_key="k", access_token_expire_minutes=5))
        assert service.verify(service.create_access_token("u")) == "u"

    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, tokens, token):
        with pytest.raises(AuthenticationError) as excinfo:
            tokens.verify(token)
        assert excinfo.value.code == "authentication_error"

    def test_expired_token(self, tokens):
        token = tokens.create_access_token("user-1", expires_in=timedelta(seconds=-1))
        with pytest.raises(AuthenticationError):
            tokens.verify(token)

    def test_wrong_secret(self, tokens):
        forged = TokenService("another-secret").create_access_token("user-1")
        with pytest.raises(AuthenticationError):
            tokens.verify(forged)

    def test_token_without_subject(self, tokens):
        token = jwt.encode({"role": "admin"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError):
            tokens.verify(token)


class TestRestAuth:
    def test_missing_bearer_is_401(self, api_client):
        response = api_client.get("/users/me")

        assert response.status_code == 401
        assert response.json() == {"error": "Access token required", "code": "authentication_error"}

    def test_bad_bearer_is_401(self, api_client):
        response = api_client.get("/users/me", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 401
        assert response.json()["code"] == "authentication_error"

    def test_blocked_user_is_401(self, api_client, store, users, auth_headers):
        store.set_blocked(users.carol.id, True)

        response = api_client.get("/users/me", headers=auth_headers(users.carol))

        assert response.status_code == 401
