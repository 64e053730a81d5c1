"""
Auth endpoints: signup returns a tenant-scoped token with the trial subscription.
"""
import pytest
from unittest.mock import AsyncMock, patch

from auth import decode_access_token


@pytest.fixture(autouse=True)
def fast_hash():
    with patch("services.tenant_service.hash_password", return_value="hashed"):
        yield


class TestSignup:

    def test_signup_returns_token_and_trial(self, client, mock_db):
        response = client.post("/api/auth/signup", json={
            "clinic_name": "Clinica Vida",
            "name": "Joao Lima",
            "email": "joao@vida.com.br",
            "password": "Forte1234",
        })

        assert response.status_code == 201
        body = response.json()
        claims = decode_access_token(body["access_token"])
        assert claims["tenant_id"] == body["user"]["tenant_id"]
        assert claims["role"] == "ROLE_OWNER"
        assert body["subscription"]["status"] == "trialing"
        assert body["subscription"]["plan"] == "free"

    def test_weak_password_rejected(self, client, mock_db):
        response = client.post("/api/auth/signup", json={
            "clinic_name": "Clinica Vida",
            "name": "Joao Lima",
            "email": "joao@vida.com.br",
            "password": "alllowercase1",
        })

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        mock_db.tenants.insert_one.assert_not_awaited()

    def test_invalid_email_rejected(self, client, mock_db):
        response = client.post("/api/auth/signup", json={
            "clinic_name": "Clinica Vida",
            "name": "Joao Lima",
            "email": "not-an-email",
            "password": "Forte1234",
        })
        assert response.status_code == 400


class TestLogin:

    def test_login_success(self, client, mock_db):
        mock_db.users.find_one = AsyncMock(return_value={
            "user_id": "user-1",
            "tenant_id": "tenant-1",
            "email": "joao@vida.com.br",
            "name": "Joao Lima",
            "role": "ROLE_OWNER",
            "status": "ACTIVE",
            "password_hash": "hashed",
        })
        with patch("services.tenant_service.verify_password", return_value=True):
            response = client.post("/api/auth/login", json={"email": "joao@vida.com.br", "password": "Forte1234"})

        assert response.status_code == 200
        body = response.json()
        assert "password_hash" not in body["user"]
        assert decode_access_token(body["access_token"])["tenant_id"] == "tenant-1"
        assert body["subscription"] is None

    def test_login_wrong_password(self, client, mock_db):
        mock_db.users.find_one = AsyncMock(return_value={
            "user_id": "user-1", "tenant_id": "tenant-1", "email": "joao@vida.com.br",
            "role": "ROLE_OWNER", "status": "ACTIVE", "password_hash": "hashed",
        })
        with patch("services.tenant_service.verify_password", return_value=False):
            response = client.post("/api/auth/login", json={"email": "joao@vida.com.br", "password": "Wrong1234"})

        assert response.status_code == 401
