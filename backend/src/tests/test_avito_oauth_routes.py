"""
Tests for the marketplace OAuth routes and the application shell.
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from src.credentials.store import TenantCredential
from src.integrations.avito.oauth import encode_state
from src.main import create_app
from src.models.marketplace_account import CredentialKind
from src.runtime import MarketplaceRuntime
from src.tests.fakes import TEST_FRONTEND_URL


@pytest.fixture
def runtime(settings, engine, marketplace):
    return MarketplaceRuntime(settings, engine=engine, transport=marketplace.transport())


@pytest.fixture
def client(runtime):
    app = create_app(runtime, start_scheduler=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def account(create_account):
    return asyncio.run(create_account())


def _query(location: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


class TestAuthorize:

    def test_redirects_to_consent_page(self, client, account, settings):
        response = client.get(f"/api/auth/avito/authorize/{account.id}", follow_redirects=False)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(settings.oauth_url)
        query = _query(location)
        assert query["client_id"] == "oauth-app-id"
        assert query["response_type"] == "code"
        assert query["redirect_uri"] == settings.oauth_redirect_uri
        assert query["state"] == encode_state(account.id)

    def test_unknown_account_is_404(self, client):
        response = client.get("/api/auth/avito/authorize/999", follow_redirects=False)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        assert "X-Correlation-ID" in response.headers

    def test_oauth_not_configured(self, settings, engine, marketplace, account):
        settings.oauth_client_id = None
        runtime = MarketplaceRuntime(settings, engine=engine, transport=marketplace.transport())

        with TestClient(create_app(runtime, start_scheduler=False)) as client:
            response = client.get(f"/api/auth/avito/authorize/{account.id}", follow_redirects=False)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"


class TestCallback:

    def test_success_stores_tokens_and_redirects(self, client, account, runtime):
        response = client.get(
            "/api/auth/avito/callback",
            params={"code": "good-code", "state": encode_state(account.id)},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == (
            f"{TEST_FRONTEND_URL}/avito/edit/{account.id}?oauth=success"
        )
        record = asyncio.run(runtime.repository.get(account.id))
        assert record.credential_kind == CredentialKind.OAUTH_TOKEN
        credential = asyncio.run(TenantCredential.from_record(record, runtime.cipher))
        assert credential.client_secret.startswith("refresh-")

    def test_provider_error_redirects_with_message(self, client):
        response = client.get(
            "/api/auth/avito/callback",
            params={"error": "access_denied"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(f"{TEST_FRONTEND_URL}/avito?")
        query = _query(location)
        assert query["oauth"] == "error"
        assert "access_denied" in query["message"]

    def test_missing_code(self, client):
        response = client.get("/api/auth/avito/callback", follow_redirects=False)

        assert _query(response.headers["location"])["message"] == "Authorization code is missing"

    def test_invalid_state(self, client):
        response = client.get(
            "/api/auth/avito/callback",
            params={"code": "good-code", "state": "garbage"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert _query(response.headers["location"])["oauth"] == "error"

    def test_rejected_code(self, client, account):
        response = client.get(
            "/api/auth/avito/callback",
            params={"code": "bad-code", "state": encode_state(account.id)},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert _query(response.headers["location"])["oauth"] == "error"


class TestRefresh:

    def test_refresh_after_connect(self, client, account, marketplace):
        client.get(
            "/api/auth/avito/callback",
            params={"code": "good-code", "state": encode_state(account.id)},
            follow_redirects=False,
        )

        response = client.post(f"/api/auth/avito/refresh/{account.id}")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Token refreshed successfully",
            "expires_in": marketplace.expires_in,
        }
        assert marketplace.token_requests[-1]["grant_type"] == "refresh_token"

    def test_refresh_static_account_rejected(self, client, account):
        response = client.post(f"/api/auth/avito/refresh/{account.id}")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestHealth:

    def test_health_reports_cache_stats(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["client_cache"]["size"] == 0
        assert body["client_cache"]["capacity"] == 100
