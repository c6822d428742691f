"""
Tests for backend trust of gateway identity headers.

Tests cover:
- Principal built from X-User-Id / X-Org-Id
- Anonymous principal when headers are missing
- Shared secret enforcement
- require_principal on protected and public paths
"""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from saas_identity.auth.gateway_headers import (
    DEFAULT_ROLES,
    GatewayHeaderAuthMiddleware,
    GatewayPrincipal,
    get_principal,
    is_public_path,
    require_principal,
)


def _make_app(shared_secret=None) -> FastAPI:
    app = FastAPI()
    app.add_middleware(GatewayHeaderAuthMiddleware, shared_secret=shared_secret)

    @app.get("/api/whoami")
    async def whoami(principal: GatewayPrincipal = Depends(require_principal)):
        return {
            "user_id": principal.user_id,
            "org_id": principal.org_id,
            "roles": list(principal.roles),
        }

    @app.get("/api/health")
    async def health(principal: GatewayPrincipal = Depends(require_principal)):
        return {"authenticated": principal.is_authenticated}

    @app.get("/api/optional")
    async def optional(principal: GatewayPrincipal = Depends(get_principal)):
        return {"authenticated": principal.is_authenticated}

    return app


class TestPrincipalFromHeaders:
    """Tests for the header-based principal."""

    def test_user_and_org(self):
        client = TestClient(_make_app())
        response = client.get("/api/whoami", headers={"X-User-Id": "user_1", "X-Org-Id": "org_1"})

        assert response.status_code == 200
        assert response.json() == {
            "user_id": "user_1",
            "org_id": "org_1",
            "roles": list(DEFAULT_ROLES),
        }

    def test_empty_org_is_none(self):
        client = TestClient(_make_app())
        response = client.get("/api/whoami", headers={"X-User-Id": "user_1", "X-Org-Id": ""})

        assert response.json()["org_id"] is None

    def test_missing_user_is_rejected(self):
        client = TestClient(_make_app())
        response = client.get("/api/whoami", headers={"X-Org-Id": "org_1"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    def test_blank_user_is_rejected(self):
        client = TestClient(_make_app())
        response = client.get("/api/whoami", headers={"X-User-Id": "   "})

        assert response.status_code == 401

    def test_optional_dependency_allows_anonymous(self):
        client = TestClient(_make_app())
        response = client.get("/api/optional")

        assert response.status_code == 200
        assert response.json() == {"authenticated": False}


@pytest.mark.security
class TestSharedSecret:
    """Tests for the optional gateway shared secret."""

    def test_headers_without_secret_are_ignored(self):
        client = TestClient(_make_app(shared_secret="s3cret"))
        response = client.get("/api/whoami", headers={"X-User-Id": "user_1"})

        assert response.status_code == 401

    def test_wrong_secret_is_ignored(self):
        client = TestClient(_make_app(shared_secret="s3cret"))
        response = client.get(
            "/api/whoami",
            headers={"X-User-Id": "user_1", "X-Gateway-Secret": "wrong"},
        )

        assert response.status_code == 401

    def test_matching_secret_is_trusted(self):
        client = TestClient(_make_app(shared_secret="s3cret"))
        response = client.get(
            "/api/whoami",
            headers={"X-User-Id": "user_1", "X-Gateway-Secret": "s3cret"},
        )

        assert response.status_code == 200
        assert response.json()["user_id"] == "user_1"


class TestPublicPaths:
    """Tests for paths that do not require a principal."""

    @pytest.mark.parametrize("path,expected", [
        ("/api/health", True),
        ("/api/webhooks/clerk", True),
        ("/api/webhooks/clerk/health", True),
        ("/api/me", False),
        ("/api/organizations", False),
    ])
    def test_is_public_path(self, path, expected):
        assert is_public_path(path) is expected

    def test_public_route_allows_anonymous(self):
        client = TestClient(_make_app())
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"authenticated": False}
