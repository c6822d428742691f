"""
Tests for the edge gateway.

Tests cover:
- Allow-listed paths forwarded without a token
- 401 for missing, malformed, expired and foreign tokens
- Identity header injection and stripping of client-supplied identity
- Shared secret attachment
- Proxy error mapping (502 / 504) and hop-by-hop header filtering
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from saas_identity.config.settings import GatewaySettings
from saas_identity.gateway.app import create_gateway_app
from saas_identity.gateway.middleware import UNAUTHORIZED_BODY, is_allowed_path

from conftest import TEST_ISSUER, TEST_JWKS_URL

BACKEND_URL = "http://backend.internal:8000"
GATEWAY_SECRET = "gw-shared-secret"


class FakeBackend:
    """Records forwarded requests and answers with a fixed response."""

    def __init__(self):
        self.requests = []
        self.error = None
        self.response_headers = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.error is not None:
            raise self.error
        self.requests.append(request)
        return httpx.Response(
            200,
            json={"path": request.url.path},
            headers=self.response_headers,
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def gateway_client(verifier, backend):
    settings = GatewaySettings(
        issuer=TEST_ISSUER,
        jwks_url=TEST_JWKS_URL,
        backend_url=BACKEND_URL,
        gateway_shared_secret=GATEWAY_SECRET,
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    app = create_gateway_app(settings=settings, verifier=verifier, http_client=http_client)
    return TestClient(app)


class TestAllowList:
    """Tests for unauthenticated pass-through paths."""

    @pytest.mark.parametrize("path,expected", [
        ("/api/health", True),
        ("/api/webhooks", True),
        ("/api/webhooks/clerk", True),
        ("/api/payments/checkout", True),
        ("/api/webhooksfoo", False),
        ("/api/health/deep", False),
        ("/api/users", False),
        ("/", False),
    ])
    def test_is_allowed_path(self, path, expected):
        assert is_allowed_path(path) is expected

    def test_health_forwarded_without_token(self, gateway_client, backend):
        response = gateway_client.get("/api/health")

        assert response.status_code == 200
        assert backend.last.url.path == "/api/health"

    def test_spoofed_identity_stripped_on_public_path(self, gateway_client, backend):
        """Client identity headers never reach the backend, even unauthenticated."""
        response = gateway_client.post(
            "/api/webhooks/clerk",
            content=b"{}",
            headers={"X-User-Id": "user_spoofed", "X-Org-Id": "org_spoofed"},
        )

        assert response.status_code == 200
        assert "x-user-id" not in backend.last.headers
        assert "x-org-id" not in backend.last.headers


class TestAuthentication:
    """Tests for the bearer token gate."""

    def test_missing_token(self, gateway_client, backend):
        response = gateway_client.get("/api/me")

        assert response.status_code == 401
        assert response.json() == UNAUTHORIZED_BODY
        assert backend.requests == []

    def test_non_bearer_scheme(self, gateway_client, backend):
        response = gateway_client.get("/api/me", headers={"Authorization": "Basic abc"})

        assert response.status_code == 401
        assert backend.requests == []

    def test_malformed_token(self, gateway_client):
        response = gateway_client.get("/api/me", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json() == UNAUTHORIZED_BODY

    @pytest.mark.parametrize("claims", [
        {"sub": "user_用户"},
        {"sub": "user_1", "org_id": "org_☃"},
        {"sub": "user_1\r\nx-admin: 1"},
    ])
    def test_identity_unusable_as_header(self, gateway_client, backend, make_token, claims):
        """Identities that cannot be sent as header values are rejected."""
        token = make_token(**claims)
        response = gateway_client.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json() == UNAUTHORIZED_BODY
        assert backend.requests == []

    def test_expired_token(self, gateway_client, make_token):
        token = make_token(exp_delta=-30)
        response = gateway_client.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_foreign_issuer(self, gateway_client, make_token):
        token = make_token(issuer="https://other.clerk.example.com")
        response = gateway_client.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_valid_token_injects_identity(self, gateway_client, backend, make_token):
        token = make_token(sub="user_abc", org_id="org_xyz")
        response = gateway_client.get(
            "/api/organizations",
            params={"page": "2"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 200
        forwarded = backend.last
        assert str(forwarded.url) == f"{BACKEND_URL}/api/organizations?page=2"
        assert forwarded.headers["x-user-id"] == "user_abc"
        assert forwarded.headers["x-org-id"] == "org_xyz"

    def test_client_identity_replaced_by_verified_identity(self, gateway_client, backend, make_token):
        """Spoofed headers are overwritten with the token's identity."""
        token = make_token(sub="user_real")
        gateway_client.get(
            "/api/me",
            headers={
                "Authorization": f"Bearer {token}",
                "X-User-Id": "user_admin",
                "X-Org-Id": "org_victim",
            },
        )

        assert backend.last.headers.get_list("x-user-id") == ["user_real"]
        assert backend.last.headers.get_list("x-org-id") == [""]

    def test_jwks_fetched_once_for_many_requests(self, gateway_client, make_token, jwks_endpoint):
        token = make_token()
        for _ in range(3):
            gateway_client.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert jwks_endpoint.calls == 1


class TestForwarding:
    """Tests for the reverse proxy."""

    def test_shared_secret_attached_and_client_copy_dropped(self, gateway_client, backend, make_token):
        token = make_token()
        gateway_client.get(
            "/api/me",
            headers={"Authorization": f"Bearer {token}", "X-Gateway-Secret": "guess"},
        )

        assert backend.last.headers.get_list("x-gateway-secret") == [GATEWAY_SECRET]

    def test_body_and_method_forwarded(self, gateway_client, backend, make_token):
        token = make_token()
        gateway_client.put(
            "/api/users/role",
            json={"role": "ADMIN"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert backend.last.method == "PUT"
        assert json.loads(backend.last.content) == {"role": "ADMIN"}

    def test_backend_timeout_maps_to_504(self, gateway_client, backend, make_token):
        backend.error = httpx.ReadTimeout("slow")
        token = make_token()

        response = gateway_client.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 504
        assert response.json()["error"] == "Gateway Timeout"

    def test_backend_unreachable_maps_to_502(self, gateway_client, backend):
        backend.error = httpx.ConnectError("refused")

        response = gateway_client.get("/api/health")

        assert response.status_code == 502
        assert response.json()["error"] == "Bad Gateway"

    def test_hop_by_hop_response_headers_dropped(self, gateway_client, backend):
        backend.response_headers = {"X-Request-Id": "req-1", "Keep-Alive": "timeout=5"}

        response = gateway_client.get("/api/health")

        assert response.headers["x-request-id"] == "req-1"
        assert "keep-alive" not in response.headers
