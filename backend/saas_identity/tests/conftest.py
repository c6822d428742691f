"""
Root test configuration and fixtures.

Provides:
- SQLite in-memory database with savepoint support, rolled back per test
- RSA signing keys, a JWKS document and a Clerk-style token factory
- A JWKS endpoint stubbed with httpx.MockTransport
- Webhook signing helpers
- A backend TestClient wired to the per-test session
"""

import base64
import hashlib
import hmac
import json
import os
import time
from typing import Generator

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_ISSUER = "https://clerk.test.example.com"
TEST_JWKS_URL = f"{TEST_ISSUER}/.well-known/jwks.json"
TEST_KID = "ins_test_key_1"
TEST_WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"test_secret_key_12345").decode()


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """
    SQLite in-memory engine shared by the whole test session.

    pysqlite's own transaction handling breaks SAVEPOINT; it is disabled and
    BEGIN is emitted explicitly instead.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    from saas_identity.models.base import Base
    from saas_identity import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Database session with transaction rollback for test isolation.

    Default roles are seeded in the outer transaction so that rollbacks
    inside a test (failed webhooks) do not remove them. Commits made by the
    code under test only release savepoints.
    """
    from saas_identity.models.role import seed_default_roles

    connection = db_engine.connect()
    transaction = connection.begin()

    seed_session = Session(bind=connection, join_transaction_mode="create_savepoint")
    seed_default_roles(seed_session)
    seed_session.commit()
    seed_session.close()

    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Identity factories
# =============================================================================


@pytest.fixture
def make_user(db_session):
    """Factory for synced users."""
    from saas_identity.models.user import User

    def _make(clerk_user_id: str, email: str = None, **kwargs) -> User:
        user = User(
            clerk_user_id=clerk_user_id,
            email=email or f"{clerk_user_id}@example.com",
            **kwargs,
        )
        db_session.add(user)
        db_session.flush()
        return user
    return _make


@pytest.fixture
def make_organization(db_session):
    """Factory for synced organizations."""
    from saas_identity.models.organization import Organization

    def _make(clerk_org_id: str, name: str = None, **kwargs) -> Organization:
        org = Organization(clerk_org_id=clerk_org_id, name=name or clerk_org_id, **kwargs)
        db_session.add(org)
        db_session.flush()
        return org
    return _make


@pytest.fixture
def make_membership(db_session):
    """Factory for memberships; role is a canonical role name."""
    from saas_identity.models.membership import Membership
    from saas_identity.models.role import Role

    def _make(user, org, role: str = "USER", clerk_membership_id: str = None) -> Membership:
        role_row = db_session.query(Role).filter(Role.name == role).one()
        membership = Membership(
            user_id=user.id,
            organization_id=org.id,
            role_id=role_row.id,
            clerk_membership_id=clerk_membership_id or f"mem_{user.clerk_user_id}_{org.clerk_org_id}",
        )
        db_session.add(membership)
        db_session.flush()
        return membership
    return _make


# =============================================================================
# JWT / JWKS
# =============================================================================


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key():
    """A key that is NOT published in the JWKS."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def jwk_for(private_key, kid: str) -> dict:
    jwk = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


@pytest.fixture(scope="session")
def jwks_document(rsa_private_key):
    return {"keys": [jwk_for(rsa_private_key, TEST_KID)]}


@pytest.fixture
def make_token(rsa_private_key):
    """
    Factory for Clerk-style session tokens.

    Usage:
        token = make_token(sub="user_1", org_id="org_1")
        token = make_token(exp_delta=-60)             # expired
        token = make_token(key=other_key, kid="kid")  # unknown signer
    """
    def _make(
        sub="user_test_123",
        org_id=None,
        issuer=TEST_ISSUER,
        exp_delta: int = 300,
        kid=TEST_KID,
        key=None,
        extra_claims: dict = None,
        omit=(),
    ) -> str:
        now = int(time.time())
        claims = {
            "sub": sub,
            "iss": issuer,
            "iat": now,
            "nbf": now - 5,
            "exp": now + exp_delta,
        }
        if org_id is not None:
            claims["org_id"] = org_id
        claims.update(extra_claims or {})
        for name in omit:
            claims.pop(name, None)
        headers = {"kid": kid} if kid is not None else {}
        return jwt.encode(claims, key or rsa_private_key, algorithm="RS256", headers=headers)
    return _make


class JWKSEndpoint:
    """Stubbed JWKS endpoint that counts requests."""

    def __init__(self, document: dict):
        self.document = document
        self.status_code = 200
        self.calls = 0
        self.error = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.document)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def jwks_endpoint(jwks_document):
    return JWKSEndpoint(json.loads(json.dumps(jwks_document)))


@pytest.fixture
def key_cache(jwks_endpoint):
    from saas_identity.auth.jwks_cache import JWKSKeyCache

    return JWKSKeyCache(TEST_JWKS_URL, http_client=jwks_endpoint.client())


@pytest.fixture
def verifier(key_cache):
    from saas_identity.auth.clerk_verifier import ClerkJWTVerifier

    return ClerkJWTVerifier(TEST_ISSUER, key_cache)


# =============================================================================
# Webhooks
# =============================================================================


@pytest.fixture
def webhook_secret():
    return TEST_WEBHOOK_SECRET


def sign_webhook(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Svix-style "v1,<base64 hmac>" signature header."""
    if secret.startswith("whsec_"):
        key = base64.b64decode(secret[len("whsec_"):])
    else:
        key = secret.encode("utf-8")
    signed = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


@pytest.fixture
def signed_headers(webhook_secret):
    """Factory returning svix-* headers for a raw body."""
    def _make(body: bytes, msg_id: str = "msg_test_1", timestamp: str = None) -> dict:
        timestamp = timestamp or str(int(time.time()))
        return {
            "svix-id": msg_id,
            "svix-timestamp": timestamp,
            "svix-signature": sign_webhook(webhook_secret, msg_id, timestamp, body),
            "content-type": "application/json",
        }
    return _make


# =============================================================================
# Backend application
# =============================================================================


@pytest.fixture
def backend_settings(webhook_secret):
    from saas_identity.config.settings import BackendSettings

    return BackendSettings(database_url="sqlite://", webhook_secret=webhook_secret)


@pytest.fixture
def backend_app(backend_settings, db_session):
    """Backend app using the per-test session (lifespan not started)."""
    from saas_identity.database.session import get_db_session
    from saas_identity.main import create_app

    app = create_app(backend_settings)

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db_session] = _override_db
    return app


@pytest.fixture
def backend_client(backend_app):
    from fastapi.testclient import TestClient

    return TestClient(backend_app)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
