"""
Tests for the backend API routes.

Tests cover:
- Health check
- Gateway identity required on protected routes
- /api/me and the admin-only user listing
- Role fixes via PUT /api/users/role
- Organization queries scoped to the caller's memberships
"""

from datetime import datetime, timedelta, timezone

import pytest


def as_user(clerk_user_id: str) -> dict:
    return {"X-User-Id": clerk_user_id}


@pytest.fixture
def team(make_user, make_organization, make_membership):
    """alice is ADMIN of acme, bob is USER of acme and globex, carol has no memberships."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    alice = make_user("user_alice", first_name="Alice", created_at=base)
    bob = make_user("user_bob", first_name="Bob", created_at=base + timedelta(days=1))
    carol = make_user("user_carol", created_at=base + timedelta(days=2))
    acme = make_organization("org_acme", "Acme", slug="acme")
    globex = make_organization("org_globex", "Globex")
    make_membership(alice, acme, "ADMIN")
    make_membership(bob, acme, "USER")
    make_membership(bob, globex, "USER")
    return {"alice": alice, "bob": bob, "carol": carol, "acme": acme, "globex": globex}


class TestHealth:
    def test_health_is_public(self, backend_client):
        response = backend_client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "UP", "service": "backend-service"}


class TestAuthentication:
    """Protected routes need gateway identity."""

    @pytest.mark.parametrize("path", [
        "/api/me",
        "/api/users",
        "/api/organizations",
        "/api/organizations/memberships",
    ])
    def test_requires_identity(self, backend_client, path):
        response = backend_client.get(path)

        assert response.status_code == 401


class TestCurrentUser:
    """Tests for GET /api/me."""

    def test_returns_profile_and_memberships(self, backend_client, team):
        response = backend_client.get("/api/me", headers=as_user("user_bob"))

        assert response.status_code == 200
        body = response.json()
        assert body["clerk_user_id"] == "user_bob"
        assert body["first_name"] == "Bob"
        assert body["total_organizations"] == 2
        assert body["is_admin"] is False
        assert {m["clerk_org_id"] for m in body["memberships"]} == {"org_acme", "org_globex"}

    def test_admin_flag(self, backend_client, team):
        body = backend_client.get("/api/me", headers=as_user("user_alice")).json()

        assert body["is_admin"] is True
        assert body["memberships"][0]["role_name"] == "ADMIN"

    def test_unsynced_user(self, backend_client, team):
        response = backend_client.get("/api/me", headers=as_user("user_unknown"))

        assert response.status_code == 404


class TestListUsers:
    """Tests for GET /api/users."""

    def test_admin_lists_newest_first(self, backend_client, team):
        response = backend_client.get("/api/users", headers=as_user("user_alice"))

        assert response.status_code == 200
        body = response.json()
        assert [u["clerk_user_id"] for u in body["content"]] == [
            "user_carol", "user_bob", "user_alice",
        ]
        assert body["total_elements"] == 3
        assert body["first"] is True
        assert body["last"] is True
        alice = body["content"][2]
        assert alice["is_admin"] is True
        assert alice["total_organizations"] == 1

    def test_pagination(self, backend_client, team):
        body = backend_client.get(
            "/api/users", params={"page": 1, "size": 2}, headers=as_user("user_alice")
        ).json()

        assert [u["clerk_user_id"] for u in body["content"]] == ["user_alice"]
        assert body["total_pages"] == 2
        assert body["first"] is False
        assert body["last"] is True

    def test_non_admin_forbidden(self, backend_client, team):
        response = backend_client.get("/api/users", headers=as_user("user_bob"))

        assert response.status_code == 403

    def test_invalid_page_size(self, backend_client, team):
        response = backend_client.get(
            "/api/users", params={"size": 0}, headers=as_user("user_alice")
        )

        assert response.status_code == 422


class TestUpdateRole:
    """Tests for PUT /api/users/role."""

    def test_admin_promotes_member(self, backend_client, team):
        response = backend_client.put(
            "/api/users/role",
            json={"clerk_user_id": "user_bob", "organization_id": team["acme"].id, "role": "admin"},
            headers=as_user("user_alice"),
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "updated"
        me = backend_client.get("/api/me", headers=as_user("user_bob")).json()
        assert me["is_admin"] is True

    def test_admin_adds_new_member(self, backend_client, team):
        response = backend_client.put(
            "/api/users/role",
            json={"clerk_user_id": "user_carol", "organization_id": team["acme"].id, "role": "USER"},
            headers=as_user("user_alice"),
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "created"

    def test_non_admin_forbidden(self, backend_client, team):
        response = backend_client.put(
            "/api/users/role",
            json={"clerk_user_id": "user_bob", "organization_id": team["acme"].id, "role": "ADMIN"},
            headers=as_user("user_bob"),
        )

        assert response.status_code == 403

    def test_admin_of_other_org_forbidden(self, backend_client, team):
        response = backend_client.put(
            "/api/users/role",
            json={"clerk_user_id": "user_bob", "organization_id": team["globex"].id, "role": "ADMIN"},
            headers=as_user("user_alice"),
        )

        assert response.status_code == 403

    def test_unknown_target_user(self, backend_client, team):
        response = backend_client.put(
            "/api/users/role",
            json={"clerk_user_id": "user_nobody", "organization_id": team["acme"].id, "role": "USER"},
            headers=as_user("user_alice"),
        )

        assert response.status_code == 404

    def test_missing_fields(self, backend_client, team):
        response = backend_client.put(
            "/api/users/role",
            json={"clerk_user_id": "user_bob"},
            headers=as_user("user_alice"),
        )

        assert response.status_code == 422


class TestOrganizations:
    """Tests for /api/organizations."""

    def test_list_my_organizations(self, backend_client, team):
        response = backend_client.get("/api/organizations", headers=as_user("user_bob"))

        assert response.status_code == 200
        orgs = {o["clerk_org_id"]: o for o in response.json()}
        assert set(orgs) == {"org_acme", "org_globex"}
        assert orgs["org_acme"]["member_count"] == 2
        assert orgs["org_acme"]["user_role"] == "USER"

    def test_list_memberships(self, backend_client, team):
        response = backend_client.get("/api/organizations/memberships", headers=as_user("user_alice"))

        assert response.status_code == 200
        [membership] = response.json()
        assert membership["organization"]["name"] == "Acme"
        assert membership["role"]["name"] == "ADMIN"
        assert membership["user"]["id"] == team["alice"].id

    def test_get_organization(self, backend_client, team):
        response = backend_client.get(
            f"/api/organizations/{team['acme'].id}", headers=as_user("user_alice")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["slug"] == "acme"
        assert body["user_role"] == "ADMIN"

    def test_get_organization_non_member(self, backend_client, team):
        response = backend_client.get(
            f"/api/organizations/{team['globex'].id}", headers=as_user("user_alice")
        )

        assert response.status_code == 403

    def test_get_by_clerk_id(self, backend_client, team):
        response = backend_client.get(
            "/api/organizations/clerk/org_globex", headers=as_user("user_bob")
        )

        assert response.status_code == 200
        assert response.json()["id"] == team["globex"].id

    def test_get_by_clerk_id_missing(self, backend_client, team):
        response = backend_client.get(
            "/api/organizations/clerk/org_missing", headers=as_user("user_bob")
        )

        assert response.status_code == 404

    def test_get_by_clerk_id_non_member(self, backend_client, team):
        response = backend_client.get(
            "/api/organizations/clerk/org_globex", headers=as_user("user_alice")
        )

        assert response.status_code == 403

    def test_members(self, backend_client, team):
        response = backend_client.get(
            f"/api/organizations/{team['acme'].id}/members",
            params={"size": 1},
            headers=as_user("user_bob"),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_members"] == 2
        assert body["total_pages"] == 2
        assert len(body["members"]) == 1

    def test_members_non_member(self, backend_client, team):
        response = backend_client.get(
            f"/api/organizations/{team['acme'].id}/members", headers=as_user("user_carol")
        )

        assert response.status_code == 403

    def test_user_without_memberships(self, backend_client, team):
        response = backend_client.get("/api/organizations", headers=as_user("user_carol"))

        assert response.status_code == 200
        assert response.json() == []
