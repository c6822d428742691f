"""
Tests for organization authorization checks.

Tests cover:
- Membership access checks
- Role checks (case-insensitive, org: prefix)
- ADMIN-anywhere checks and the prepared statement retry
- Role fixes (update / create / not found)
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from saas_identity.models.membership import Membership
from saas_identity.services.authorization_service import (
    AuthorizationService,
    RoleUpdateOutcome,
)


@pytest.fixture
def authz(db_session):
    return AuthorizationService(db_session)


@pytest.fixture
def team(db_session, make_user, make_organization, make_membership):
    """alice is ADMIN of acme, bob is USER of acme, carol has no memberships."""
    alice = make_user("user_alice")
    bob = make_user("user_bob")
    carol = make_user("user_carol")
    acme = make_organization("org_acme", "Acme")
    globex = make_organization("org_globex", "Globex")
    make_membership(alice, acme, "ADMIN")
    make_membership(bob, acme, "USER")
    # Survives the rollback done by the admin check retry
    db_session.commit()
    return {"alice": alice, "bob": bob, "carol": carol, "acme": acme, "globex": globex}


def _prepared_statement_error() -> DBAPIError:
    return OperationalError(
        "SELECT count(*)", {}, Exception('prepared statement "s1" already exists')
    )


class TestAccess:
    """Tests for has_access / get_membership."""

    def test_member_has_access(self, authz, team):
        assert authz.has_access("user_alice", team["acme"].id) is True
        assert authz.has_access("user_bob", team["acme"].id) is True

    def test_non_member_denied(self, authz, team):
        assert authz.has_access("user_carol", team["acme"].id) is False
        assert authz.has_access("user_alice", team["globex"].id) is False

    def test_unknown_user_denied(self, authz, team):
        assert authz.has_access("user_nobody", team["acme"].id) is False

    def test_clerk_org_id_is_not_an_organization_id(self, authz, team):
        """Checks take internal organization ids only."""
        assert authz.has_access("user_alice", "org_acme") is False


class TestRoles:
    """Tests for has_role / is_admin / is_admin_anywhere."""

    @pytest.mark.parametrize("role_name", ["ADMIN", "admin", "org:admin", "Org:Admin"])
    def test_role_names_are_normalized(self, authz, team, role_name):
        assert authz.has_role("user_alice", team["acme"].id, role_name) is True

    def test_user_is_not_admin(self, authz, team):
        assert authz.is_admin("user_bob", team["acme"].id) is False
        assert authz.has_role("user_bob", team["acme"].id, "USER") is True

    def test_empty_role_name(self, authz, team):
        assert authz.has_role("user_alice", team["acme"].id, "") is False

    def test_admin_anywhere(self, authz, team):
        assert authz.is_admin_anywhere("user_alice") is True
        assert authz.is_admin_anywhere("user_bob") is False
        assert authz.is_admin_anywhere("user_nobody") is False

    def test_prepared_statement_error_retried_once(self, authz, team):
        original = AuthorizationService._count_admin_memberships
        calls = []

        def flaky(self, user_id):
            calls.append(user_id)
            if len(calls) == 1:
                raise _prepared_statement_error()
            return original(self, user_id)

        with patch.object(AuthorizationService, "_count_admin_memberships", flaky):
            assert authz.is_admin_anywhere("user_alice") is True

        assert len(calls) == 2

    def test_second_prepared_statement_error_denies(self, authz, team):
        with patch.object(
            AuthorizationService,
            "_count_admin_memberships",
            side_effect=_prepared_statement_error(),
        ):
            assert authz.is_admin_anywhere("user_alice") is False

    def test_other_database_errors_propagate(self, authz, team):
        error = OperationalError("SELECT 1", {}, Exception("connection reset"))
        with patch.object(AuthorizationService, "_count_admin_memberships", side_effect=error):
            with pytest.raises(DBAPIError):
                authz.is_admin_anywhere("user_alice")


class TestUpdateRole:
    """Tests for update_role."""

    def test_updates_existing_membership(self, authz, team, db_session):
        outcome = authz.update_role("user_bob", team["acme"].id, "admin")

        assert outcome == RoleUpdateOutcome.UPDATED
        assert authz.is_admin("user_bob", team["acme"].id) is True

    def test_creates_missing_membership(self, authz, team, db_session):
        outcome = authz.update_role("user_carol", team["globex"].id, "USER")

        assert outcome == RoleUpdateOutcome.CREATED
        membership = db_session.query(Membership).filter(
            Membership.user_id == team["carol"].id
        ).one()
        assert membership.clerk_membership_id.startswith(
            f"mem_fix_{team['carol'].id}_{team['globex'].id}_"
        )
        assert membership.role_name == "USER"

    @pytest.mark.parametrize("clerk_user_id,org_key,role", [
        ("user_nobody", "acme", "ADMIN"),
        ("user_bob", None, "ADMIN"),
        ("user_bob", "acme", "SUPERUSER"),
    ])
    def test_not_found(self, authz, team, clerk_user_id, org_key, role):
        org_id = team[org_key].id if org_key else "no-such-org"

        assert authz.update_role(clerk_user_id, org_id, role) == RoleUpdateOutcome.NOT_FOUND
