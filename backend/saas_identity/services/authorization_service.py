"""
Authorization service for organization membership and role checks.

Answers the questions the API routes ask about the gateway principal:
- Does the user belong to this organization?
- Does the user hold a given role there (ADMIN, USER, ...)?
- Is the user an ADMIN anywhere (system-wide admin operations)?

Every call re-queries the database; nothing is cached.

Organization ids here are internal Organization.id values, not Clerk ids.
"""

import logging
import time
from enum import Enum
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from saas_identity.models.membership import Membership
from saas_identity.models.organization import Organization
from saas_identity.models.role import ADMIN_ROLE, Role, normalize_role_name
from saas_identity.models.user import User

logger = logging.getLogger(__name__)


class AccessDeniedError(Exception):
    """Caller lacks the membership or role an operation requires."""
    pass


class EntityNotFoundError(Exception):
    """A requested user or organization does not exist."""
    pass


class RoleUpdateOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    NOT_FOUND = "not_found"


def _is_prepared_statement_error(error: DBAPIError) -> bool:
    return "prepared statement" in str(error).lower()


class AuthorizationService:
    """
    Membership and role checks for a gateway-authenticated user.

    Usage:
        authz = AuthorizationService(session)
        if not authz.is_admin(principal.user_id, org_id):
            raise HTTPException(status_code=403)
    """

    def __init__(self, session: Session):
        self.session = session

    def get_user_by_clerk_id(self, clerk_user_id: str) -> Optional[User]:
        user = self.session.query(User).filter(
            User.clerk_user_id == clerk_user_id
        ).first()
        if user is None:
            logger.warning("User not found", extra={"clerk_user_id": clerk_user_id})
        return user

    def get_membership(self, clerk_user_id: str, organization_id: str) -> Optional[Membership]:
        """Get the user's membership in an organization, if any."""
        return self.session.query(Membership).join(
            User, Membership.user_id == User.id
        ).filter(
            User.clerk_user_id == clerk_user_id,
            Membership.organization_id == organization_id,
        ).first()

    def has_access(self, clerk_user_id: str, organization_id: str) -> bool:
        """Check if user has access to an organization (any role)."""
        return self.get_membership(clerk_user_id, organization_id) is not None

    def has_role(self, clerk_user_id: str, organization_id: str, role_name: str) -> bool:
        """Check if user holds role_name in an organization (case-insensitive)."""
        name = normalize_role_name(role_name)
        if not name:
            return False
        membership = self.session.query(Membership).join(
            User, Membership.user_id == User.id
        ).join(
            Role, Membership.role_id == Role.id
        ).filter(
            User.clerk_user_id == clerk_user_id,
            Membership.organization_id == organization_id,
            Role.name == name,
        ).first()
        return membership is not None

    def is_admin(self, clerk_user_id: str, organization_id: str) -> bool:
        return self.has_role(clerk_user_id, organization_id, ADMIN_ROLE)

    def _count_admin_memberships(self, user_id: str) -> int:
        return self.session.query(func.count(Membership.id)).join(
            Role, Membership.role_id == Role.id
        ).filter(
            Membership.user_id == user_id,
            Role.name == ADMIN_ROLE,
        ).scalar() or 0

    def is_admin_anywhere(self, clerk_user_id: str) -> bool:
        """
        Check if user is ADMIN in ANY organization.

        Used for system-wide admin operations (e.g. listing all users).
        Pooled PostgreSQL connections can fail with a stale prepared
        statement after failover; that case is retried once on a fresh
        transaction, and a second failure denies access.
        """
        user = self.get_user_by_clerk_id(clerk_user_id)
        if user is None:
            return False
        user_id = user.id

        try:
            admin_count = self._count_admin_memberships(user_id)
        except DBAPIError as e:
            if not _is_prepared_statement_error(e):
                raise
            logger.warning(
                "Prepared statement conflict; retrying admin check",
                extra={"clerk_user_id": clerk_user_id},
            )
            self.session.rollback()
            try:
                admin_count = self._count_admin_memberships(user_id)
            except DBAPIError:
                self.session.rollback()
                logger.error(
                    "Admin check retry failed",
                    extra={"clerk_user_id": clerk_user_id},
                    exc_info=True,
                )
                return False

        logger.debug(
            "Admin check",
            extra={"clerk_user_id": clerk_user_id, "admin_memberships": admin_count},
        )
        return admin_count > 0

    def update_role(
        self,
        clerk_user_id: str,
        organization_id: str,
        role_name: str,
    ) -> RoleUpdateOutcome:
        """
        Update or create a user's role in an organization.

        Used to fix role assignments a webhook got wrong. Creates the
        membership if it doesn't exist, with a synthetic Clerk membership id
        ("mem_fix_<user>_<org>_<millis>").

        Returns:
            CREATED, UPDATED, or NOT_FOUND if user, organization or role is unknown
        """
        user = self.get_user_by_clerk_id(clerk_user_id)
        if user is None:
            return RoleUpdateOutcome.NOT_FOUND

        org = self.session.get(Organization, organization_id)
        if org is None:
            logger.warning("Organization not found", extra={"organization_id": organization_id})
            return RoleUpdateOutcome.NOT_FOUND

        name = normalize_role_name(role_name)
        role = self.session.query(Role).filter(Role.name == name).first() if name else None
        if role is None:
            logger.warning("Role not found", extra={"role": role_name})
            return RoleUpdateOutcome.NOT_FOUND

        membership = self.session.query(Membership).filter(
            Membership.user_id == user.id,
            Membership.organization_id == org.id,
        ).first()

        if membership is not None:
            old_role = membership.role_name
            membership.role = role
            self.session.commit()
            logger.info(
                "Updated membership role",
                extra={
                    "clerk_user_id": clerk_user_id,
                    "organization_id": organization_id,
                    "old_role": old_role,
                    "new_role": role.name,
                },
            )
            return RoleUpdateOutcome.UPDATED

        millis = int(time.time() * 1000)
        membership = Membership(
            user_id=user.id,
            organization_id=org.id,
            role_id=role.id,
            clerk_membership_id=f"mem_fix_{user.id}_{org.id}_{millis}",
        )
        self.session.add(membership)
        self.session.commit()
        logger.info(
            "Created membership via role fix",
            extra={
                "clerk_user_id": clerk_user_id,
                "organization_id": organization_id,
                "role": role.name,
            },
        )
        return RoleUpdateOutcome.CREATED
