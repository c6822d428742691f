"""
Clerk Sync Service for synchronizing identity data from Clerk.

This service handles:
- User sync: Create/update local User records from Clerk data
- Organization sync: Create/update/delete local Organization records
- Membership sync: Create/update/delete Membership records
- Role sync: Create/update/delete Role records (base roles are protected)

Data flows:
1. Clerk webhooks -> clerk_webhook_handler -> clerk_sync_service -> database

Every write is idempotent: repeating a call with the same input leaves the
database unchanged. The service flushes but never commits; the webhook
router owns the transaction.

SECURITY:
- Clerk is source of truth for authentication
- Local database stores authorization and relationships
- NO passwords stored locally
"""

import logging
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from saas_identity.models.membership import Membership
from saas_identity.models.organization import Organization
from saas_identity.models.role import (
    PROTECTED_ROLES,
    USER_ROLE,
    Role,
    normalize_role_name,
)
from saas_identity.models.user import User

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION_NAME = "Unnamed Organization"


class SyncAction(str, Enum):
    """What a sync call did to the database."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"
    PROTECTED = "protected"


class MissingReferenceError(Exception):
    """A referenced user, organization or role does not exist locally."""

    def __init__(self, entity: str, external_id: str):
        super().__init__(f"{entity} not found: {external_id}")
        self.entity = entity
        self.external_id = external_id


class ClerkSyncService:
    """
    Service for syncing Clerk identity data to local database.

    Used by the webhook router; every method expects to run inside the
    router's transaction.
    """

    def __init__(self, session: Session):
        """
        Initialize sync service with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_user(self, clerk_user_id: str) -> Optional[User]:
        return self.session.query(User).filter(
            User.clerk_user_id == clerk_user_id
        ).first()

    def get_organization(self, clerk_org_id: str) -> Optional[Organization]:
        return self.session.query(Organization).filter(
            Organization.clerk_org_id == clerk_org_id
        ).first()

    def get_membership(self, clerk_membership_id: str) -> Optional[Membership]:
        return self.session.query(Membership).filter(
            Membership.clerk_membership_id == clerk_membership_id
        ).first()

    def get_role(self, role_name: Optional[str]) -> Optional[Role]:
        name = normalize_role_name(role_name)
        if not name:
            return None
        return self.session.query(Role).filter(Role.name == name).first()

    def resolve_role(self, role_name: Optional[str]) -> Role:
        """
        Resolve a Clerk role name to a local Role.

        Unknown or absent names fall back to USER.

        Raises:
            MissingReferenceError: If even the USER role is missing (unseeded DB)
        """
        role = self.get_role(role_name)
        if role is not None:
            return role

        if role_name:
            logger.warning(
                "Role not found, defaulting to USER",
                extra={"role": role_name},
            )
        else:
            logger.info("No role in payload, defaulting to USER")

        role = self.session.query(Role).filter(Role.name == USER_ROLE).first()
        if role is None:
            raise MissingReferenceError("Role", USER_ROLE)
        return role

    # =========================================================================
    # User Sync Methods
    # =========================================================================

    def create_user(
        self,
        clerk_user_id: str,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Tuple[User, SyncAction]:
        """
        Create a User unless one already exists for clerk_user_id.

        Returns:
            (user, CREATED) or (existing user, UNCHANGED)
        """
        user = self.get_user(clerk_user_id)
        if user is not None:
            logger.info(
                "User already exists, skipping",
                extra={"clerk_user_id": clerk_user_id},
            )
            return user, SyncAction.UNCHANGED

        user = User(
            clerk_user_id=clerk_user_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            image_url=image_url,
        )
        self.session.add(user)
        self.session.flush()

        logger.info(
            "Created user from Clerk",
            extra={"clerk_user_id": clerk_user_id, "user_id": user.id},
        )
        return user, SyncAction.CREATED

    def update_user(
        self,
        clerk_user_id: str,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Tuple[Optional[User], SyncAction]:
        """
        Update fields present in the event; None means "not provided".

        Returns:
            (user, UPDATED | UNCHANGED) or (None, NOT_FOUND)
        """
        user = self.get_user(clerk_user_id)
        if user is None:
            return None, SyncAction.NOT_FOUND

        changed = False
        for attr, value in (
            ("email", email),
            ("first_name", first_name),
            ("last_name", last_name),
            ("image_url", image_url),
        ):
            if value is not None and getattr(user, attr) != value:
                setattr(user, attr, value)
                changed = True

        if not changed:
            return user, SyncAction.UNCHANGED

        self.session.flush()
        logger.info("Updated user from Clerk", extra={"clerk_user_id": clerk_user_id})
        return user, SyncAction.UPDATED

    # =========================================================================
    # Organization Sync Methods
    # =========================================================================

    def create_organization(
        self,
        clerk_org_id: str,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Tuple[Organization, SyncAction]:
        """
        Create an Organization unless one already exists for clerk_org_id.

        Returns:
            (organization, CREATED) or (existing organization, UNCHANGED)
        """
        org = self.get_organization(clerk_org_id)
        if org is not None:
            logger.info(
                "Organization already exists, skipping",
                extra={"clerk_org_id": clerk_org_id},
            )
            return org, SyncAction.UNCHANGED

        org = Organization(
            clerk_org_id=clerk_org_id,
            name=name or DEFAULT_ORGANIZATION_NAME,
            slug=slug,
            image_url=image_url,
        )
        self.session.add(org)
        self.session.flush()

        logger.info(
            "Created organization from Clerk",
            extra={"clerk_org_id": clerk_org_id, "organization_id": org.id},
        )
        return org, SyncAction.CREATED

    def update_organization(
        self,
        clerk_org_id: str,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Tuple[Optional[Organization], SyncAction]:
        """
        Update fields present in the event.

        Returns:
            (organization, UPDATED | UNCHANGED) or (None, NOT_FOUND)
        """
        org = self.get_organization(clerk_org_id)
        if org is None:
            return None, SyncAction.NOT_FOUND

        changed = False
        for attr, value in (("name", name), ("slug", slug), ("image_url", image_url)):
            if value is not None and getattr(org, attr) != value:
                setattr(org, attr, value)
                changed = True

        if not changed:
            return org, SyncAction.UNCHANGED

        self.session.flush()
        logger.info("Updated organization from Clerk", extra={"clerk_org_id": clerk_org_id})
        return org, SyncAction.UPDATED

    def delete_organization(self, clerk_org_id: str) -> SyncAction:
        """
        Delete an organization and all of its memberships.

        Returns:
            DELETED, or NOT_FOUND if the organization was already gone
        """
        org = self.get_organization(clerk_org_id)
        if org is None:
            logger.warning(
                "Organization not found for deletion; it may have already been deleted",
                extra={"clerk_org_id": clerk_org_id},
            )
            return SyncAction.NOT_FOUND

        removed = org.member_count
        # Memberships go with it via the relationship cascade
        self.session.delete(org)
        self.session.flush()

        logger.info(
            "Deleted organization and memberships",
            extra={"clerk_org_id": clerk_org_id, "memberships_removed": removed},
        )
        return SyncAction.DELETED

    # =========================================================================
    # Membership Sync Methods
    # =========================================================================

    def upsert_membership(
        self,
        clerk_membership_id: str,
        clerk_user_id: str,
        clerk_org_id: str,
        role_name: Optional[str] = None,
    ) -> Tuple[Membership, SyncAction]:
        """
        Create or update the membership for (user, organization).

        A user has at most one membership per organization: if one exists
        (e.g. from a role fix or an earlier Clerk membership id) it is updated
        in place with the new role and Clerk membership id.

        Raises:
            MissingReferenceError: If the user or organization is not synced yet
        """
        user = self.get_user(clerk_user_id)
        if user is None:
            raise MissingReferenceError("User", clerk_user_id)
        org = self.get_organization(clerk_org_id)
        if org is None:
            raise MissingReferenceError("Organization", clerk_org_id)
        role = self.resolve_role(role_name)

        membership = self._find_membership(user.id, org.id)
        if membership is not None:
            return self._apply_membership(membership, clerk_membership_id, role), SyncAction.UPDATED

        membership = Membership(
            user_id=user.id,
            organization_id=org.id,
            role_id=role.id,
            clerk_membership_id=clerk_membership_id,
        )
        try:
            with self.session.begin_nested():
                self.session.add(membership)
        except IntegrityError:
            # Concurrent delivery inserted the same (user, org) first
            logger.info(
                "Membership insert raced; updating existing row",
                extra={"clerk_user_id": clerk_user_id, "clerk_org_id": clerk_org_id},
            )
            membership = self._find_membership(user.id, org.id)
            if membership is None:
                raise
            return self._apply_membership(membership, clerk_membership_id, role), SyncAction.UPDATED

        logger.info(
            "Membership created",
            extra={
                "clerk_user_id": clerk_user_id,
                "clerk_org_id": clerk_org_id,
                "role": role.name,
            },
        )
        return membership, SyncAction.CREATED

    def update_membership_role(
        self,
        clerk_membership_id: str,
        role_name: Optional[str] = None,
    ) -> Tuple[Optional[Membership], SyncAction]:
        """
        Change the role of an existing membership.

        Returns:
            (membership, UPDATED | UNCHANGED) or (None, NOT_FOUND)
        """
        membership = self.get_membership(clerk_membership_id)
        if membership is None:
            return None, SyncAction.NOT_FOUND

        role = self.resolve_role(role_name)
        if membership.role_id == role.id:
            return membership, SyncAction.UNCHANGED

        old_role = membership.role_name
        self._apply_membership(membership, clerk_membership_id, role)
        logger.info(
            "Membership role updated",
            extra={
                "clerk_membership_id": clerk_membership_id,
                "old_role": old_role,
                "new_role": role.name,
            },
        )
        return membership, SyncAction.UPDATED

    def delete_membership(self, clerk_membership_id: str) -> SyncAction:
        membership = self.get_membership(clerk_membership_id)
        if membership is None:
            logger.warning(
                "Membership not found for deletion",
                extra={"clerk_membership_id": clerk_membership_id},
            )
            return SyncAction.NOT_FOUND

        self.session.delete(membership)
        self.session.flush()
        logger.info("Membership deleted", extra={"clerk_membership_id": clerk_membership_id})
        return SyncAction.DELETED

    def _find_membership(self, user_id: str, organization_id: str) -> Optional[Membership]:
        return self.session.query(Membership).filter(
            Membership.user_id == user_id,
            Membership.organization_id == organization_id,
        ).first()

    def _apply_membership(
        self,
        membership: Membership,
        clerk_membership_id: str,
        role: Role,
    ) -> Membership:
        membership.role = role
        membership.clerk_membership_id = clerk_membership_id
        self.session.flush()
        return membership

    # =========================================================================
    # Role Sync Methods
    # =========================================================================

    def upsert_role(
        self,
        role_name: str,
        description: Optional[str] = None,
    ) -> Tuple[Role, SyncAction]:
        """
        Create a role, or update its description if it already exists.

        Returns:
            (role, CREATED | UPDATED | UNCHANGED)
        """
        name = normalize_role_name(role_name)
        role = self.get_role(name)
        if role is None:
            role = Role(name=name, description=description or "Role created from Clerk webhook")
            self.session.add(role)
            self.session.flush()
            logger.info("Role created", extra={"role": name})
            return role, SyncAction.CREATED

        if description is not None and role.description != description:
            role.description = description
            self.session.flush()
            logger.info("Role updated", extra={"role": name})
            return role, SyncAction.UPDATED

        return role, SyncAction.UNCHANGED

    def delete_role(self, role_name: str) -> SyncAction:
        """
        Delete a custom role; ADMIN and USER are never deleted.

        Memberships holding the deleted role are moved to USER.

        Returns:
            DELETED, PROTECTED or NOT_FOUND
        """
        name = normalize_role_name(role_name)
        if name in PROTECTED_ROLES:
            logger.info("Skipping deletion of protected role", extra={"role": name})
            return SyncAction.PROTECTED

        role = self.get_role(name)
        if role is None:
            logger.info("Role not found for deletion", extra={"role": name})
            return SyncAction.NOT_FOUND

        fallback = self.resolve_role(USER_ROLE)
        reassigned = self.session.query(Membership).filter(
            Membership.role_id == role.id
        ).update({Membership.role_id: fallback.id}, synchronize_session=False)
        self.session.delete(role)
        self.session.flush()
        # Bulk update bypassed the identity map
        self.session.expire_all()

        logger.info(
            "Role deleted",
            extra={"role": name, "memberships_reassigned": reassigned},
        )
        return SyncAction.DELETED
