"""
Organization query service.

Read-only views of organizations and memberships for the calling user.
Every lookup is gated on the caller's membership in the organization.
"""

import logging
import math
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from saas_identity.api.schemas.identity import (
    MemberInfo,
    MembershipResponse,
    OrganizationInfo,
    OrganizationMembersResponse,
    OrganizationResponse,
    RoleInfo,
    UserInfo,
)
from saas_identity.models.membership import Membership
from saas_identity.models.organization import Organization
from saas_identity.models.user import User
from saas_identity.services.authorization_service import (
    AccessDeniedError,
    AuthorizationService,
    EntityNotFoundError,
)

logger = logging.getLogger(__name__)


class OrganizationService:
    """Organization and membership queries for a gateway-authenticated user."""

    def __init__(self, session: Session):
        self.session = session
        self.authz = AuthorizationService(session)

    def _require_user(self, clerk_user_id: str) -> User:
        user = self.authz.get_user_by_clerk_id(clerk_user_id)
        if user is None:
            raise EntityNotFoundError(f"User not found: {clerk_user_id}")
        return user

    def _member_count(self, organization_id: str) -> int:
        return self.session.query(func.count(Membership.id)).filter(
            Membership.organization_id == organization_id
        ).scalar() or 0

    def _to_response(self, org: Organization, user_role: Optional[str]) -> OrganizationResponse:
        return OrganizationResponse(
            id=org.id,
            clerk_org_id=org.clerk_org_id,
            name=org.name,
            slug=org.slug,
            image_url=org.image_url,
            created_at=org.created_at,
            updated_at=org.updated_at,
            member_count=self._member_count(org.id),
            user_role=user_role,
        )

    def _user_memberships(self, user: User) -> List[Membership]:
        return self.session.query(Membership).filter(
            Membership.user_id == user.id
        ).order_by(Membership.created_at).all()

    def get_user_organizations(self, clerk_user_id: str) -> List[OrganizationResponse]:
        """Organizations the user belongs to, with the user's role in each."""
        user = self._require_user(clerk_user_id)
        return [
            self._to_response(m.organization, m.role_name)
            for m in self._user_memberships(user)
        ]

    def _organization_for_member(self, org: Organization, clerk_user_id: str) -> OrganizationResponse:
        membership = self.authz.get_membership(clerk_user_id, org.id)
        if membership is None:
            logger.warning(
                "Organization access denied",
                extra={"clerk_user_id": clerk_user_id, "organization_id": org.id},
            )
            raise AccessDeniedError("Forbidden: User does not have access to this organization")
        return self._to_response(org, membership.role_name)

    def get_organization(self, organization_id: str, clerk_user_id: str) -> OrganizationResponse:
        """
        Get organization by internal ID.

        Raises:
            AccessDeniedError: If the caller is not a member
        """
        if not self.authz.has_access(clerk_user_id, organization_id):
            logger.warning(
                "Organization access denied",
                extra={"clerk_user_id": clerk_user_id, "organization_id": organization_id},
            )
            raise AccessDeniedError("Forbidden: User does not have access to this organization")

        org = self.session.get(Organization, organization_id)
        if org is None:
            raise EntityNotFoundError(f"Organization not found: {organization_id}")
        return self._organization_for_member(org, clerk_user_id)

    def get_organization_by_clerk_id(self, clerk_org_id: str, clerk_user_id: str) -> OrganizationResponse:
        """
        Get organization by Clerk org ID.

        Raises:
            EntityNotFoundError: If no such organization is synced
            AccessDeniedError: If the caller is not a member
        """
        org = self.session.query(Organization).filter(
            Organization.clerk_org_id == clerk_org_id
        ).first()
        if org is None:
            raise EntityNotFoundError(f"Organization not found: {clerk_org_id}")
        return self._organization_for_member(org, clerk_user_id)

    def get_organization_members(
        self,
        organization_id: str,
        clerk_user_id: str,
        page: int = 0,
        size: int = 20,
    ) -> OrganizationMembersResponse:
        """
        Get one page of an organization's members (0-indexed pages).

        Raises:
            AccessDeniedError: If the caller is not a member
        """
        if not self.authz.has_access(clerk_user_id, organization_id):
            logger.warning(
                "Organization members access denied",
                extra={"clerk_user_id": clerk_user_id, "organization_id": organization_id},
            )
            raise AccessDeniedError("Forbidden: User does not have access to this organization")

        if self.session.get(Organization, organization_id) is None:
            raise EntityNotFoundError(f"Organization not found: {organization_id}")

        total = self._member_count(organization_id)
        memberships = self.session.query(Membership).filter(
            Membership.organization_id == organization_id
        ).order_by(Membership.created_at, Membership.id).offset(page * size).limit(size).all()

        members = [
            MemberInfo(
                membership_id=m.id,
                clerk_membership_id=m.clerk_membership_id,
                role_id=m.role_id,
                role_name=m.role_name,
                user_id=m.user.id,
                email=m.user.email,
                first_name=m.user.first_name,
                last_name=m.user.last_name,
                image_url=m.user.image_url,
            )
            for m in memberships
        ]
        return OrganizationMembersResponse(
            members=members,
            total_members=total,
            page=page,
            size=size,
            total_pages=math.ceil(total / size) if size else 0,
        )

    def get_user_memberships(self, clerk_user_id: str) -> List[MembershipResponse]:
        """The user's memberships across all organizations."""
        user = self._require_user(clerk_user_id)
        return [
            MembershipResponse(
                id=m.id,
                clerk_membership_id=m.clerk_membership_id,
                created_at=m.created_at,
                updated_at=m.updated_at,
                user=UserInfo.model_validate(user),
                organization=OrganizationInfo.model_validate(m.organization),
                role=RoleInfo.model_validate(m.role),
            )
            for m in self._user_memberships(user)
        ]
