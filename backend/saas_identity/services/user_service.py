"""
User query service.

Provides the current user's profile and the admin-only listing of all
users with their memberships.
"""

import logging
import math

from sqlalchemy.orm import Session

from saas_identity.api.schemas.identity import (
    MembershipSummary,
    UserPageResponse,
    UserResponse,
)
from saas_identity.models.membership import Membership
from saas_identity.models.role import ADMIN_ROLE
from saas_identity.models.user import User
from saas_identity.services.authorization_service import (
    AccessDeniedError,
    AuthorizationService,
    EntityNotFoundError,
)

logger = logging.getLogger(__name__)


def _to_response(user: User) -> UserResponse:
    memberships = user.memberships.order_by(Membership.created_at).all()
    summaries = [
        MembershipSummary(
            membership_id=m.id,
            organization_id=m.organization.id,
            organization_name=m.organization.name,
            clerk_org_id=m.organization.clerk_org_id,
            role_id=m.role_id,
            role_name=m.role_name,
            clerk_membership_id=m.clerk_membership_id,
        )
        for m in memberships
    ]
    return UserResponse(
        id=user.id,
        clerk_user_id=user.clerk_user_id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        image_url=user.image_url,
        created_at=user.created_at,
        memberships=summaries,
        total_organizations=len(summaries),
        is_admin=any(s.role_name == ADMIN_ROLE for s in summaries),
    )


class UserService:
    """User queries for a gateway-authenticated user."""

    def __init__(self, session: Session):
        self.session = session
        self.authz = AuthorizationService(session)

    def get_current_user(self, clerk_user_id: str) -> UserResponse:
        """
        Profile and memberships of the calling user.

        Raises:
            EntityNotFoundError: If the user has not been synced from Clerk yet
        """
        user = self.authz.get_user_by_clerk_id(clerk_user_id)
        if user is None:
            raise EntityNotFoundError(f"User not found: {clerk_user_id}")
        return _to_response(user)

    def list_users(self, clerk_user_id: str, page: int = 0, size: int = 20) -> UserPageResponse:
        """
        All users, newest first, with their memberships.

        Requires: caller must be ADMIN in at least one organization.

        Raises:
            AccessDeniedError: If the caller is not an admin anywhere
        """
        if not self.authz.is_admin_anywhere(clerk_user_id):
            logger.warning(
                "User listing denied; ADMIN role required",
                extra={"clerk_user_id": clerk_user_id},
            )
            raise AccessDeniedError("Forbidden: ADMIN role required to fetch all users")

        total = self.session.query(User).count()
        users = self.session.query(User).order_by(
            User.created_at.desc(), User.id
        ).offset(page * size).limit(size).all()

        total_pages = math.ceil(total / size) if size else 0
        logger.info(
            "Listed users",
            extra={"requested_by": clerk_user_id, "total": total, "page": page},
        )
        return UserPageResponse(
            content=[_to_response(u) for u in users],
            page=page,
            size=size,
            total_elements=total,
            total_pages=total_pages,
            first=page == 0,
            last=page >= total_pages - 1,
        )
