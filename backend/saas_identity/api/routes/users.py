"""
User API routes.

Provides endpoints for:
- The current user's profile and memberships
- Listing all users (ADMIN in any organization)
- Fixing a user's role in an organization (ADMIN of that organization)

Identity comes from the gateway headers; these routes never see a JWT.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from saas_identity.api.schemas.identity import (
    UpdateRoleRequest,
    UpdateRoleResponse,
    UserPageResponse,
    UserResponse,
)
from saas_identity.auth.gateway_headers import GatewayPrincipal, require_principal
from saas_identity.database.session import get_db_session
from saas_identity.services.authorization_service import (
    AccessDeniedError,
    AuthorizationService,
    EntityNotFoundError,
    RoleUpdateOutcome,
)
from saas_identity.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user(
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """Profile of the calling user with all memberships."""
    try:
        return UserService(db).get_current_user(principal.user_id)
    except EntityNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/users", response_model=UserPageResponse)
async def list_users(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """
    List all users, newest first.

    Requires ADMIN role in at least one organization.
    """
    try:
        return UserService(db).list_users(principal.user_id, page=page, size=size)
    except AccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))


@router.put("/users/role", response_model=UpdateRoleResponse)
async def update_user_role(
    body: UpdateRoleRequest,
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """
    Set a user's role in an organization, creating the membership if needed.

    Requires ADMIN role in the target organization.
    """
    authz = AuthorizationService(db)
    if not authz.is_admin(principal.user_id, body.organization_id):
        logger.warning(
            "Role update denied",
            extra={
                "clerk_user_id": principal.user_id,
                "organization_id": body.organization_id,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden: ADMIN role required in this organization",
        )

    outcome = authz.update_role(body.clerk_user_id, body.organization_id, body.role)
    if outcome == RoleUpdateOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User, organization or role not found",
        )

    logger.info(
        "Role updated via API",
        extra={
            "requested_by": principal.user_id,
            "clerk_user_id": body.clerk_user_id,
            "organization_id": body.organization_id,
            "outcome": outcome.value,
        },
    )
    return UpdateRoleResponse(
        success=True,
        outcome=outcome.value,
        message=f"Role {outcome.value} for user {body.clerk_user_id}",
    )
