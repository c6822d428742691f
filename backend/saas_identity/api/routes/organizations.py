"""
Organization API routes.

All endpoints are scoped to organizations the calling user belongs to.
Non-members get 403; unknown organizations get 404.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from saas_identity.api.schemas.identity import (
    MembershipResponse,
    OrganizationMembersResponse,
    OrganizationResponse,
)
from saas_identity.auth.gateway_headers import GatewayPrincipal, require_principal
from saas_identity.database.session import get_db_session
from saas_identity.services.authorization_service import (
    AccessDeniedError,
    EntityNotFoundError,
)
from saas_identity.services.organization_service import OrganizationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/organizations", tags=["organizations"])


def _to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, AccessDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))


@router.get("", response_model=List[OrganizationResponse])
async def list_my_organizations(
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """Organizations the calling user belongs to."""
    try:
        return OrganizationService(db).get_user_organizations(principal.user_id)
    except EntityNotFoundError as e:
        raise _to_http_error(e)


@router.get("/memberships", response_model=List[MembershipResponse])
async def list_my_memberships(
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """Memberships of the calling user across all organizations."""
    try:
        return OrganizationService(db).get_user_memberships(principal.user_id)
    except EntityNotFoundError as e:
        raise _to_http_error(e)


@router.get("/clerk/{clerk_org_id}", response_model=OrganizationResponse)
async def get_organization_by_clerk_id(
    clerk_org_id: str,
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """Organization by Clerk org id."""
    try:
        return OrganizationService(db).get_organization_by_clerk_id(clerk_org_id, principal.user_id)
    except (AccessDeniedError, EntityNotFoundError) as e:
        raise _to_http_error(e)


@router.get("/{org_id}", response_model=OrganizationResponse)
async def get_organization(
    org_id: str,
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """Organization by internal id."""
    try:
        return OrganizationService(db).get_organization(org_id, principal.user_id)
    except (AccessDeniedError, EntityNotFoundError) as e:
        raise _to_http_error(e)


@router.get("/{org_id}/members", response_model=OrganizationMembersResponse)
async def get_organization_members(
    org_id: str,
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    principal: GatewayPrincipal = Depends(require_principal),
    db: Session = Depends(get_db_session),
):
    """One page of an organization's members."""
    try:
        return OrganizationService(db).get_organization_members(
            org_id, principal.user_id, page=page, size=size
        )
    except (AccessDeniedError, EntityNotFoundError) as e:
        raise _to_http_error(e)
