"""
Pydantic schemas for the identity API.

Response models for users, organizations and memberships, plus the
role-fix request body.
"""

from typing import List, Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Nested Models
# =============================================================================


class RoleInfo(BaseModel):
    """Role attached to a membership."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = Field(..., description="Canonical upper-case role name")
    description: Optional[str] = None


class UserInfo(BaseModel):
    """Public profile fields of a user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None


class OrganizationInfo(BaseModel):
    """Identifying fields of an organization."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    clerk_org_id: str
    name: str
    slug: Optional[str] = None
    image_url: Optional[str] = None


class MembershipSummary(BaseModel):
    """Compact membership entry used inside user listings."""

    membership_id: str
    organization_id: str
    organization_name: str
    clerk_org_id: str
    role_id: Optional[str] = None
    role_name: Optional[str] = None
    clerk_membership_id: Optional[str] = None


# =============================================================================
# Response Models
# =============================================================================


class UserResponse(BaseModel):
    """A user with their memberships."""

    id: str
    clerk_user_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    memberships: List[MembershipSummary] = Field(default_factory=list)
    total_organizations: int = 0
    is_admin: bool = Field(False, description="ADMIN in at least one organization")


class UserPageResponse(BaseModel):
    """One page of users, newest first."""

    content: List[UserResponse]
    page: int
    size: int
    total_elements: int
    total_pages: int
    first: bool
    last: bool


class OrganizationResponse(BaseModel):
    """Organization details as seen by one of its members."""

    id: str
    clerk_org_id: str
    name: str
    slug: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    member_count: int = 0
    user_role: Optional[str] = Field(None, description="Caller's role in this organization")


class MembershipResponse(BaseModel):
    """A membership with its user, organization and role."""

    id: str
    clerk_membership_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user: UserInfo
    organization: OrganizationInfo
    role: RoleInfo


class MemberInfo(BaseModel):
    """One member of an organization."""

    membership_id: str
    clerk_membership_id: str
    role_id: Optional[str] = None
    role_name: Optional[str] = None
    user_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None


class OrganizationMembersResponse(BaseModel):
    """One page of organization members."""

    members: List[MemberInfo]
    total_members: int
    page: int
    size: int
    total_pages: int


# =============================================================================
# Request Models
# =============================================================================


class UpdateRoleRequest(BaseModel):
    """Request to set a user's role in an organization."""

    clerk_user_id: str = Field(..., min_length=1, description="Clerk user ID of the target user")
    organization_id: str = Field(..., min_length=1, description="Internal organization ID")
    role: str = Field(..., min_length=1, description="Role name (e.g. ADMIN, USER)")


class UpdateRoleResponse(BaseModel):
    """Result of a role update."""

    success: bool
    outcome: str = Field(..., description="created or updated")
    message: str
