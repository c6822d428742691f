"""
Database models for users, organizations, roles and memberships.

Identity rows are synced from Clerk webhooks; every processed webhook
is also recorded in an append-only audit table.
"""

from saas_identity.models.base import Base, TimestampMixin, generate_uuid
from saas_identity.models.user import User
from saas_identity.models.organization import Organization
from saas_identity.models.role import (
    Role,
    ADMIN_ROLE,
    USER_ROLE,
    PROTECTED_ROLES,
    normalize_role_name,
    seed_default_roles,
)
from saas_identity.models.membership import Membership
from saas_identity.models.identity_event import UserEvent, OrganizationEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "generate_uuid",
    "User",
    "Organization",
    "Role",
    "ADMIN_ROLE",
    "USER_ROLE",
    "PROTECTED_ROLES",
    "normalize_role_name",
    "seed_default_roles",
    "Membership",
    "UserEvent",
    "OrganizationEvent",
]
