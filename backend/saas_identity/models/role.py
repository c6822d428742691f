"""
Role model for organization-scoped RBAC.

Roles are global and identified by a canonical upper-case name. The base
set (ADMIN, USER) is seeded at startup; Clerk role.* webhooks may add or
modify further roles but can never delete the protected base roles.
"""

from typing import List, Optional

from sqlalchemy import Column, String, Text

from saas_identity.models.base import Base, TimestampMixin, generate_uuid

ADMIN_ROLE = "ADMIN"
USER_ROLE = "USER"

# Roles that webhooks are never allowed to delete
PROTECTED_ROLES = frozenset({ADMIN_ROLE, USER_ROLE})

DEFAULT_ROLES: dict[str, str] = {
    ADMIN_ROLE: "Organization administrator",
    USER_ROLE: "Organization member",
}


def normalize_role_name(name: Optional[str]) -> Optional[str]:
    """
    Canonicalize a role name for storage and lookup.

    Clerk role keys carry an "org:" prefix (e.g. "org:admin"); it is dropped
    and the remainder upper-cased, so "admin", "Admin" and "org:admin" all
    resolve to "ADMIN".
    """
    if name is None:
        return None
    name = name.strip()
    if name.lower().startswith("org:"):
        name = name[4:]
    return name.upper() or None


class Role(Base, TimestampMixin):
    """Named role assigned to users through Membership."""

    __tablename__ = "roles"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    name = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        comment="Canonical upper-case role name (e.g. 'ADMIN')",
    )

    description = Column(
        Text,
        nullable=True,
        comment="Optional description of the role's purpose",
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name})>"


def seed_default_roles(db_session) -> List[Role]:
    """
    Seed the ADMIN and USER roles.

    Idempotent: existing roles are left untouched.

    Returns:
        List of Role instances for the default role names.
    """
    roles: List[Role] = []
    for name, description in DEFAULT_ROLES.items():
        role = db_session.query(Role).filter(Role.name == name).first()
        if role is None:
            role = Role(name=name, description=description)
            db_session.add(role)
            db_session.flush()
        roles.append(role)
    return roles
