"""
Membership model linking users to organizations with a role.

Sources of Membership records:
1. Clerk webhooks: organizationMembership.created/updated
2. Role fix: PUT /api/users/role (admin-gated)

SECURITY:
- At most one membership per (user, organization); enforced by a unique
  constraint that backs up the synchronizer's existence checks
- clerk_membership_id is unique so redelivered events cannot duplicate rows
"""

from sqlalchemy import Column, String, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from saas_identity.models.base import Base, TimestampMixin, generate_uuid


class Membership(Base, TimestampMixin):
    """Join entity: user X belongs to organization Y with role Z."""

    __tablename__ = "memberships"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    user_id = Column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="User ID (FK to users.id)"
    )

    organization_id = Column(
        String(255),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Organization ID (FK to organizations.id)"
    )

    role_id = Column(
        String(255),
        ForeignKey("roles.id"),
        nullable=False,
        index=True,
        comment="Role ID (FK to roles.id)"
    )

    clerk_membership_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Clerk organization membership ID"
    )

    user = relationship("User", back_populates="memberships", lazy="joined")
    organization = relationship("Organization", back_populates="memberships", lazy="joined")
    role = relationship("Role", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_membership_user_org"),
        Index("ix_memberships_user_org", "user_id", "organization_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Membership(id={self.id}, user_id={self.user_id}, "
            f"organization_id={self.organization_id}, role_id={self.role_id})>"
        )

    @property
    def role_name(self):
        return self.role.name if self.role else None
