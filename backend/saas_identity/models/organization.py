"""
Organization model for the multi-tenant identity backend.

Organization mirrors a Clerk Organization. Users belong to organizations
through Membership rows; deleting an organization removes its memberships.
"""

from sqlalchemy import Column, String, Index
from sqlalchemy.orm import relationship

from saas_identity.models.base import Base, TimestampMixin, generate_uuid


class Organization(Base, TimestampMixin):
    """
    Tenant organization synced from Clerk.

    Created, updated and deleted by organization.* webhook events.
    """

    __tablename__ = "organizations"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    clerk_org_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Clerk Organization ID"
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name of the organization"
    )

    slug = Column(
        String(255),
        nullable=True,
        comment="URL-friendly identifier (e.g., 'acme')"
    )

    image_url = Column(
        String(500),
        nullable=True,
        comment="Organization logo URL (from Clerk)"
    )

    memberships = relationship(
        "Membership",
        back_populates="organization",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_organizations_name", "name"),
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, clerk_org_id={self.clerk_org_id}, name={self.name})>"

    @property
    def member_count(self) -> int:
        """Get the number of members in this organization."""
        return self.memberships.count()
