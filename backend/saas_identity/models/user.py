"""
User model for the multi-tenant identity backend.

Rows mirror Clerk users and are written only by webhook sync:
- No credentials are stored; Clerk authenticates users
- clerk_user_id is Clerk's id and is unique
- id is an internal UUID used by foreign keys
- Rows are never hard-deleted (user.deleted is audit-only)
"""

from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from saas_identity.models.base import Base, TimestampMixin, generate_uuid


class User(Base, TimestampMixin):
    """Local user record synced from Clerk; joins organizations via Membership."""

    __tablename__ = "users"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    # Clerk User ID - SOURCE OF TRUTH
    clerk_user_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Clerk user ID - source of truth for authentication"
    )

    email = Column(
        String(255),
        nullable=True,
        index=True,
        comment="User email address (from Clerk)"
    )

    first_name = Column(
        String(255),
        nullable=True,
        comment="User first name (from Clerk)"
    )

    last_name = Column(
        String(255),
        nullable=True,
        comment="User last name (from Clerk)"
    )

    image_url = Column(
        String(500),
        nullable=True,
        comment="Profile image URL (from Clerk)"
    )

    memberships = relationship(
        "Membership",
        back_populates="user",
        lazy="dynamic",
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, clerk_user_id={self.clerk_user_id}, email={self.email})>"
