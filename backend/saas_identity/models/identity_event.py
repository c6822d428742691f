"""
Append-only audit tables for processed Clerk webhook events.

Used for audit and idempotency - clerk_event_id is unique so a redelivered
webhook (Svix delivers at least once) is recorded exactly once.
Rows are never updated or deleted.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB

from saas_identity.models.base import Base, generate_uuid

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserEvent(Base):
    """Audit row for user-scoped events (user.*, email.*, user-level role.*)."""

    __tablename__ = "user_events"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    clerk_user_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Clerk user the event refers to ('unknown' if not derivable)"
    )

    event_type = Column(String(100), nullable=False, index=True)

    event_data = Column(JSONType, nullable=False, comment="Raw webhook payload")

    clerk_event_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="External event ID used for deduplication"
    )

    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_user_events_user_type", "clerk_user_id", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<UserEvent(id={self.id}, type={self.event_type}, event_id={self.clerk_event_id})>"


class OrganizationEvent(Base):
    """Audit row for organization, membership and org-level role events."""

    __tablename__ = "organization_events"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    clerk_org_id = Column(String(255), nullable=True, index=True)

    clerk_user_id = Column(String(255), nullable=True, index=True)

    event_type = Column(String(100), nullable=False, index=True)

    event_data = Column(JSONType, nullable=False, comment="Raw webhook payload")

    clerk_event_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="External event ID used for deduplication"
    )

    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<OrganizationEvent(id={self.id}, type={self.event_type}, event_id={self.clerk_event_id})>"
