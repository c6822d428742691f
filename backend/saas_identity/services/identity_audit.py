"""
Identity audit log for processed Clerk webhook events.

Every processed webhook is recorded once, in one of two append-only tables:
- user_events: user.*, email.*, and role.* events without an organization
- organization_events: organization.*, organizationMembership.*, and
  role.* events scoped to an organization

The external event id (see payload_fields.extract_event_id) doubles as the
deduplication key for the webhook router.

Audit writes run inside a SAVEPOINT and failures are logged and swallowed,
so an audit problem never turns a successful sync into a failed webhook.
"""

import logging
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy import exists
from sqlalchemy.orm import Session

from saas_identity.models.identity_event import OrganizationEvent, UserEvent
from saas_identity.services.payload_fields import (
    AUDIT_USER_ID_PATHS,
    MEMBERSHIP_ORG_ID_PATHS,
    MEMBERSHIP_USER_ID_PATHS,
    RELATED_ORG_ID_PATHS,
    RELATED_USER_ID_PATHS,
    first_present,
    get_data,
)

logger = logging.getLogger(__name__)

USER_EVENTS = "user_events"
ORGANIZATION_EVENTS = "organization_events"

UNKNOWN_USER = "unknown"


class AuditTarget(NamedTuple):
    """Which audit table an event goes to, and the ids recorded with it."""

    table: str
    clerk_user_id: Optional[str]
    clerk_org_id: Optional[str] = None


def resolve_audit_target(event_type: str, payload: Dict[str, Any]) -> AuditTarget:
    """Pick the audit table and subject ids for an event."""
    data = get_data(payload)
    family = event_type.split(".", 1)[0]

    if family == "user":
        return AuditTarget(USER_EVENTS, first_present(data, (("id",),)))

    if family == "email":
        return AuditTarget(USER_EVENTS, first_present(data, RELATED_USER_ID_PATHS))

    if family == "organization":
        return AuditTarget(
            ORGANIZATION_EVENTS,
            first_present(data, AUDIT_USER_ID_PATHS),
            first_present(data, (("id",),)),
        )

    if family == "organizationMembership":
        return AuditTarget(
            ORGANIZATION_EVENTS,
            first_present(data, MEMBERSHIP_USER_ID_PATHS),
            first_present(data, MEMBERSHIP_ORG_ID_PATHS),
        )

    if family == "role":
        clerk_org_id = first_present(data, RELATED_ORG_ID_PATHS)
        clerk_user_id = first_present(data, RELATED_USER_ID_PATHS)
        if clerk_org_id:
            return AuditTarget(ORGANIZATION_EVENTS, clerk_user_id, clerk_org_id)
        if not clerk_user_id:
            logger.warning(
                "Role event has neither user nor organization; recording with unknown user",
                extra={"event_type": event_type},
            )
        return AuditTarget(USER_EVENTS, clerk_user_id or UNKNOWN_USER)

    return AuditTarget(USER_EVENTS, first_present(data, RELATED_USER_ID_PATHS))


class IdentityAuditLog:
    """Reads and writes the identity audit tables."""

    def __init__(self, session: Session):
        self.session = session

    def is_duplicate(self, clerk_event_id: Optional[str]) -> bool:
        """True if an event with this external id was already recorded."""
        if not clerk_event_id:
            return False
        in_user_events = self.session.query(
            exists().where(UserEvent.clerk_event_id == clerk_event_id)
        ).scalar()
        if in_user_events:
            return True
        return bool(
            self.session.query(
                exists().where(OrganizationEvent.clerk_event_id == clerk_event_id)
            ).scalar()
        )

    def record(
        self,
        event_type: str,
        payload: Dict[str, Any],
        clerk_event_id: Optional[str] = None,
    ) -> bool:
        """
        Append one audit row for a processed event.

        The row is added in a SAVEPOINT; the caller's transaction commits it
        together with the event's own writes.

        Returns:
            True if the row was written, False if the write failed
        """
        target = resolve_audit_target(event_type, payload)

        if target.table == ORGANIZATION_EVENTS:
            row = OrganizationEvent(
                clerk_org_id=target.clerk_org_id,
                clerk_user_id=target.clerk_user_id,
                event_type=event_type,
                event_data=payload,
                clerk_event_id=clerk_event_id,
            )
        else:
            row = UserEvent(
                clerk_user_id=target.clerk_user_id,
                event_type=event_type,
                event_data=payload,
                clerk_event_id=clerk_event_id,
            )

        try:
            with self.session.begin_nested():
                self.session.add(row)
        except Exception:
            logger.warning(
                "Failed to store identity audit event",
                extra={
                    "event_type": event_type,
                    "clerk_event_id": clerk_event_id,
                    "table": target.table,
                },
                exc_info=True,
            )
            return False

        logger.debug(
            "Identity audit event stored",
            extra={
                "event_type": event_type,
                "table": target.table,
                "clerk_user_id": target.clerk_user_id,
                "clerk_org_id": target.clerk_org_id,
            },
        )
        return True
