"""
Clerk Webhook Router for processing Clerk webhook events.

Handles the following event types:
- user.created, user.updated, user.deleted
- email.created
- organization.created, organization.updated, organization.deleted
- organizationMembership.created, organizationMembership.updated, organizationMembership.deleted
- role.created, role.updated, role.deleted

Every handler returns a SyncResult. The router owns the transaction:
1. Unknown event types are skipped without writing anything
2. Events whose external id is already in the audit log are skipped
3. The handler runs; on any failure its writes are rolled back
4. One audit row is added and committed together with the handler's writes

Delivery is at-least-once and may arrive out of order, so "updated" events
for unknown entities fall back to creating them.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from saas_identity.services.clerk_sync_service import (
    ClerkSyncService,
    MissingReferenceError,
    SyncAction,
)
from saas_identity.services.identity_audit import IdentityAuditLog
from saas_identity.services.payload_fields import (
    MEMBERSHIP_ORG_ID_PATHS,
    MEMBERSHIP_ROLE_PATHS,
    MEMBERSHIP_USER_ID_PATHS,
    RELATED_USER_ID_PATHS,
    ROLE_NAME_PATHS,
    extract_event_id,
    extract_primary_email,
    first_present,
    get_data,
)

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


# Failure reasons
MALFORMED_EVENT = "malformed_event"
REFERENCE_NOT_FOUND = "reference_not_found"
PROCESSING_ERROR = "processing_error"


@dataclass
class SyncResult:
    """Outcome of processing one webhook event."""

    status: SyncStatus
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    # Unknown types and duplicate event ids are not audited
    record_audit: bool = True

    @classmethod
    def applied(cls, **details) -> "SyncResult":
        return cls(SyncStatus.APPLIED, details=details)

    @classmethod
    def skipped(cls, reason: str, record_audit: bool = True, **details) -> "SyncResult":
        return cls(SyncStatus.SKIPPED, reason=reason, details=details, record_audit=record_audit)

    @classmethod
    def failed(cls, reason: str, **details) -> "SyncResult":
        return cls(SyncStatus.FAILED, reason=reason, details=details, record_audit=False)


class WebhookProcessingError(Exception):
    """Base class for errors raised while handling a webhook event."""

    reason = PROCESSING_ERROR

    def __init__(self, message: str, event_type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.event_type = event_type


class MalformedEventError(WebhookProcessingError):
    """The payload lacks a field the handler needs (HTTP 400)."""

    reason = MALFORMED_EVENT


class ReferenceNotFoundError(WebhookProcessingError):
    """The event refers to a user/organization not synced yet (HTTP 500, retried)."""

    reason = REFERENCE_NOT_FOUND


Handler = Callable[[Dict[str, Any]], SyncResult]


def _require(value: Optional[str], field_name: str, event_type: str) -> str:
    if not value:
        raise MalformedEventError(f"Missing {field_name} in {event_type} payload", event_type)
    return value


class ClerkWebhookRouter:
    """
    Routes Clerk webhook events to sync handlers.

    Usage:
        router = ClerkWebhookRouter(session)
        result = router.handle_event(payload, svix_id=request.headers["svix-id"])
    """

    def __init__(self, session: Session):
        """
        Initialize router with database session.

        Args:
            session: SQLAlchemy session; the router commits or rolls it back
        """
        self.session = session
        self.sync_service = ClerkSyncService(session)
        self.audit_log = IdentityAuditLog(session)
        self._handlers: Dict[str, Handler] = {
            # User events
            "user.created": self.handle_user_created,
            "user.updated": self.handle_user_updated,
            "user.deleted": self.handle_audit_only,
            "email.created": self.handle_audit_only,
            # Organization events
            "organization.created": self.handle_organization_created,
            "organization.updated": self.handle_organization_updated,
            "organization.deleted": self.handle_organization_deleted,
            # Membership events
            "organizationMembership.created": self.handle_membership_created,
            "organizationMembership.updated": self.handle_membership_updated,
            "organizationMembership.deleted": self.handle_membership_deleted,
            # Role events
            "role.created": self.handle_role_upserted,
            "role.updated": self.handle_role_upserted,
            "role.deleted": self.handle_role_deleted,
        }

    def register(self, event_type: str, handler: Handler) -> None:
        """Register (or replace) the handler for an event type."""
        self._handlers[event_type] = handler

    @property
    def supported_event_types(self) -> List[str]:
        return sorted(self._handlers)

    def handle_event(self, payload: Dict[str, Any], svix_id: Optional[str] = None) -> SyncResult:
        """
        Process one webhook event end to end.

        Args:
            payload: Parsed webhook body ({"type": ..., "data": {...}})
            svix_id: svix-id header, preferred as the deduplication key

        Returns:
            SyncResult; FAILED results have already been rolled back

        Raises:
            MalformedEventError: If the payload has no event type
        """
        event_type = payload.get("type") if isinstance(payload, dict) else None
        if not event_type or not isinstance(event_type, str):
            raise MalformedEventError("Missing event type")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning("Unsupported event type", extra={"event_type": event_type})
            return SyncResult.skipped("unknown_event_type", record_audit=False)

        event_id = extract_event_id(payload, svix_id)
        if self.audit_log.is_duplicate(event_id):
            logger.info(
                "Duplicate webhook event skipped",
                extra={"event_type": event_type, "clerk_event_id": event_id},
            )
            return SyncResult.skipped("duplicate", record_audit=False)

        try:
            result = handler(payload)
            self.session.flush()
        except WebhookProcessingError as e:
            return self._fail(event_type, payload, e.reason, e.message)
        except MissingReferenceError as e:
            return self._fail(event_type, payload, REFERENCE_NOT_FOUND, str(e))
        except Exception as e:
            logger.exception(
                "Unexpected error handling webhook event",
                extra={"event_type": event_type, "clerk_event_id": event_id},
            )
            return self._fail(event_type, payload, PROCESSING_ERROR, str(e))

        if result.record_audit:
            self.audit_log.record(event_type, payload, event_id)
        self.session.commit()

        logger.info(
            "Processed webhook event",
            extra={
                "event_type": event_type,
                "clerk_event_id": event_id,
                "status": result.status.value,
                "reason": result.reason,
            },
        )
        return result

    def _fail(self, event_type: str, payload: Dict[str, Any], reason: str, message: str) -> SyncResult:
        """Roll back, then record the failed event on a best-effort basis."""
        self.session.rollback()
        logger.error(
            "Failed to process webhook event",
            extra={"event_type": event_type, "reason": reason, "error": message},
        )

        # Recorded without the event id so a redelivery is not treated as a duplicate
        if self.audit_log.record(event_type, payload, None):
            try:
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.warning(
                    "Failed to commit audit row for failed event",
                    extra={"event_type": event_type},
                    exc_info=True,
                )

        return SyncResult.failed(reason, error=message)

    # =========================================================================
    # User Event Handlers
    # =========================================================================

    def handle_user_created(self, payload: Dict[str, Any]) -> SyncResult:
        """
        Handle user.created event.

        Users without any email address are not created; the event is still
        recorded for audit.
        """
        event_type = payload.get("type", "user.created")
        data = get_data(payload)
        clerk_user_id = _require(first_present(data, (("id",),)), "user id", event_type)

        email = extract_primary_email(data)
        if not email:
            logger.warning(
                "Skipping user creation due to missing email",
                extra={"clerk_user_id": clerk_user_id},
            )
            return SyncResult.skipped("missing_email", clerk_user_id=clerk_user_id)

        user, action = self.sync_service.create_user(
            clerk_user_id=clerk_user_id,
            email=email,
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            image_url=data.get("image_url") or data.get("profile_image_url"),
        )
        if action == SyncAction.UNCHANGED:
            return SyncResult.skipped("already_exists", clerk_user_id=clerk_user_id)

        return SyncResult.applied(action=action.value, user_id=user.id, clerk_user_id=clerk_user_id)

    def handle_user_updated(self, payload: Dict[str, Any]) -> SyncResult:
        """Handle user.updated event; unknown users are created instead."""
        data = get_data(payload)
        clerk_user_id = _require(first_present(data, (("id",),)), "user id", "user.updated")

        user, action = self.sync_service.update_user(
            clerk_user_id=clerk_user_id,
            email=extract_primary_email(data),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            image_url=data.get("image_url") or data.get("profile_image_url"),
        )
        if action == SyncAction.NOT_FOUND:
            logger.warning(
                "User not found for update; creating",
                extra={"clerk_user_id": clerk_user_id},
            )
            return self.handle_user_created(payload)

        return SyncResult.applied(action=action.value, user_id=user.id, clerk_user_id=clerk_user_id)

    def handle_audit_only(self, payload: Dict[str, Any]) -> SyncResult:
        """
        Handle user.deleted and email.created events.

        Users are never hard-deleted locally; these events are recorded in
        the audit log only.
        """
        data = get_data(payload)
        if payload.get("type") == "user.deleted":
            clerk_user_id = first_present(data, (("id",),))
        else:
            clerk_user_id = first_present(data, RELATED_USER_ID_PATHS)
        if not clerk_user_id:
            logger.warning(
                "Event has no user id; recording anyway",
                extra={"event_type": payload.get("type")},
            )
        return SyncResult.applied(action="recorded", clerk_user_id=clerk_user_id)

    # =========================================================================
    # Organization Event Handlers
    # =========================================================================

    def handle_organization_created(self, payload: Dict[str, Any]) -> SyncResult:
        event_type = payload.get("type", "organization.created")
        data = get_data(payload)
        clerk_org_id = _require(first_present(data, (("id",),)), "organization id", event_type)

        org, action = self.sync_service.create_organization(
            clerk_org_id=clerk_org_id,
            name=data.get("name"),
            slug=data.get("slug"),
            image_url=data.get("image_url") or data.get("logo_url"),
        )
        if action == SyncAction.UNCHANGED:
            return SyncResult.skipped("already_exists", clerk_org_id=clerk_org_id)

        return SyncResult.applied(action=action.value, organization_id=org.id, clerk_org_id=clerk_org_id)

    def handle_organization_updated(self, payload: Dict[str, Any]) -> SyncResult:
        """Handle organization.updated event; unknown organizations are created."""
        data = get_data(payload)
        clerk_org_id = _require(
            first_present(data, (("id",),)), "organization id", "organization.updated"
        )

        org, action = self.sync_service.update_organization(
            clerk_org_id=clerk_org_id,
            name=data.get("name"),
            slug=data.get("slug"),
            image_url=data.get("image_url") or data.get("logo_url"),
        )
        if action == SyncAction.NOT_FOUND:
            logger.warning(
                "Organization not found for update; creating",
                extra={"clerk_org_id": clerk_org_id},
            )
            return self.handle_organization_created(payload)

        return SyncResult.applied(action=action.value, organization_id=org.id, clerk_org_id=clerk_org_id)

    def handle_organization_deleted(self, payload: Dict[str, Any]) -> SyncResult:
        data = get_data(payload)
        clerk_org_id = _require(
            first_present(data, (("id",),)), "organization id", "organization.deleted"
        )

        action = self.sync_service.delete_organization(clerk_org_id)
        if action == SyncAction.NOT_FOUND:
            return SyncResult.skipped("not_found", clerk_org_id=clerk_org_id)
        return SyncResult.applied(action=action.value, clerk_org_id=clerk_org_id)

    # =========================================================================
    # Membership Event Handlers
    # =========================================================================

    def _membership_fields(self, data: Dict[str, Any], event_type: str):
        clerk_membership_id = _require(
            first_present(data, (("id",),)), "membership id", event_type
        )
        clerk_org_id = _require(
            first_present(data, MEMBERSHIP_ORG_ID_PATHS), "organization_id", event_type
        )
        clerk_user_id = _require(
            first_present(data, MEMBERSHIP_USER_ID_PATHS), "user_id", event_type
        )
        return clerk_membership_id, clerk_org_id, clerk_user_id

    def handle_membership_created(self, payload: Dict[str, Any]) -> SyncResult:
        """
        Handle organizationMembership.created event.

        Raises:
            ReferenceNotFoundError: If the user or organization is not synced yet
        """
        event_type = payload.get("type", "organizationMembership.created")
        data = get_data(payload)
        clerk_membership_id, clerk_org_id, clerk_user_id = self._membership_fields(data, event_type)
        role_name = first_present(data, MEMBERSHIP_ROLE_PATHS)

        if self.sync_service.get_membership(clerk_membership_id) is not None:
            logger.info(
                "Membership already exists, skipping",
                extra={"clerk_membership_id": clerk_membership_id},
            )
            return SyncResult.skipped(
                "already_exists", clerk_membership_id=clerk_membership_id
            )

        try:
            membership, action = self.sync_service.upsert_membership(
                clerk_membership_id=clerk_membership_id,
                clerk_user_id=clerk_user_id,
                clerk_org_id=clerk_org_id,
                role_name=role_name,
            )
        except MissingReferenceError as e:
            raise ReferenceNotFoundError(str(e), event_type)

        return SyncResult.applied(
            action=action.value,
            membership_id=membership.id,
            clerk_membership_id=clerk_membership_id,
            role=membership.role_name,
        )

    def handle_membership_updated(self, payload: Dict[str, Any]) -> SyncResult:
        """Handle organizationMembership.updated; unknown memberships are created."""
        event_type = payload.get("type", "organizationMembership.updated")
        data = get_data(payload)
        clerk_membership_id, _, _ = self._membership_fields(data, event_type)

        membership, action = self.sync_service.update_membership_role(
            clerk_membership_id, first_present(data, MEMBERSHIP_ROLE_PATHS)
        )
        if action == SyncAction.NOT_FOUND:
            logger.warning(
                "Membership not found for update; creating",
                extra={"clerk_membership_id": clerk_membership_id},
            )
            return self.handle_membership_created(payload)

        return SyncResult.applied(
            action=action.value,
            membership_id=membership.id,
            clerk_membership_id=clerk_membership_id,
            role=membership.role_name,
        )

    def handle_membership_deleted(self, payload: Dict[str, Any]) -> SyncResult:
        data = get_data(payload)
        clerk_membership_id = _require(
            first_present(data, (("id",),)), "membership id", "organizationMembership.deleted"
        )

        action = self.sync_service.delete_membership(clerk_membership_id)
        if action == SyncAction.NOT_FOUND:
            return SyncResult.skipped("not_found", clerk_membership_id=clerk_membership_id)
        return SyncResult.applied(action=action.value, clerk_membership_id=clerk_membership_id)

    # =========================================================================
    # Role Event Handlers
    # =========================================================================

    def handle_role_upserted(self, payload: Dict[str, Any]) -> SyncResult:
        """Handle role.created / role.updated events."""
        event_type = payload.get("type", "role.created")
        data = get_data(payload)
        role_name = _require(first_present(data, ROLE_NAME_PATHS), "role name", event_type)

        role, action = self.sync_service.upsert_role(role_name, data.get("description"))
        return SyncResult.applied(action=action.value, role=role.name)

    def handle_role_deleted(self, payload: Dict[str, Any]) -> SyncResult:
        """Handle role.deleted event; ADMIN and USER are never deleted."""
        data = get_data(payload)
        role_name = _require(first_present(data, ROLE_NAME_PATHS), "role name", "role.deleted")

        action = self.sync_service.delete_role(role_name)
        if action == SyncAction.PROTECTED:
            return SyncResult.skipped("protected_role", role=role_name)
        if action == SyncAction.NOT_FOUND:
            return SyncResult.skipped("not_found", role=role_name)
        return SyncResult.applied(action=action.value, role=role_name)
