"""
Field extraction from Clerk webhook payloads.

Clerk payload shapes vary between event types (and have changed over time),
so most fields are looked up through an ordered list of candidate paths;
the first present, non-empty value wins.

Each *_PATHS constant below is one such strategy list.
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

FieldPath = Tuple[str, ...]

# organizationMembership.* events
MEMBERSHIP_USER_ID_PATHS: Tuple[FieldPath, ...] = (
    ("public_user_data", "user_id"),
    ("user_id",),
)
MEMBERSHIP_ORG_ID_PATHS: Tuple[FieldPath, ...] = (
    ("organization_id",),
    ("organization", "id"),
)
MEMBERSHIP_ROLE_PATHS: Tuple[FieldPath, ...] = (
    ("role",),
    ("public_metadata", "role"),
    ("public_user_data", "role"),
)

# role.* events
ROLE_NAME_PATHS: Tuple[FieldPath, ...] = (
    ("name",),
    ("key",),
)

# Owner lookups for role.* and email.* events
RELATED_USER_ID_PATHS: Tuple[FieldPath, ...] = (
    ("user_id",),
    ("user", "id"),
)
RELATED_ORG_ID_PATHS: Tuple[FieldPath, ...] = (
    ("organization_id",),
    ("organization", "id"),
)

# Best-effort actor lookup for organization audit rows
AUDIT_USER_ID_PATHS: Tuple[FieldPath, ...] = (
    ("public_user_data", "user_id"),
    ("user_id",),
    ("user", "id"),
    ("created_by",),
    ("updated_by",),
    ("public_metadata", "user_id"),
    ("private_metadata", "user_id"),
)


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def get_path(source: Any, path: FieldPath) -> Any:
    """Walk nested mappings; None if any step is missing."""
    current = source
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def first_present(source: Any, paths: Iterable[FieldPath]) -> Optional[str]:
    """
    Return the first non-empty scalar found along the candidate paths.

    Args:
        source: Payload (or payload["data"]) mapping
        paths: Ordered candidate paths

    Returns:
        The value as a string, or None if no path yields one
    """
    for path in paths:
        value = _as_text(get_path(source, path))
        if value is not None:
            return value
    return None


def get_data(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """The event's "data" object ({} when missing or not an object)."""
    data = payload.get("data") if isinstance(payload, Mapping) else None
    return data if isinstance(data, dict) else {}


def extract_event_id(
    payload: Mapping[str, Any],
    svix_id: Optional[str] = None,
) -> Optional[str]:
    """
    Determine the external event id used for deduplication.

    Order: svix-id header, top-level "id", "event_id", then
    "<instance_id>_<timestamp>" when both are present. data.id is never
    used since it identifies the resource, not the event.
    """
    event_id = _as_text(svix_id)
    if event_id:
        return event_id

    event_id = first_present(payload, (("id",), ("event_id",)))
    if event_id:
        return event_id

    instance_id = _as_text(payload.get("instance_id"))
    timestamp = _as_text(payload.get("timestamp"))
    if instance_id and timestamp:
        return f"{instance_id}_{timestamp}"

    return None


def extract_primary_email(data: Mapping[str, Any]) -> Optional[str]:
    """
    Extract the primary email from Clerk user data.

    Order:
    1. email_addresses entry whose id matches primary_email_address_id
    2. First email_addresses entry ("email_address", then "email")
    3. Top-level "primary_email_address", then "email"
    """
    email_addresses = data.get("email_addresses")
    if isinstance(email_addresses, list) and email_addresses:
        primary_id = data.get("primary_email_address_id")
        if primary_id:
            for entry in email_addresses:
                if isinstance(entry, Mapping) and entry.get("id") == primary_id:
                    email = first_present(entry, (("email_address",), ("email",)))
                    if email:
                        return email

        first = email_addresses[0]
        if isinstance(first, Mapping):
            email = first_present(first, (("email_address",), ("email",)))
            if email:
                return email

    return first_present(data, (("primary_email_address",), ("email",)))
