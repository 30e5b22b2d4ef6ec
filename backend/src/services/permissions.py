"""
Role-based permissions.

A single role per user derives every permission. Roles are ordered; a user
holding a role also holds every permission of the roles below it.

Role hierarchy (lowest to highest):
- viewer: view calendar only
- requester: viewer + submit reservation requests, delete and restore
  events they created
- approver: requester + approve/reject reservations, edit/delete events
- admin: approver + administration (restore deleted events, migrations)
"""

from typing import Dict, List, Optional

from backend.src.models import Event, EventStatus, User, UserRole


ROLE_HIERARCHY: Dict[UserRole, int] = {
    UserRole.VIEWER: 0,
    UserRole.REQUESTER: 1,
    UserRole.APPROVER: 2,
    UserRole.ADMIN: 3,
}

ROLE_PERMISSIONS: Dict[UserRole, Dict[str, bool]] = {
    UserRole.VIEWER: {
        "can_view_calendar": True,
        "can_submit_reservation": False,
        "can_edit_events": False,
        "can_delete_events": False,
        "can_approve_reservations": False,
        "is_admin": False,
    },
    UserRole.REQUESTER: {
        "can_view_calendar": True,
        "can_submit_reservation": True,
        "can_edit_events": False,
        "can_delete_events": False,
        "can_approve_reservations": False,
        "is_admin": False,
    },
    UserRole.APPROVER: {
        "can_view_calendar": True,
        "can_submit_reservation": True,
        "can_edit_events": True,
        "can_delete_events": True,
        "can_approve_reservations": True,
        "is_admin": False,
    },
    UserRole.ADMIN: {
        "can_view_calendar": True,
        "can_submit_reservation": True,
        "can_edit_events": True,
        "can_delete_events": True,
        "can_approve_reservations": True,
        "is_admin": True,
    },
}

# Event fields editable through the calendar
EDITABLE_EVENT_FIELDS = [
    "title", "description", "start_at", "end_at", "location_ids", "categories",
    "setup_at", "door_open_at", "door_close_at", "teardown_at",
]

# Logistics fields a department may edit without the approver role
DEPARTMENT_EDITABLE_FIELDS: Dict[str, List[str]] = {
    "security": ["door_open_at", "door_close_at"],
    "maintenance": ["setup_at", "teardown_at"],
}

# Notification preference keys by role tier
REQUESTER_PREF_KEYS = [
    "email_on_confirmations",
    "email_on_status_updates",
    "email_on_admin_changes",
]
REVIEWER_PREF_KEYS = [
    "email_on_new_requests",
    "email_on_edit_requests",
]
ALL_PREF_KEYS = REQUESTER_PREF_KEYS + REVIEWER_PREF_KEYS

# Minimum role to move an event into a status
TRANSITION_ROLES: Dict[EventStatus, UserRole] = {
    EventStatus.PENDING: UserRole.REQUESTER,
    EventStatus.PUBLISHED: UserRole.APPROVER,
    EventStatus.REJECTED: UserRole.APPROVER,
    EventStatus.DELETED: UserRole.APPROVER,
}

RESTORE_ROLE = UserRole.ADMIN

# Minimum role for acting on events one created
OWNER_ROLE = UserRole.REQUESTER


def parse_role(value: Optional[str]) -> Optional[UserRole]:
    """Parse a role name; None for unknown names."""
    try:
        return UserRole(value)
    except ValueError:
        return None


def effective_role(user: Optional[User]) -> UserRole:
    """Role of a user; unknown users and invalid roles are viewers."""
    if user is None:
        return UserRole.VIEWER
    return parse_role(user.role) or UserRole.VIEWER


def has_role(user: Optional[User], required: UserRole) -> bool:
    """Check whether the user holds at least the required role."""
    return ROLE_HIERARCHY[effective_role(user)] >= ROLE_HIERARCHY[required]


def get_permissions(user: Optional[User]) -> dict:
    """All permission flags of a user, plus role and department data."""
    role = effective_role(user)
    department = user.department if user is not None else None
    editable = DEPARTMENT_EDITABLE_FIELDS.get(department or "", [])
    return {
        "role": role.value,
        "department": department,
        "department_editable_fields": list(editable),
        "can_edit_department_fields": bool(editable),
        "editable_fields": [name for name in EDITABLE_EVENT_FIELDS if can_edit_field(user, name)],
        **ROLE_PERMISSIONS[role],
    }


def can_edit_field(user: Optional[User], field: str) -> bool:
    """Approvers edit every field; departments edit their logistics fields."""
    if has_role(user, UserRole.APPROVER):
        return True
    department = user.department if user is not None else None
    return field in DEPARTMENT_EDITABLE_FIELDS.get(department or "", [])


def allowed_preference_keys(role: Optional[str]) -> List[str]:
    """Notification preference keys a role may set."""
    parsed = parse_role(role)
    if parsed in (UserRole.APPROVER, UserRole.ADMIN):
        return list(ALL_PREF_KEYS)
    if parsed == UserRole.REQUESTER:
        return list(REQUESTER_PREF_KEYS)
    return []


def is_owner(user: Optional[User], event: Optional[Event]) -> bool:
    """Check whether the user created the event."""
    if user is None or event is None or not event.created_by_email:
        return False
    return event.created_by_email.lower() == user.email.lower()


def can_transition(user: Optional[User], target: EventStatus, event: Optional[Event] = None) -> bool:
    """
    Check whether the user may move an event into target status.

    Owners holding at least the requester role may delete their own events.
    """
    required = TRANSITION_ROLES.get(target)
    if required is None:
        return False
    if has_role(user, required):
        return True
    return target == EventStatus.DELETED and _acts_as_owner(user, event)


def can_restore(user: Optional[User], event: Optional[Event] = None) -> bool:
    return has_role(user, RESTORE_ROLE) or _acts_as_owner(user, event)


def _acts_as_owner(user: Optional[User], event: Optional[Event]) -> bool:
    return has_role(user, OWNER_ROLE) and is_owner(user, event)
