"""
User model for calendar staff and requesters.

Design Rationale:
- A single authoritative role field derives every permission (see
  services/permissions.py); there are no overlapping per-flag permissions
- Email is unique and is the identity recorded in status history entries
- notification_preferences only ever holds keys allowed for the role tier
- department grants edit access to a small set of logistics fields
  (security: door times, maintenance: setup/teardown)
"""

import enum
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin
from backend.src.models.types import JSONBType
from backend.src.utils.formatting import utcnow


class UserRole(str, enum.Enum):
    """
    Role hierarchy, lowest to highest.

    - VIEWER: View calendar only
    - REQUESTER: viewer + submit/manage own reservation requests
    - APPROVER: requester + approve/reject reservations, edit/delete events
    - ADMIN: approver + administration modules
    """
    VIEWER = "viewer"
    REQUESTER = "requester"
    APPROVER = "approver"
    ADMIN = "admin"


class User(Base, GuidMixin):
    """
    User model.

    Attributes:
        id: Primary key (internal, never exposed)
        uuid: UUIDv7 for external identification (inherited from GuidMixin)
        guid: GUID string property (usr_xxx, inherited from GuidMixin)
        email: Unique email address (lower-cased)
        display_name: Name shown in history entries
        role: UserRole value
        department: Optional department (security, maintenance)
        notification_preferences: Dict of preference key -> bool
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "users"

    GUID_PREFIX = "usr"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    role = Column(String(32), nullable=False, default=UserRole.VIEWER.value)
    department = Column(String(64), nullable=True)
    notification_preferences = Column(JSONBType(), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def name(self) -> Optional[str]:
        """Display name with fallback to the email address."""
        return self.display_name or self.email

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role={self.role})>"

    def __str__(self) -> str:
        return f"{self.name} ({self.role})"
