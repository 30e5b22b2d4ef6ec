"""
User service for calendar staff and requesters.

Provides business logic for creating users, changing roles and maintaining
notification preferences.

Design:
- Email is unique and stored lower-cased
- A single role per user (see services/permissions.py)
- Notification preferences only hold keys allowed for the role tier; a role
  downgrade drops keys the new role may no longer set
"""

from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.src.models import User, UserRole
from backend.src.services.exceptions import ConflictError, NotFoundError, ValidationError
from backend.src.services.permissions import (
    DEPARTMENT_EDITABLE_FIELDS,
    allowed_preference_keys,
    parse_role,
)
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class UserService:
    """
    Service for managing users.

    Usage:
        >>> service = UserService(db_session)
        >>> user = service.create("approver@example.org", role="approver")
        >>> service.update_notification_preferences(user.email, {"email_on_new_requests": True})
    """

    def __init__(self, db: Session):
        """
        Initialize user service.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    def create(
        self,
        email: str,
        display_name: Optional[str] = None,
        role: str = UserRole.VIEWER.value,
        department: Optional[str] = None,
    ) -> User:
        """
        Create a new user.

        Raises:
            ValidationError: If email, role or department is invalid
            ConflictError: If email already exists
        """
        if not email or not email.strip():
            raise ValidationError("Email cannot be empty", field="email")

        email = email.strip().lower()
        if not self._is_valid_email(email):
            raise ValidationError(f"Invalid email format: {email}", field="email")

        if parse_role(role) is None:
            raise ValidationError(f"Invalid role: {role}", field="role")

        if department is not None and department not in DEPARTMENT_EDITABLE_FIELDS:
            raise ValidationError(f"Invalid department: {department}", field="department")

        if self.get_by_email(email) is not None:
            raise ConflictError(f"User with email '{email}' already exists")

        try:
            user = User(
                email=email,
                display_name=display_name,
                role=role,
                department=department,
                notification_preferences={},
            )
            self.db.add(user)
            self.db.commit()
            self.db.refresh(user)
        except IntegrityError as e:
            self.db.rollback()
            logger.error(f"Failed to create user '{email}': {e}")
            raise ConflictError(f"User with email '{email}' already exists")

        logger.info(f"Created user: {user.email} ({user.guid}) as {user.role}")
        return user

    def get_by_email(self, email: Optional[str]) -> Optional[User]:
        """Get a user by email (case-insensitive); None when unknown."""
        if not email:
            return None
        return self.db.query(User).filter(User.email == email.strip().lower()).first()

    def require_by_email(self, email: str) -> User:
        """
        Get a user by email.

        Raises:
            NotFoundError: If no user has this email
        """
        user = self.get_by_email(email)
        if user is None:
            raise NotFoundError("User", email)
        return user

    def update_role(self, email: str, role: str) -> User:
        """
        Change a user's role, pruning preferences the new role may not hold.

        Raises:
            NotFoundError: If the user does not exist
            ValidationError: If the role is invalid
        """
        if parse_role(role) is None:
            raise ValidationError(f"Invalid role: {role}", field="role")

        user = self.require_by_email(email)
        allowed = set(allowed_preference_keys(role))
        preferences = {
            key: value for key, value in (user.notification_preferences or {}).items()
            if key in allowed
        }

        user.role = role
        user.notification_preferences = preferences
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"Changed role of {user.email} to {role}")
        return user

    def update_notification_preferences(self, email: str, preferences: Dict[str, bool]) -> User:
        """
        Merge notification preferences for a user.

        Raises:
            NotFoundError: If the user does not exist
            ValidationError: If a key is not allowed for the role or a value is not boolean
        """
        user = self.require_by_email(email)
        allowed = set(allowed_preference_keys(user.role))

        for key, value in preferences.items():
            if key not in allowed:
                raise ValidationError(
                    f"Preference '{key}' is not available for role '{user.role}'",
                    field=key,
                )
            if not isinstance(value, bool):
                raise ValidationError(f"Preference '{key}' must be a boolean", field=key)

        merged = dict(user.notification_preferences or {})
        merged.update(preferences)
        user.notification_preferences = merged
        self.db.commit()
        self.db.refresh(user)
        return user

    def _is_valid_email(self, email: str) -> bool:
        """Basic validation - checks for @ and a dotted domain."""
        if not email or "@" not in email:
            return False

        local, domain = email.rsplit("@", 1)
        if not local or not domain:
            return False

        return "." in domain and not domain.startswith(".") and not domain.endswith(".")
