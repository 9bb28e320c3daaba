"""
User Directory Service
Resolves the authenticated (user_id, role) pair handed over by the auth layer
into a users row, registering unknown ids on first sight.
"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from models import User, UserRole
from utils.exception_handler import AuthorizationError, NotFound, ValidationError

logger = logging.getLogger(__name__)


class Actor(NamedTuple):
    """Authenticated caller of a service operation"""
    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def parse_role(value: Optional[str]) -> UserRole:
    """Map a role string to UserRole; unknown values are rejected"""
    if not value:
        return UserRole.MEMBER
    try:
        return UserRole(value.strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown role '{value}'")


class UserDirectory:
    """Lookup and lazy registration of platform users"""

    @classmethod
    def ensure_user(cls, session: Session, user_id: str, role: UserRole,
                    name: Optional[str] = None, email: Optional[str] = None) -> User:
        """Return the users row for user_id, creating it with the given role when missing"""
        if not user_id:
            raise AuthorizationError("Authentication required")

        user = session.get(User, user_id)
        if user is None:
            user = User(id=user_id, role=role.value, name=name, email=email, rating=0, total_earnings=0)
            session.add(user)
            session.flush()
            logger.info(f"👤 USER_REGISTERED: {user_id} as {role.value}")
        elif user.role != role.value:
            logger.info(f"👤 USER_ROLE_UPDATED: {user_id} {user.role} -> {role.value}")
            user.role = role.value
        return user

    @classmethod
    def get_user(cls, session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    @classmethod
    def actor_for(cls, session: Session, user_id: str, role_value: Optional[str]) -> Actor:
        """Build an Actor from raw auth values, registering the user if needed"""
        role = parse_role(role_value)
        cls.ensure_user(session, user_id, role)
        return Actor(user_id=user_id, role=role)
