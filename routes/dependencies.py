"""
Shared request plumbing for the API routers: the authenticated caller handed over
by the auth layer, JSON body parsing and typed field extraction.
"""

import logging
from typing import Any, NamedTuple, Optional

import orjson
from fastapi import Header, Request
from sqlalchemy.orm import Session

from services.user_directory import Actor, UserDirectory
from utils.exception_handler import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)


class RequestAuth(NamedTuple):
    """Raw (user id, role) pair from the X-User-Id / X-User-Role headers"""
    user_id: Optional[str]
    role: Optional[str]

    def actor(self, session: Session) -> Actor:
        if not self.user_id:
            raise AuthorizationError("Authentication required")
        return UserDirectory.actor_for(session, self.user_id.strip(), self.role)


def request_auth(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> RequestAuth:
    return RequestAuth(x_user_id, x_user_role)


async def json_body(request: Request) -> dict:
    """Parse the request body with orjson; an empty body is an empty object"""
    body = await request.body()
    if not body:
        return {}
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError as e:
        logger.warning(f"⚠️ INVALID_JSON: {request.method} {request.url.path}: {e}")
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def required(body: dict, key: str) -> Any:
    value = body.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{key} is required")
    return value


def int_field(body: dict, key: str) -> int:
    value = required(body, key)
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def optional_bool(body: dict, key: str) -> Optional[bool]:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false")
    return value
