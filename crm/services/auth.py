# crm/services/auth.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from jose import JWTError, jwt

from crm.core.config import settings
from crm.core.exceptions import AuthenticationError, AuthorizationError
from crm.core.logging import bind_tenant, get_structlog_logger

logger = get_structlog_logger(__name__)

MANAGER_ROLES = ("admin", "manager")


@dataclass(frozen=True)
class CurrentUser:
    id: int
    entity_id: int
    role: str
    email: Optional[str] = None


def _extract_token(request: Request) -> Optional[str]:
    """Extract token from Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    # Support both "Bearer <token>" and "Token <token>" formats
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() not in ("bearer", "token"):
        return None
    return parts[1]


def decode_token(token: str) -> Dict[str, Any]:
    """Verify and decode a JWT issued by the identity service."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"verify_aud": False},
        )
    except JWTError as e:
        raise AuthenticationError("Invalid authentication token", details={"error": str(e)}) from e

    exp = payload.get("exp")
    if exp is None or datetime.fromtimestamp(exp, tz=timezone.utc) < datetime.now(timezone.utc):
        raise AuthenticationError("Token has expired")
    if not payload.get("active", True):
        raise AuthorizationError("User account is inactive")
    return payload


def user_from_claims(payload: Dict[str, Any]) -> CurrentUser:
    try:
        return CurrentUser(
            id=int(payload["sub"]),
            entity_id=int(payload["entity_id"]),
            role=str(payload.get("role") or "sales_rep"),
            email=payload.get("email"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise AuthenticationError("Token is missing user or entity claims") from e


async def get_current_user(request: Request) -> CurrentUser:
    token = _extract_token(request)
    if not token:
        logger.warning("auth.missing_token", path=request.url.path, method=request.method)
        raise AuthenticationError("Authentication token is required")

    user = user_from_claims(decode_token(token))
    bind_tenant(user.entity_id, user.id)
    logger.debug("auth.authenticated", user_id=user.id, role=user.role, path=request.url.path)
    return user


def require_role(*roles: str):
    """Dependency factory restricting a route to the given roles."""
    allowed = set(roles)

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in allowed:
            logger.warning("auth.forbidden", user_id=user.id, role=user.role, required=sorted(allowed))
            raise AuthorizationError(
                "Insufficient role for this operation",
                details={"required_roles": sorted(allowed)},
            )
        return user

    return _check
