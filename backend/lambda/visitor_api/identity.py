"""identity.py — Map verified token claims (or an internal-key actor) to an Identity."""
from __future__ import annotations

from typing import Any, Dict, Optional

from visitor_api.config import VALID_ROLES, logger
from visitor_api.errors import Forbidden, Unauthorized
from visitor_api.models import Identity

__all__ = ["resolve_identity"]


def _clean(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def resolve_identity(claims: Dict[str, Any], users) -> Identity:
    """Build the caller's Identity.

    The user record owns role and household. The ``custom:role`` /
    ``custom:householdId`` token claims are only read for callers that have
    no user record yet. Internal-key callers name themselves with
    ``actor_id`` and must have a user record.
    """
    internal = claims.get("auth_mode") == "internal-key"
    if internal:
        uid = _clean(claims.get("actor_id"))
        if not uid:
            raise Unauthorized("Internal key requests must name an actor")
    else:
        uid = _clean(claims.get("sub"))
        if not uid:
            raise Unauthorized("Token is missing a subject")

    profile = users.get(uid) or {}
    if profile:
        role = _clean(profile.get("role"))
        household_id = _clean(profile.get("householdId"))
        email = _clean(profile.get("email")) or _clean(claims.get("email"))
        claimed = _clean(claims.get("custom:role"))
        if claimed and role and claimed.lower() != role.lower():
            logger.warning("[WARNING] role claim %s for %s overridden by user record (%s)", claimed, uid, role)
    elif internal:
        logger.warning("[WARNING] no user profile for internal actor %s", uid)
        raise Forbidden("User profile not found")
    else:
        role = _clean(claims.get("custom:role"))
        household_id = _clean(claims.get("custom:householdId"))
        email = _clean(claims.get("email"))
        if role is None:
            logger.warning("[WARNING] no user profile for %s", uid)
            raise Forbidden("User profile not found")

    role = (role or "").lower()
    if role not in VALID_ROLES:
        raise Forbidden(f"Unknown role '{role}'" if role else "User has no role assigned")
    return Identity(uid=uid, role=role, household_id=household_id, email=email or "")
