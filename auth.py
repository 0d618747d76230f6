from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select

from models import User
from utils import ApiError, AuthContext, normalize_role


ROLE_MANAGER = "MANAGER"
ROLE_MEMBER = "MEMBER"

PRINCIPAL_HEADER = "X-User-Id"


# Actions whose principal travels in the body (nominatorId / voterId) are PUBLIC here:
# eligibility is a domain rule enforced by the action itself.
STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "PERIOD_CREATE": ["ADMIN", "MANAGER"],
    "PERIOD_LIST": ["PUBLIC"],
    "PERIOD_CURRENT": ["PUBLIC"],
    "PERIOD_CLOSE": ["ADMIN", "MANAGER"],
    "PERIOD_RESULTS": ["PUBLIC"],
    "PERIOD_NOMINATIONS": ["PUBLIC"],
    "PERIOD_CANDIDATES": ["PUBLIC"],
    "PERIOD_VOTES": ["PUBLIC"],
    "PERIOD_SUMMARY": ["PUBLIC"],
    "NOMINATION_CREATE": ["PUBLIC"],
    "NOMINATION_WITHDRAW": ["PUBLIC"],
    "VOTE_CAST": ["PUBLIC"],
    "USER_GRANTS": ["PUBLIC"],
    "LEADERBOARD_GRANTS": ["PUBLIC"],
    "AUDIT_QUERY": ["ADMIN"],
}


def resolve_principal(db, user_id: Any) -> Optional[AuthContext]:
    """
    Map the id forwarded by the upstream auth gateway onto the user directory.

    No header means an anonymous caller. A header naming an unknown or inactive
    user is rejected outright rather than downgraded to anonymous.
    """

    uid = str(user_id or "").strip()
    if not uid:
        return None

    usr = db.execute(select(User).where(User.id == uid)).scalar_one_or_none()
    if not usr:
        raise ApiError("AUTH_INVALID", "Unknown principal")
    if not bool(usr.active):
        raise ApiError("FORBIDDEN", "User is disabled")

    return AuthContext(valid=True, userId=str(usr.id), name=str(usr.name or ""), role=normalize_role(usr.role))


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"


def assert_permission(role: str, action: str) -> None:
    role_u = normalize_role(role) or "PUBLIC"
    action_u = str(action or "").upper().strip()

    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if allowed is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if "PUBLIC" in allowed:
        return
    if role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if role_u not in allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def assert_acting_as(auth: Optional[AuthContext], principal_id: str) -> None:
    """When a gateway principal is present it must be the one named in the body."""

    if auth and auth.valid and str(auth.userId) != str(principal_id):
        raise ApiError("FORBIDDEN", "Cannot act on behalf of another user")
