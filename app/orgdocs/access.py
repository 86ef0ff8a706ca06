from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import jsonify

from app.orgdocs.auth import current_user
from app.orgdocs.db import db_session
from app.orgdocs.models import OrganizationMember, User


def is_active_member(user: User | None, organization_id: int) -> bool:
    if not user or not user.is_active:
        return False
    s = db_session()
    m = (
        s.query(OrganizationMember)
        .filter(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user.id,
        )
        .one_or_none()
    )
    return bool(m and m.is_active)


def require_membership(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Guard for routes taking an `org_id` URL argument: 401 when not logged in,
    403 when the user is not an active member of that organization.
    """

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user = current_user()
        if not user or not user.is_active:
            return jsonify({"ok": False, "error": "Authentication required."}), 401
        if not is_active_member(user, int(kwargs["org_id"])):
            return jsonify({"ok": False, "error": "Not a member of this organization."}), 403
        return fn(*args, **kwargs)

    return wrapped
