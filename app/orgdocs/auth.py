from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.orgdocs.audit import record_event
from app.orgdocs.db import db_session
from app.orgdocs.models import User
from app.orgdocs.utils import utcnow

logger = logging.getLogger(__name__)

bp = Blueprint("auth", __name__)

_UNAUTHENTICATED_PREFIXES = ("/static/", "/health", "/healthz")


class LoginThrottle:
    """Sliding-window count of login attempts per client address."""

    def __init__(self) -> None:
        self._attempts: dict[str, list[datetime]] = defaultdict(list)
        self._lock = threading.Lock()

    def is_limited(self, key: str, *, limit: int, window_seconds: int) -> bool:
        cutoff = utcnow() - timedelta(seconds=window_seconds)
        with self._lock:
            recent = [t for t in self._attempts[key] if t > cutoff]
            self._attempts[key] = recent
            return len(recent) >= limit

    def record(self, key: str) -> None:
        with self._lock:
            self._attempts[key].append(utcnow())

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)


_throttle = LoginThrottle()


def current_user() -> User | None:
    return getattr(g, "current_user", None)


def load_current_user() -> None:
    """
    Resolve g.current_user from the signed session cookie and stamp a
    request_id used by audit events and log lines.
    """
    g.request_id = getattr(g, "request_id", None) or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(_UNAUTHENTICATED_PREFIXES):
        return

    raw_id = session.get("user_id")
    if not raw_id:
        return
    try:
        user = db_session().get(User, int(raw_id))
    except (SQLAlchemyError, ValueError) as e:
        logger.error("Could not load session user %r, clearing session: %s", raw_id, e)
        session.pop("user_id", None)
        return
    if user is None or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


@bp.post("/login")
def login_post():
    data = (request.get_json(silent=True) if request.is_json else request.form) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    ip = request.remote_addr or "unknown"

    limit = current_app.config.get("LOGIN_RATE_LIMIT", 5)
    window = current_app.config.get("LOGIN_RATE_WINDOW_SECONDS", 300)
    if _throttle.is_limited(ip, limit=limit, window_seconds=window):
        logger.warning("Login rate limit hit (ip=%s)", ip)
        return jsonify({"ok": False, "error": "Too many login attempts. Try again later."}), 429
    _throttle.record(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        return jsonify({"ok": False, "error": "Invalid credentials."}), 401

    session["user_id"] = user.id
    _throttle.reset(ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    logger.info("User %s logged in (request_id=%s)", user.id, g.get("request_id"))
    return jsonify({"ok": True, "user": {"id": user.id, "email": user.email, "handle": user.handle}})


@bp.post("/logout")
def logout():
    user = current_user()
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"ok": True})
