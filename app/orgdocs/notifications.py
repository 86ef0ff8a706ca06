from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.orgdocs.models import Notification

logger = logging.getLogger(__name__)

NOTIFICATION_BACKENDS = ("database", "log")


class NotificationSink:
    """Accepts "notify user X about event Y with payload Z" calls."""

    def notify(
        self,
        *,
        user_id: int,
        entity_type: str,
        entity_id: str,
        title: str,
        message: str,
        custom_data: dict[str, Any] | None = None,
    ) -> None:
        raise NotImplementedError


@dataclass
class DatabaseNotificationSink(NotificationSink):
    session: Session

    def notify(
        self,
        *,
        user_id: int,
        entity_type: str,
        entity_id: str,
        title: str,
        message: str,
        custom_data: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            Notification(
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                title=title,
                message=message,
                custom_data=custom_data or None,
            )
        )


@dataclass
class LoggingNotificationSink(NotificationSink):
    sent: list[dict[str, Any]] = field(default_factory=list)

    def notify(
        self,
        *,
        user_id: int,
        entity_type: str,
        entity_id: str,
        title: str,
        message: str,
        custom_data: dict[str, Any] | None = None,
    ) -> None:
        payload = {
            "user_id": user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "title": title,
            "message": message,
            "custom_data": custom_data or {},
        }
        self.sent.append(payload)
        logger.info("Notification user_id=%s entity_type=%s entity_id=%s title=%r", user_id, entity_type, entity_id, title)


def notification_sink_from_config(config: dict, session: Session) -> NotificationSink:
    backend = (config.get("NOTIFICATION_BACKEND") or "database").strip().lower()
    if backend == "log":
        return LoggingNotificationSink()
    if backend not in NOTIFICATION_BACKENDS:
        raise RuntimeError(f"Unsupported NOTIFICATION_BACKEND: {backend!r}")
    return DatabaseNotificationSink(session=session)
