"""
Invalidation cascade for qualifying edits.

Steps, in order:
1. create the new DocumentVersion
2. select every currently valid acknowledgment of the document
3. bulk-flag them requires_reacknowledgment=True, invalidated_at=now
4. notify each affected user

Steps 1-3 run inside the caller's transaction (`run_invalidation_cascade`
never commits). Step 4 must only run after that transaction committed; if it
fails, `replay_reacknowledgment_notifications` re-sends from the stored state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import select

from app.orgdocs.audit import record_event
from app.orgdocs.constants import FALLBACK_CHANGE_SUMMARY, NOTIFY_REACKNOWLEDGMENT_REQUIRED
from app.orgdocs.modules.document_control.acknowledgments import (
    mark_requires_reacknowledgment,
    select_valid_acknowledgments,
)
from app.orgdocs.modules.document_control.errors import (
    CascadeStepError,
    NotFoundError,
    StorageError,
    ValidationError,
    storage_errors,
)
from app.orgdocs.modules.document_control.models import Document, DocumentAcknowledgment
from app.orgdocs.modules.document_control.versioning import create_version_on_update, require_version

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.orgdocs.models import User
    from app.orgdocs.modules.document_control.change_detection import ChangeDetectionResult
    from app.orgdocs.modules.document_control.models import DocumentVersion
    from app.orgdocs.notifications import NotificationSink

logger = logging.getLogger(__name__)


@dataclass
class CascadeOutcome:
    version: "DocumentVersion | None"
    requires_reacknowledgment: bool
    affected_user_ids: list[int] = field(default_factory=list)
    notifications_sent: int = 0

    @property
    def version_number(self) -> int | None:
        return self.version.version_number if self.version is not None else None


def run_invalidation_cascade(
    s: "Session",
    document: Document,
    actor: "User",
    classification: "ChangeDetectionResult",
) -> CascadeOutcome:
    """Steps 1-3. `document` must already carry its new field values."""
    version = create_version_on_update(s, document, actor, classification)
    outcome = CascadeOutcome(version=version, requires_reacknowledgment=classification.requires_reacknowledgment)

    if version is None or not classification.requires_reacknowledgment:
        logger.info(
            "Document update does not require re-acknowledgment document_id=%s version=%s summary=%r",
            document.id,
            document.version,
            classification.change_summary,
        )
        return outcome

    try:
        acks = select_valid_acknowledgments(s, document.id)
        if not acks:
            logger.info("No existing acknowledgments to invalidate document_id=%s", document.id)
            return outcome

        with storage_errors("invalidate acknowledgments", document_id=document.id, version=version.version_number):
            updated = mark_requires_reacknowledgment(
                s,
                document.id,
                [a.id for a in acks],
                invalidated_by_user_id=actor.id,
            )
    except StorageError as e:
        logger.error(
            "Invalidation cascade step failed step=invalidate document_id=%s target_version=%s",
            document.id,
            version.version_number,
        )
        raise CascadeStepError(
            document_id=document.id,
            version_number=version.version_number,
            step="invalidate",
        ) from e

    outcome.affected_user_ids = [a.user_id for a in acks]
    record_event(
        s,
        actor=actor,
        action="doc.acknowledgments_invalidate",
        entity_type="Document",
        entity_id=str(document.id),
        reason="Significant document changes detected",
        metadata={
            "version_number": version.version_number,
            "affected_users": outcome.affected_user_ids,
            "rows_updated": updated,
            "change_summary": classification.change_summary,
        },
    )
    logger.info(
        "Document acknowledgments invalidated document_id=%s new_version=%s affected_users=%s summary=%r",
        document.id,
        version.version_number,
        len(acks),
        classification.change_summary,
    )
    return outcome


def send_reacknowledgment_notifications(
    sink: "NotificationSink",
    *,
    document: Document,
    user_ids: list[int],
    new_version: int,
    change_summary: str | None,
) -> int:
    """Step 4: one notification per affected user. Returns the number sent."""
    summary = change_summary or FALLBACK_CHANGE_SUMMARY
    for user_id in user_ids:
        sink.notify(
            user_id=user_id,
            entity_type=NOTIFY_REACKNOWLEDGMENT_REQUIRED,
            entity_id=str(document.id),
            title="Document Re-acknowledgment Required",
            message=f'"{document.title}" has been updated and requires re-acknowledgment. Changes: {summary}',
            custom_data={
                "document_id": document.id,
                "document_title": document.title,
                "change_summary": summary,
                "previous_version": new_version - 1,
                "new_version": new_version,
                "requires_reacknowledgment": True,
            },
        )
    logger.info(
        "Re-acknowledgment notifications sent document_id=%s new_version=%s count=%s",
        document.id,
        new_version,
        len(user_ids),
    )
    return len(user_ids)


def stale_user_ids(s: "Session", document_id: int, version_number: int) -> list[int]:
    """Users whose acknowledgment is stale and predates `version_number`."""
    with storage_errors("list stale acknowledgments", document_id=document_id, version=version_number):
        return list(
            s.scalars(
                select(DocumentAcknowledgment.user_id)
                .where(
                    DocumentAcknowledgment.document_id == document_id,
                    DocumentAcknowledgment.requires_reacknowledgment.is_(True),
                    DocumentAcknowledgment.acknowledged_version < version_number,
                )
                .order_by(DocumentAcknowledgment.user_id.asc())
            )
        )


def _coerce_user_ids(user_ids: object) -> list[int]:
    if not isinstance(user_ids, (list, tuple)):
        raise ValidationError("user_ids must be a list of integers.")
    out: list[int] = []
    for uid in user_ids:
        # bool is an int subclass; reject it explicitly
        if isinstance(uid, bool) or not isinstance(uid, int):
            raise ValidationError("user_ids must be a list of integers.")
        if uid not in out:
            out.append(uid)
    return out


def replay_reacknowledgment_notifications(
    s: "Session",
    sink: "NotificationSink",
    *,
    document_id: int,
    version_number: int,
    user_ids: list[int] | None = None,
) -> int:
    """
    Re-run step 4 after a CascadeStepError(step="notify").

    Only users whose acknowledgment is stale for `version_number` are
    notified; `user_ids` (typically the error's list) narrows that set and
    never widens it. Versions that did not invalidate anything send nothing.
    The caller commits.
    """
    document = s.get(Document, document_id)
    if document is None:
        raise NotFoundError(f"Document {document_id} not found.")
    version = require_version(s, document_id, version_number)
    requested = _coerce_user_ids(user_ids) if user_ids is not None else None

    if not (version.change_metadata or {}).get("requires_reacknowledgment"):
        logger.info(
            "Replay skipped; version did not require re-acknowledgment document_id=%s version=%s",
            document_id,
            version_number,
        )
        return 0

    stale = stale_user_ids(s, document_id, version_number)
    stale_set = set(stale)
    targets = stale if requested is None else [uid for uid in requested if uid in stale_set]
    if requested is not None and len(targets) != len(requested):
        logger.warning(
            "Replay ignored users without a stale acknowledgment document_id=%s version=%s ignored=%s",
            document_id,
            version_number,
            sorted(set(requested) - set(targets)),
        )
    logger.warning(
        "Replaying re-acknowledgment notifications document_id=%s version=%s users=%s",
        document_id,
        version_number,
        targets,
    )
    return send_reacknowledgment_notifications(
        sink,
        document=document,
        user_ids=targets,
        new_version=version_number,
        change_summary=version.change_summary,
    )
