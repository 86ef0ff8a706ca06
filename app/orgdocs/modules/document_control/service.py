from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.orgdocs.audit import record_event
from app.orgdocs.constants import (
    DEFAULT_FOLDER_PATH,
    MAX_CONTENT_LENGTH,
    MAX_FOLDER_PATH_LENGTH,
    MAX_TITLE_LENGTH,
    NOTIFY_ACKNOWLEDGMENT_REMINDER,
    NOTIFY_DOCUMENT_ACKNOWLEDGED,
    NOTIFY_DOCUMENT_FULLY_ACKNOWLEDGED,
)
from app.orgdocs.models import OrganizationMember, User
from app.orgdocs.modules.document_control.acknowledgments import (
    AcknowledgmentResult,
    AcknowledgmentStatus,
    PendingReacknowledgment,
    create_or_renew,
    get_all_pending,
    get_status_for_user,
)
from app.orgdocs.modules.document_control.analytics import AnalyticsCache, get_document_acknowledgment_status
from app.orgdocs.modules.document_control.change_detection import (
    ChangeDetectionResult,
    DocumentState,
    detect_changes,
)
from app.orgdocs.modules.document_control.errors import (
    CascadeStepError,
    DocumentControlError,
    NotFoundError,
    StorageError,
    ValidationError,
    VersionConflictError,
    storage_errors,
)
from app.orgdocs.modules.document_control.invalidation import run_invalidation_cascade, send_reacknowledgment_notifications
from app.orgdocs.modules.document_control.models import Document, DocumentAcknowledgment, DocumentVersion
from app.orgdocs.modules.document_control.versioning import get_latest_version
from app.orgdocs.utils import count_words, estimate_reading_time, normalize_roles, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.orgdocs.notifications import NotificationSink

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "title",
    "description",
    "content",
    "folder_path",
    "requires_acknowledgment",
    "access_roles",
    "word_count",
    "estimated_reading_time",
)


@dataclass
class DocumentUpdateOutcome:
    document: Document
    classification: ChangeDetectionResult
    version: DocumentVersion | None = None
    affected_user_ids: list[int] = field(default_factory=list)
    notifications_sent: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "document": document_to_dict(self.document),
            "classification": self.classification.as_dict(),
            "version_number": self.version.version_number if self.version is not None else None,
            "affected_user_ids": self.affected_user_ids,
            "notifications_sent": self.notifications_sent,
        }


@dataclass
class BulkAcknowledgmentResult:
    success: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    acknowledged_documents: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Payload handling
# ---------------------------------------------------------------------------


def validate_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Content cannot be empty.")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError("Content exceeds maximum allowed size of 1MB.")
    return content


def validate_document_payload(payload: dict, *, partial: bool) -> list[str]:
    """Returns a list of errors (empty when the payload is acceptable)."""
    errors: list[str] = []
    unknown = sorted(set(payload) - set(EDITABLE_FIELDS))
    if unknown:
        errors.append(f"Unknown fields: {', '.join(unknown)}")

    if not partial or "title" in payload:
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            errors.append("Title is required.")
        elif len(title.strip()) > MAX_TITLE_LENGTH:
            errors.append(f"Title must be at most {MAX_TITLE_LENGTH} characters.")
    if not partial or "content" in payload:
        try:
            validate_content(payload.get("content"))
        except ValidationError as e:
            errors.append(str(e))
    folder = payload.get("folder_path")
    if folder is not None and (not isinstance(folder, str) or len(folder.strip()) > MAX_FOLDER_PATH_LENGTH):
        errors.append(f"folder_path must be a string of at most {MAX_FOLDER_PATH_LENGTH} characters.")
    if "requires_acknowledgment" in payload and not isinstance(payload["requires_acknowledgment"], bool):
        errors.append("requires_acknowledgment must be a boolean.")
    if "access_roles" in payload:
        roles = payload["access_roles"]
        if roles is not None and (not isinstance(roles, list) or not all(isinstance(r, str) for r in roles)):
            errors.append("access_roles must be a list of role identifiers.")
    for key in ("word_count", "estimated_reading_time"):
        if key in payload and (not isinstance(payload[key], int) or isinstance(payload[key], bool) or payload[key] < 0):
            errors.append(f"{key} must be a non-negative integer.")
    return errors


def build_document_state(payload: dict, base: DocumentState | None = None) -> DocumentState:
    """Merge a (possibly partial) payload onto `base`."""
    errors = validate_document_payload(payload, partial=base is not None)
    if errors:
        raise ValidationError(" ".join(errors))

    if base is None:
        base = DocumentState(title="", content="")

    changes: dict[str, Any] = {}
    if "title" in payload:
        changes["title"] = payload["title"].strip()
    if "description" in payload:
        changes["description"] = (payload["description"] or "").strip() or None
    if "content" in payload:
        changes["content"] = payload["content"]
    if "folder_path" in payload:
        changes["folder_path"] = (payload["folder_path"] or "").strip() or DEFAULT_FOLDER_PATH
    if "requires_acknowledgment" in payload:
        changes["requires_acknowledgment"] = payload["requires_acknowledgment"]
    if "access_roles" in payload:
        changes["access_roles"] = tuple(normalize_roles(payload["access_roles"]))

    state = replace(base, **changes)

    content_changed = state.content != base.content or not base.content
    word_count = payload.get("word_count")
    reading_time = payload.get("estimated_reading_time")
    if word_count is None and content_changed:
        word_count = count_words(state.content)
    if reading_time is None and content_changed:
        reading_time = estimate_reading_time(state.content)
    if word_count is not None:
        state = replace(state, word_count=word_count)
    if reading_time is not None:
        state = replace(state, estimated_reading_time=reading_time)
    return state


def _apply_state(document: Document, state: DocumentState) -> None:
    document.title = state.title
    document.description = state.description
    document.content = state.content
    document.folder_path = state.folder_path
    document.requires_acknowledgment = state.requires_acknowledgment
    document.access_roles = list(state.access_roles)
    document.word_count = state.word_count
    document.estimated_reading_time = state.estimated_reading_time
    document.updated_at = utcnow()


def document_to_dict(d: Document) -> dict[str, Any]:
    return {
        "id": d.id,
        "organization_id": d.organization_id,
        "title": d.title,
        "description": d.description,
        "content": d.content,
        "word_count": d.word_count,
        "estimated_reading_time": d.estimated_reading_time,
        "folder_path": d.folder_path,
        "version": d.version,
        "requires_acknowledgment": d.requires_acknowledgment,
        "access_roles": list(d.access_roles or []),
        "created_by_user_id": d.created_by_user_id,
        "created_at": d.created_at.isoformat() if d.created_at else None,
        "updated_at": d.updated_at.isoformat() if d.updated_at else None,
    }


def version_to_dict(v: DocumentVersion) -> dict[str, Any]:
    return {
        "document_id": v.document_id,
        "version_number": v.version_number,
        "title": v.title,
        "description": v.description,
        "content": v.content,
        "word_count": v.word_count,
        "estimated_reading_time": v.estimated_reading_time,
        "folder_path": v.folder_path,
        "requires_acknowledgment": v.requires_acknowledgment,
        "access_roles": list(v.access_roles or []),
        "change_summary": v.change_summary,
        "change_metadata": v.change_metadata or {},
        "created_by_user_id": v.created_by_user_id,
        "created_at": v.created_at.isoformat() if v.created_at else None,
    }


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def require_document(
    s: "Session",
    document_id: int,
    *,
    organization_id: int | None = None,
    for_update: bool = False,
) -> Document:
    stmt = select(Document).where(Document.id == document_id)
    if for_update:
        stmt = stmt.with_for_update()
    with storage_errors("load document", document_id=document_id):
        d = s.scalars(stmt).one_or_none()
    if d is None or (organization_id is not None and d.organization_id != organization_id):
        raise NotFoundError(f"Document {document_id} not found.")
    return d


def create_document(
    s: "Session",
    organization_id: int,
    payload: dict,
    user: User,
    *,
    cache: AnalyticsCache | None = None,
) -> tuple[Document, DocumentVersion]:
    """Create a document and its initial version (version 1). Caller commits."""
    state = build_document_state(payload)

    now = utcnow()
    d = Document(
        organization_id=organization_id,
        version=0,
        created_by_user_id=user.id,
        created_at=now,
    )
    _apply_state(d, state)
    with storage_errors("create document", organization_id=organization_id):
        s.add(d)
        s.flush()

    classification = detect_changes(None, state)
    outcome = run_invalidation_cascade(s, d, user, classification)
    if outcome.version is None:
        raise StorageError(f"Initial version of document {d.id} was not created")

    record_event(
        s,
        actor=user,
        action="doc.create",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"title": d.title, "version": d.version, "requires_acknowledgment": d.requires_acknowledgment},
    )
    if cache is not None:
        cache.invalidate(organization_id)
    logger.info("Document created document_id=%s organization_id=%s created_by=%s", d.id, organization_id, user.id)
    return d, outcome.version


def detect_document_changes(s: "Session", document_id: int, payload: dict) -> ChangeDetectionResult:
    """Dry run: how would `payload` be classified against the latest stored version?"""
    d = require_document(s, document_id)
    proposed = build_document_state(payload, DocumentState.of(d))
    latest = get_latest_version(s, document_id)
    return detect_changes(latest, proposed)


def handle_document_update(
    s: "Session",
    document_id: int,
    payload: dict,
    user: User,
    *,
    sink: "NotificationSink",
    organization_id: int | None = None,
    expected_version: int | None = None,
    cache: AnalyticsCache | None = None,
) -> DocumentUpdateOutcome:
    """
    The edit path: lock document -> classify -> apply -> create version ->
    invalidate acknowledgments, committed as one transaction; notifications are
    emitted only after that commit.

    Raises VersionConflictError when `expected_version` no longer matches, and
    CascadeStepError(step="notify") when notifications fail after the commit
    (see invalidation.replay_reacknowledgment_notifications).
    """
    try:
        d = require_document(s, document_id, organization_id=organization_id, for_update=True)
        if expected_version is not None and d.version != expected_version:
            raise VersionConflictError(d.id, expected_version, d.version)

        previous_state = DocumentState.of(d)
        proposed = build_document_state(payload, previous_state)
        latest = get_latest_version(s, d.id)
        classification = detect_changes(latest, proposed)

        _apply_state(d, proposed)
        cascade = run_invalidation_cascade(s, d, user, classification)

        record_event(
            s,
            actor=user,
            action="doc.update",
            entity_type="Document",
            entity_id=str(d.id),
            metadata={
                "version": d.version,
                "change_summary": classification.change_summary,
                "requires_reacknowledgment": classification.requires_reacknowledgment,
                "changes": classification.change_metadata.get("changes"),
            },
        )
        with storage_errors("commit document update", document_id=d.id, version=d.version):
            s.commit()
    except Exception:
        s.rollback()
        raise

    if cache is not None:
        cache.invalidate(d.organization_id)

    outcome = DocumentUpdateOutcome(
        document=d,
        classification=classification,
        version=cascade.version,
        affected_user_ids=cascade.affected_user_ids,
    )
    if not cascade.affected_user_ids:
        return outcome

    try:
        outcome.notifications_sent = send_reacknowledgment_notifications(
            sink,
            document=d,
            user_ids=cascade.affected_user_ids,
            new_version=d.version,
            change_summary=classification.change_summary,
        )
        s.commit()
    except Exception as e:
        s.rollback()
        logger.error(
            "Invalidation cascade step failed step=notify document_id=%s target_version=%s users=%s: %s",
            d.id,
            d.version,
            cascade.affected_user_ids,
            e,
        )
        raise CascadeStepError(
            document_id=d.id,
            version_number=d.version,
            step="notify",
            user_ids=cascade.affected_user_ids,
        ) from e
    return outcome


# ---------------------------------------------------------------------------
# Acknowledgments
# ---------------------------------------------------------------------------


def _notify_acknowledged(sink: "NotificationSink", document: Document, user: User) -> None:
    if document.created_by_user_id == user.id:
        return
    sink.notify(
        user_id=document.created_by_user_id,
        entity_type=NOTIFY_DOCUMENT_ACKNOWLEDGED,
        entity_id=str(document.id),
        title="Document Acknowledged",
        message=f'{user.handle or user.email} has acknowledged "{document.title}"',
        custom_data={
            "document_id": document.id,
            "document_title": document.title,
            "acknowledged_by": user.id,
            "acknowledged_version": document.version,
        },
    )


def acknowledge_document_version(
    s: "Session",
    organization_id: int,
    document_id: int,
    user: User,
    *,
    ip_address: str | None = None,
    notes: str | None = None,
    sink: "NotificationSink | None" = None,
    cache: AnalyticsCache | None = None,
) -> AcknowledgmentResult:
    """
    Acknowledge the document's current version, or renew a stale acknowledgment.
    Caller commits.
    """
    d = require_document(s, document_id, organization_id=organization_id)
    if not d.requires_acknowledgment:
        raise ValidationError("Document does not require acknowledgment.")

    result = create_or_renew(s, d, user.id, ip_address=ip_address, notes=notes)
    record_event(
        s,
        actor=user,
        action="doc.reacknowledge" if result.is_reacknowledgment else "doc.acknowledge",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"acknowledged_version": d.version, "ip_address": ip_address},
    )
    if cache is not None:
        cache.invalidate(organization_id)
    logger.info(
        "Document acknowledged document_id=%s user_id=%s acknowledged_version=%s reacknowledgment=%s",
        d.id,
        user.id,
        d.version,
        result.is_reacknowledgment,
    )

    if sink is not None:
        _notify_acknowledged(sink, d, user)
        with storage_errors("flush acknowledgment", document_id=d.id, user_id=user.id):
            s.flush()
        status = get_document_acknowledgment_status(s, organization_id, d.id, user.id)
        if status.total_required > 0 and status.total_acknowledged >= status.total_required:
            sink.notify(
                user_id=d.created_by_user_id,
                entity_type=NOTIFY_DOCUMENT_FULLY_ACKNOWLEDGED,
                entity_id=str(d.id),
                title="Document Fully Acknowledged",
                message=f'All required users have acknowledged "{d.title}"',
                custom_data={
                    "document_id": d.id,
                    "document_title": d.title,
                    "version": d.version,
                    "total_acknowledgments": status.total_acknowledged,
                    "acknowledgment_rate": status.acknowledgment_rate,
                },
            )
    return result


def get_acknowledgment_version_status(s: "Session", document_id: int, user_id: int) -> AcknowledgmentStatus:
    return get_status_for_user(s, document_id, user_id)


def get_users_requiring_reacknowledgment(
    s: "Session",
    organization_id: int,
    document_id: int | None = None,
) -> list[PendingReacknowledgment]:
    return get_all_pending(s, organization_id, document_id)


def bulk_acknowledge_documents(
    s: "Session",
    organization_id: int,
    document_ids: list[int],
    user: User,
    *,
    ip_address: str | None = None,
    sink: "NotificationSink | None" = None,
    cache: AnalyticsCache | None = None,
) -> BulkAcknowledgmentResult:
    """Each document in its own savepoint; one failure never undoes the others. Caller commits."""
    result = BulkAcknowledgmentResult()
    for document_id in document_ids:
        try:
            with s.begin_nested():
                ack = acknowledge_document_version(
                    s,
                    organization_id,
                    document_id,
                    user,
                    ip_address=ip_address,
                    sink=sink,
                    cache=cache,
                )
        except DocumentControlError as e:
            result.failed += 1
            result.errors.append(f"Document {document_id}: {e}")
            continue

        result.success += 1
        d = s.get(Document, document_id)
        result.acknowledged_documents.append(
            {
                "document_id": document_id,
                "document_title": d.title if d is not None else None,
                "acknowledged_at": ack.acknowledgment.acknowledged_at.isoformat(),
                "acknowledged_version": ack.acknowledgment.acknowledged_version,
            }
        )

    logger.info(
        "Bulk acknowledgment completed organization_id=%s user_id=%s requested=%s success=%s failed=%s",
        organization_id,
        user.id,
        len(document_ids),
        result.success,
        result.failed,
    )
    return result


def members_without_valid_acknowledgment(s: "Session", organization_id: int, document_id: int) -> list[int]:
    valid_ack = select(DocumentAcknowledgment.user_id).where(
        DocumentAcknowledgment.document_id == document_id,
        DocumentAcknowledgment.requires_reacknowledgment.is_(False),
    )
    with storage_errors("list members without acknowledgment", organization_id=organization_id, document_id=document_id):
        return list(
            s.scalars(
                select(OrganizationMember.user_id)
                .where(
                    OrganizationMember.organization_id == organization_id,
                    OrganizationMember.is_active.is_(True),
                    OrganizationMember.user_id.not_in(valid_ack),
                )
                .order_by(OrganizationMember.user_id.asc())
            )
        )


def send_acknowledgment_reminders(
    s: "Session",
    organization_id: int,
    sink: "NotificationSink",
    *,
    document_id: int | None = None,
) -> dict[str, int]:
    """Remind active members who hold no valid acknowledgment. Caller commits."""
    if document_id is not None:
        d = require_document(s, document_id, organization_id=organization_id)
        documents = [d] if d.requires_acknowledgment else []
    else:
        with storage_errors("list documents requiring acknowledgment", organization_id=organization_id):
            documents = list(
                s.scalars(
                    select(Document)
                    .where(
                        Document.organization_id == organization_id,
                        Document.requires_acknowledgment.is_(True),
                    )
                    .order_by(Document.id.asc())
                )
            )

    sent = 0
    failed = 0
    for d in documents:
        doc_sent = 0
        try:
            # a failed document rolls back only its own reminders
            with s.begin_nested():
                for user_id in members_without_valid_acknowledgment(s, organization_id, d.id):
                    sink.notify(
                        user_id=user_id,
                        entity_type=NOTIFY_ACKNOWLEDGMENT_REMINDER,
                        entity_id=str(d.id),
                        title="Document Acknowledgment Reminder",
                        message=f'Please review and acknowledge "{d.title}"',
                        custom_data={
                            "document_id": d.id,
                            "document_title": d.title,
                            "organization_id": organization_id,
                            "version": d.version,
                            "is_reminder": True,
                        },
                    )
                    doc_sent += 1
        except (StorageError, SQLAlchemyError):
            failed += 1
            logger.exception("Failed to send reminders document_id=%s organization_id=%s", d.id, organization_id)
            continue
        sent += doc_sent

    logger.info(
        "Acknowledgment reminders sent organization_id=%s document_id=%s documents=%s sent=%s failed=%s",
        organization_id,
        document_id,
        len(documents),
        sent,
        failed,
    )
    return {"sent": sent, "failed": failed}
