"""
Acknowledgment ledger: one row per (document, user), validated against document versions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.orgdocs.constants import FALLBACK_CHANGE_SUMMARY
from app.orgdocs.models import User
from app.orgdocs.modules.document_control.errors import AlreadyAcknowledgedError, NotFoundError, storage_errors
from app.orgdocs.modules.document_control.models import Document, DocumentAcknowledgment, DocumentVersion
from app.orgdocs.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcknowledgmentResult:
    acknowledgment: DocumentAcknowledgment
    is_reacknowledgment: bool


@dataclass(frozen=True)
class AcknowledgmentStatus:
    document_id: int
    user_id: int
    latest_document_version: int
    acknowledgment: DocumentAcknowledgment | None
    acknowledgment_gap: int

    @property
    def is_valid(self) -> bool:
        return self.acknowledgment is not None and not self.acknowledgment.requires_reacknowledgment

    def as_dict(self) -> dict[str, Any]:
        ack = self.acknowledgment
        return {
            "document_id": self.document_id,
            "user_id": self.user_id,
            "latest_document_version": self.latest_document_version,
            "acknowledgment_gap": self.acknowledgment_gap,
            "is_valid": self.is_valid,
            "current_acknowledgment": None
            if ack is None
            else {
                "acknowledged_version": ack.acknowledged_version,
                "acknowledged_at": ack.acknowledged_at.isoformat(),
                "requires_reacknowledgment": ack.requires_reacknowledgment,
                "invalidated_at": ack.invalidated_at.isoformat() if ack.invalidated_at else None,
                "is_valid": ack.is_valid,
            },
        }


@dataclass(frozen=True)
class PendingReacknowledgment:
    user_id: int
    user_handle: str | None
    document_id: int
    document_title: str
    last_acknowledged_version: int
    current_version: int
    invalidated_at: datetime | None
    change_summary: str

    @property
    def versions_behind(self) -> int:
        return self.current_version - (self.last_acknowledged_version or 0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_handle": self.user_handle,
            "document_id": self.document_id,
            "document_title": self.document_title,
            "last_acknowledged_version": self.last_acknowledged_version,
            "current_version": self.current_version,
            "versions_behind": self.versions_behind,
            "invalidated_at": self.invalidated_at.isoformat() if self.invalidated_at else None,
            "change_summary": self.change_summary,
        }


def find_acknowledgment(
    s: "Session",
    document_id: int,
    user_id: int,
    *,
    for_update: bool = False,
) -> DocumentAcknowledgment | None:
    stmt = select(DocumentAcknowledgment).where(
        DocumentAcknowledgment.document_id == document_id,
        DocumentAcknowledgment.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    with storage_errors("find acknowledgment", document_id=document_id, user_id=user_id):
        return s.scalars(stmt).one_or_none()


def _renew(ack: DocumentAcknowledgment, document: Document, ip_address: str | None, notes: str | None) -> None:
    ack.acknowledged_at = utcnow()
    ack.acknowledged_version = document.version
    ack.requires_reacknowledgment = False
    ack.invalidated_at = None
    ack.invalidated_by_user_id = None
    ack.ip_address = ip_address
    ack.notes = notes


def _apply_existing(
    ack: DocumentAcknowledgment,
    document: Document,
    ip_address: str | None,
    notes: str | None,
) -> AcknowledgmentResult:
    if not ack.requires_reacknowledgment:
        raise AlreadyAcknowledgedError()
    _renew(ack, document, ip_address, notes)
    return AcknowledgmentResult(acknowledgment=ack, is_reacknowledgment=True)


def create_or_renew(
    s: "Session",
    document: Document,
    user_id: int,
    *,
    ip_address: str | None = None,
    notes: str | None = None,
) -> AcknowledgmentResult:
    """
    Record `user_id`'s acknowledgment of the document's current version.

    - valid row exists: AlreadyAcknowledgedError
    - stale row exists: renewed in place (acknowledged_version = document.version)
    - no row: inserted

    The insert runs in a savepoint against the (document_id, user_id) unique
    constraint; losing a race to a concurrent insert falls back to the existing-row
    rules instead of producing a duplicate.
    """
    existing = find_acknowledgment(s, document.id, user_id, for_update=True)
    if existing is not None:
        return _apply_existing(existing, document, ip_address, notes)

    ack = DocumentAcknowledgment(
        document_id=document.id,
        user_id=user_id,
        acknowledged_at=utcnow(),
        acknowledged_version=document.version,
        ip_address=ip_address,
        notes=notes,
        requires_reacknowledgment=False,
    )
    with storage_errors("create acknowledgment", document_id=document.id, user_id=user_id):
        try:
            with s.begin_nested():
                s.add(ack)
        except IntegrityError:
            logger.info("Concurrent acknowledgment detected document_id=%s user_id=%s", document.id, user_id)
            existing = find_acknowledgment(s, document.id, user_id, for_update=True)
            if existing is None:
                raise
            return _apply_existing(existing, document, ip_address, notes)

    return AcknowledgmentResult(acknowledgment=ack, is_reacknowledgment=False)


def get_status_for_user(s: "Session", document_id: int, user_id: int) -> AcknowledgmentStatus:
    with storage_errors("get acknowledgment status", document_id=document_id, user_id=user_id):
        document = s.get(Document, document_id)
    if document is None:
        raise NotFoundError(f"Document {document_id} not found.")

    ack = find_acknowledgment(s, document_id, user_id)
    gap = document.version - ack.acknowledged_version if ack is not None else document.version
    return AcknowledgmentStatus(
        document_id=document_id,
        user_id=user_id,
        latest_document_version=document.version,
        acknowledgment=ack,
        acknowledgment_gap=gap,
    )


def select_valid_acknowledgments(s: "Session", document_id: int) -> list[DocumentAcknowledgment]:
    with storage_errors("select valid acknowledgments", document_id=document_id):
        return list(
            s.scalars(
                select(DocumentAcknowledgment)
                .where(
                    DocumentAcknowledgment.document_id == document_id,
                    DocumentAcknowledgment.requires_reacknowledgment.is_(False),
                )
                .order_by(DocumentAcknowledgment.user_id.asc())
                .with_for_update()
            )
        )


def mark_requires_reacknowledgment(
    s: "Session",
    document_id: int,
    acknowledgment_ids: list[int],
    *,
    invalidated_by_user_id: int | None,
) -> int:
    """Bulk-flag the given rows as stale. Returns the number of rows updated."""
    if not acknowledgment_ids:
        return 0
    now = utcnow()
    result = s.execute(
        update(DocumentAcknowledgment)
        .where(
            DocumentAcknowledgment.document_id == document_id,
            DocumentAcknowledgment.id.in_(acknowledgment_ids),
            DocumentAcknowledgment.requires_reacknowledgment.is_(False),
        )
        .values(
            requires_reacknowledgment=True,
            invalidated_at=now,
            invalidated_by_user_id=invalidated_by_user_id,
        )
        .execution_options(synchronize_session="fetch")
    )
    return int(result.rowcount or 0)


def get_all_pending(
    s: "Session",
    organization_id: int,
    document_id: int | None = None,
) -> list[PendingReacknowledgment]:
    """Every stale (user, document) pair in the organization, most recently invalidated first."""
    stmt = (
        select(DocumentAcknowledgment, Document, User, DocumentVersion.change_summary)
        .join(Document, DocumentAcknowledgment.document_id == Document.id)
        .join(User, DocumentAcknowledgment.user_id == User.id)
        .outerjoin(
            DocumentVersion,
            (DocumentVersion.document_id == Document.id) & (DocumentVersion.version_number == Document.version),
        )
        .where(
            Document.organization_id == organization_id,
            DocumentAcknowledgment.requires_reacknowledgment.is_(True),
        )
        .order_by(DocumentAcknowledgment.invalidated_at.desc(), DocumentAcknowledgment.id.asc())
    )
    if document_id is not None:
        stmt = stmt.where(DocumentAcknowledgment.document_id == document_id)

    with storage_errors("list pending re-acknowledgments", organization_id=organization_id, document_id=document_id):
        rows = s.execute(stmt).all()

    return [
        PendingReacknowledgment(
            user_id=ack.user_id,
            user_handle=user.handle or user.email,
            document_id=doc.id,
            document_title=doc.title,
            last_acknowledged_version=ack.acknowledged_version,
            current_version=doc.version,
            invalidated_at=ack.invalidated_at,
            change_summary=summary or FALLBACK_CHANGE_SUMMARY,
        )
        for ack, doc, user, summary in rows
    ]
