from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.orgdocs.audit import record_event
from app.orgdocs.modules.document_control.change_detection import (
    ChangeDetectionResult,
    ChangeFlags,
    DocumentState,
    compare_states,
)
from app.orgdocs.modules.document_control.diff import ContentDiff, positional_line_diff
from app.orgdocs.modules.document_control.errors import NotFoundError, ValidationError, storage_errors
from app.orgdocs.modules.document_control.models import DocumentVersion
from app.orgdocs.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.orgdocs.models import User
    from app.orgdocs.modules.document_control.models import Document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionStatistics:
    total_versions: int
    first_version_date: datetime | None
    last_version_date: datetime | None
    total_contributors: int
    version_frequency: float  # versions per day

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_versions": self.total_versions,
            "first_version_date": self.first_version_date.isoformat() if self.first_version_date else None,
            "last_version_date": self.last_version_date.isoformat() if self.last_version_date else None,
            "total_contributors": self.total_contributors,
            "version_frequency": self.version_frequency,
        }


@dataclass(frozen=True)
class VersionComparison:
    document_id: int
    from_version: int
    to_version: int
    changes: ChangeFlags
    content_diff: ContentDiff | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "changes": self.changes.as_dict(),
            "content_diff": self.content_diff.as_dict() if self.content_diff is not None else None,
        }


def create_version(
    s: "Session",
    *,
    document_id: int,
    version_number: int,
    state: DocumentState,
    created_by: "User",
    change_summary: str | None = None,
    change_metadata: dict[str, Any] | None = None,
) -> DocumentVersion:
    """
    Persist an immutable snapshot. Never overwrites: an existing
    (document_id, version_number) pair raises ValidationError.
    """
    if version_number < 1:
        raise ValidationError(f"version_number must be >= 1 (got {version_number}).")

    if get_version(s, document_id, version_number) is not None:
        raise ValidationError(f"Version {version_number} already exists for document {document_id}.")

    version = DocumentVersion(
        document_id=document_id,
        version_number=version_number,
        content=state.content,
        title=state.title,
        description=state.description,
        word_count=state.word_count,
        estimated_reading_time=state.estimated_reading_time,
        folder_path=state.folder_path,
        requires_acknowledgment=state.requires_acknowledgment,
        access_roles=list(state.access_roles),
        change_summary=change_summary,
        change_metadata=change_metadata or {},
        created_by_user_id=created_by.id,
        created_at=utcnow(),
    )
    with storage_errors("create document version", document_id=document_id, version_number=version_number):
        try:
            # Savepoint so a concurrent writer's duplicate only rolls back this insert.
            with s.begin_nested():
                s.add(version)
        except IntegrityError as e:
            logger.warning(
                "Duplicate document version rejected document_id=%s version_number=%s", document_id, version_number
            )
            raise ValidationError(f"Version {version_number} already exists for document {document_id}.") from e

    record_event(
        s,
        actor=created_by,
        action="doc.version_create",
        entity_type="DocumentVersion",
        entity_id=str(version.id),
        metadata={
            "document_id": document_id,
            "version_number": version_number,
            "change_summary": change_summary,
        },
    )
    logger.info(
        "Document version created document_id=%s version_number=%s created_by=%s summary=%r",
        document_id,
        version_number,
        created_by.id,
        change_summary,
    )
    return version


def get_version_history(s: "Session", document_id: int) -> list[DocumentVersion]:
    """All versions, newest first."""
    with storage_errors("get version history", document_id=document_id):
        return list(
            s.scalars(
                select(DocumentVersion)
                .where(DocumentVersion.document_id == document_id)
                .order_by(DocumentVersion.version_number.desc())
            )
        )


def get_version(s: "Session", document_id: int, version_number: int) -> DocumentVersion | None:
    with storage_errors("get document version", document_id=document_id, version_number=version_number):
        return s.scalars(
            select(DocumentVersion).where(
                DocumentVersion.document_id == document_id,
                DocumentVersion.version_number == version_number,
            )
        ).one_or_none()


def require_version(s: "Session", document_id: int, version_number: int) -> DocumentVersion:
    v = get_version(s, document_id, version_number)
    if v is None:
        raise NotFoundError(f"Version {version_number} of document {document_id} not found.")
    return v


def get_latest_version_number(s: "Session", document_id: int) -> int:
    """0 when the document has no versions yet."""
    with storage_errors("get latest version number", document_id=document_id):
        latest = s.scalar(
            select(func.max(DocumentVersion.version_number)).where(DocumentVersion.document_id == document_id)
        )
    return int(latest or 0)


def get_latest_version(s: "Session", document_id: int) -> DocumentVersion | None:
    with storage_errors("get latest version", document_id=document_id):
        return s.scalars(
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.desc())
            .limit(1)
        ).first()


def get_version_statistics(s: "Session", document_id: int) -> VersionStatistics:
    with storage_errors("get version statistics", document_id=document_id):
        row = s.execute(
            select(
                func.count(DocumentVersion.id),
                func.min(DocumentVersion.created_at),
                func.max(DocumentVersion.created_at),
                func.count(func.distinct(DocumentVersion.created_by_user_id)),
            ).where(DocumentVersion.document_id == document_id)
        ).one()

    total_versions = int(row[0] or 0)
    first_date, last_date = row[1], row[2]
    total_contributors = int(row[3] or 0)

    frequency = 0.0
    if first_date is not None and last_date is not None and total_versions > 1:
        days = max(1, math.ceil((last_date - first_date).total_seconds() / 86400))
        frequency = total_versions / days

    return VersionStatistics(
        total_versions=total_versions,
        first_version_date=first_date,
        last_version_date=last_date,
        total_contributors=total_contributors,
        version_frequency=frequency,
    )


def create_version_on_update(
    s: "Session",
    document: "Document",
    editor: "User",
    classification: ChangeDetectionResult,
) -> DocumentVersion | None:
    """
    Snapshot `document` (already carrying its new field values) as version
    document.version + 1 and advance document.version. No-op edits create nothing.
    """
    if not classification.has_significant_changes:
        logger.debug("No significant changes; skipping version document_id=%s", document.id)
        return None

    next_number = (document.version or 0) + 1
    version = create_version(
        s,
        document_id=document.id,
        version_number=next_number,
        state=DocumentState.of(document),
        created_by=editor,
        change_summary=classification.change_summary,
        change_metadata=classification.change_metadata,
    )
    document.version = next_number
    return version


def compare_versions(s: "Session", document_id: int, from_version: int, to_version: int) -> VersionComparison:
    """
    Flags between two stored snapshots, plus a positional line diff when the
    content differs (see diff.positional_line_diff for its limits).
    """
    old = require_version(s, document_id, from_version)
    new = require_version(s, document_id, to_version)

    flags = compare_states(DocumentState.of(old), DocumentState.of(new))
    content_diff = positional_line_diff(old.content, new.content) if flags.content_changed else None

    return VersionComparison(
        document_id=document_id,
        from_version=from_version,
        to_version=to_version,
        changes=flags,
        content_diff=content_diff,
    )
