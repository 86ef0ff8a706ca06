"""
Change classification between a document's last recorded version and a proposed state.

The re-acknowledgment policy here is the core business rule of the module:

1. requires_acknowledgment switched false -> true: re-acknowledge.
2. Content changed and the absolute length delta is strictly greater than 10%
   of the previous version's content length: re-acknowledge.
3. Access roles became strictly more restrictive (previously open to everyone,
   or narrowed to a non-empty proper subset): re-acknowledge.
4. Anything else (title/description/folder edits, small content edits) keeps
   existing acknowledgments valid.

The 10% threshold is measured against the previous content length, so very short
documents cross it easily. That is intentional and must not be "fixed" here.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from app.orgdocs.constants import (
    DEFAULT_FOLDER_PATH,
    INITIAL_VERSION_SUMMARY,
    MINOR_UPDATES_SUMMARY,
    REACKNOWLEDGMENT_CONTENT_THRESHOLD,
)
from app.orgdocs.utils import normalize_roles

if TYPE_CHECKING:
    from app.orgdocs.modules.document_control.models import Document, DocumentVersion


@dataclass(frozen=True)
class DocumentState:
    """The versioned fields of a document, detached from any ORM row."""

    title: str
    content: str
    description: str | None = None
    folder_path: str = DEFAULT_FOLDER_PATH
    requires_acknowledgment: bool = False
    access_roles: tuple[str, ...] = ()
    word_count: int = 0
    estimated_reading_time: int = 0

    @classmethod
    def of(cls, obj: "Document | DocumentVersion") -> "DocumentState":
        return cls(
            title=obj.title,
            content=obj.content or "",
            description=obj.description,
            folder_path=obj.folder_path or DEFAULT_FOLDER_PATH,
            requires_acknowledgment=bool(obj.requires_acknowledgment),
            access_roles=tuple(normalize_roles(obj.access_roles)),
            word_count=obj.word_count or 0,
            estimated_reading_time=obj.estimated_reading_time or 0,
        )


@dataclass(frozen=True)
class ChangeFlags:
    title_changed: bool = False
    description_changed: bool = False
    content_changed: bool = False
    folder_changed: bool = False
    acknowledgment_requirement_changed: bool = False
    access_roles_changed: bool = False
    word_count_delta: int = 0
    reading_time_delta: int = 0

    @property
    def has_content_changes(self) -> bool:
        return self.content_changed

    @property
    def has_metadata_changes(self) -> bool:
        return (
            self.title_changed
            or self.description_changed
            or self.folder_changed
            or self.acknowledgment_requirement_changed
            or self.access_roles_changed
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChangeDetectionResult:
    has_significant_changes: bool
    has_content_changes: bool
    has_metadata_changes: bool
    change_summary: str
    requires_reacknowledgment: bool
    change_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_initial_version(self) -> bool:
        return bool(self.change_metadata.get("is_initial_version"))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def compare_states(old: DocumentState, new: DocumentState) -> ChangeFlags:
    """Field-by-field flags; access roles are compared as sets."""
    return ChangeFlags(
        title_changed=new.title != old.title,
        description_changed=(new.description or "") != (old.description or ""),
        content_changed=new.content != old.content,
        folder_changed=new.folder_path != old.folder_path,
        acknowledgment_requirement_changed=new.requires_acknowledgment != old.requires_acknowledgment,
        access_roles_changed=set(new.access_roles) != set(old.access_roles),
        word_count_delta=new.word_count - old.word_count,
        reading_time_delta=new.estimated_reading_time - old.estimated_reading_time,
    )


def is_more_restrictive(previous_roles, new_roles) -> bool:
    prev = set(previous_roles or ())
    new = set(new_roles or ())
    if not prev and new:
        return True
    # Non-empty proper subset
    return bool(new) and len(new) < len(prev) and new.issubset(prev)


def content_change_ratio(previous_content: str, new_content: str) -> float:
    previous_len = len(previous_content or "")
    delta = abs(len(new_content or "") - previous_len)
    return delta / max(1, previous_len)


def should_require_reacknowledgment(flags: ChangeFlags, previous: DocumentState, proposed: DocumentState) -> bool:
    if flags.acknowledgment_requirement_changed and proposed.requires_acknowledgment:
        return True

    if flags.content_changed:
        if content_change_ratio(previous.content, proposed.content) > REACKNOWLEDGMENT_CONTENT_THRESHOLD:
            return True

    if flags.access_roles_changed and is_more_restrictive(previous.access_roles, proposed.access_roles):
        return True

    return False


def generate_change_summary(flags: ChangeFlags) -> str:
    parts: list[str] = []
    if flags.title_changed:
        parts.append("title updated")
    if flags.description_changed:
        parts.append("description updated")
    if flags.content_changed:
        parts.append("content modified")
    if flags.folder_changed:
        parts.append("moved to different folder")
    if flags.acknowledgment_requirement_changed:
        parts.append("acknowledgment requirement changed")
    if flags.access_roles_changed:
        parts.append("access permissions updated")

    if not parts:
        return MINOR_UPDATES_SUMMARY
    if len(parts) == 1:
        return parts[0][0].upper() + parts[0][1:]
    return ", ".join(parts[:-1]) + " and " + parts[-1]


def detect_changes(
    previous: "DocumentState | DocumentVersion | None",
    proposed: DocumentState,
    *,
    previous_version_number: int | None = None,
) -> ChangeDetectionResult:
    """
    Classify `proposed` against the last stored version.

    `previous` may be a DocumentVersion row (its version_number is recorded in
    the metadata) or a bare DocumentState; None means no version exists yet.
    """
    if previous is None:
        return ChangeDetectionResult(
            has_significant_changes=True,
            has_content_changes=True,
            has_metadata_changes=True,
            change_summary=INITIAL_VERSION_SUMMARY,
            requires_reacknowledgment=False,
            change_metadata={
                "is_initial_version": True,
                "content_length_change": len(proposed.content),
                "requires_reacknowledgment": False,
            },
        )

    if not isinstance(previous, DocumentState):
        previous_version_number = previous.version_number
        previous = DocumentState.of(previous)

    flags = compare_states(previous, proposed)
    metadata: dict[str, Any] = {
        "changes": flags.as_dict(),
        "content_length_change": len(proposed.content) - len(previous.content),
    }
    if previous_version_number is not None:
        metadata["previous_version"] = previous_version_number
    requires = should_require_reacknowledgment(flags, previous, proposed)
    # stored on the version row; replay relies on it
    metadata["requires_reacknowledgment"] = requires

    return ChangeDetectionResult(
        has_significant_changes=flags.has_content_changes or flags.has_metadata_changes,
        has_content_changes=flags.has_content_changes,
        has_metadata_changes=flags.has_metadata_changes,
        change_summary=generate_change_summary(flags),
        requires_reacknowledgment=requires,
        change_metadata=metadata,
    )
