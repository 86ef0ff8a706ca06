from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.orgdocs.models import Base
from app.orgdocs.utils import utcnow


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_org_requires_ack", "organization_id", "requires_acknowledgment"),
        Index("idx_documents_org_folder", "organization_id", "folder_path"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_reading_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minutes
    folder_path: Mapped[str] = mapped_column(String(512), nullable=False, default="/")

    # Equals max(DocumentVersion.version_number); 0 until the initial version exists
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requires_acknowledgment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Role identifiers; empty = visible to every member of the organization
    access_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="select",
    )
    acknowledgments: Mapped[list["DocumentAcknowledgment"]] = relationship(
        "DocumentAcknowledgment",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="select",
    )


class DocumentVersion(Base):
    """Immutable snapshot of a document after a significant edit."""

    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version"),
        Index("idx_document_versions_created_by", "created_by_user_id"),
        Index("idx_document_versions_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_reading_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    folder_path: Mapped[str] = mapped_column(String(512), nullable=False, default="/")
    requires_acknowledgment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    access_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    change_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    change_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="versions", lazy="selectin")


class DocumentAcknowledgment(Base):
    __tablename__ = "document_acknowledgments"
    __table_args__ = (
        # At most one row per (document, user): re-acknowledgment updates in place.
        UniqueConstraint("document_id", "user_id", name="uq_document_acknowledgment_user"),
        Index("idx_document_acknowledgments_user_id", "user_id"),
        Index("idx_document_acknowledgments_acknowledged_at", "acknowledged_at"),
        Index("idx_document_acknowledgments_pending", "requires_reacknowledgment", "invalidated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    acknowledged_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    acknowledged_version: Mapped[int] = mapped_column(Integer, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Valid iff requires_reacknowledgment is false
    requires_reacknowledgment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    invalidated_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    document: Mapped[Document] = relationship("Document", back_populates="acknowledgments", lazy="selectin")

    @property
    def is_valid(self) -> bool:
        return not self.requires_reacknowledgment
