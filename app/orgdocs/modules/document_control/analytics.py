"""
Compliance and staleness analytics over documents and acknowledgments.

Read-only. Every rate has an explicit zero-denominator fallback so empty
organizations never raise.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import and_, case, func, select

from app.orgdocs.constants import (
    MAX_ACKNOWLEDGMENT_WINDOW_DAYS,
    RECENT_ACKNOWLEDGMENT_DAYS,
    RECENT_ACKNOWLEDGMENT_LIMIT,
)
from app.orgdocs.models import OrganizationMember, User
from app.orgdocs.modules.document_control.errors import NotFoundError, storage_errors
from app.orgdocs.modules.document_control.models import Document, DocumentAcknowledgment
from app.orgdocs.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCOPE_COMPLIANCE_REPORT = "compliance_report"
SCOPE_VERSION_ANALYTICS = "version_analytics"
SCOPE_ACKNOWLEDGMENT_ANALYTICS = "acknowledgment_analytics"


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheKey:
    organization_id: int
    scope: str
    params: tuple = ()


@dataclass
class _CacheEntry:
    value: Any
    stored_at: float


class AnalyticsCache:
    """
    Time-bucketed cache for analytics results.

    - entries expire `ttl_seconds` after they were stored, measured with `clock`
    - when recomputing an expired entry fails and `serve_stale_on_error` is set,
      the expired value is returned instead of the error
    - invalidation is by exact organization (and optionally scope), never by
      substring matching
    - every write drops entries older than `stale_ttl_seconds` (default ten
      times the ttl), then the oldest entries beyond `max_entries`
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        *,
        serve_stale_on_error: bool = True,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 1024,
        stale_ttl_seconds: float | None = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.serve_stale_on_error = serve_stale_on_error
        self.max_entries = max(1, max_entries)
        if stale_ttl_seconds is None:
            stale_ttl_seconds = ttl_seconds * 10
        self.stale_ttl_seconds = max(ttl_seconds, stale_ttl_seconds)
        self._clock = clock
        self._entries: dict[CacheKey, _CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_compute(self, key: CacheKey, compute: Callable[[], T]) -> T:
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and (self._clock() - entry.stored_at) < self.ttl_seconds:
            return entry.value

        try:
            value = compute()
        except Exception:
            if entry is not None and self.serve_stale_on_error:
                logger.warning("Returning expired analytics entry after recompute failure key=%s", key, exc_info=True)
                return entry.value
            raise

        now = self._clock()
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, stored_at=now)
            self._evict(now)
        return value

    def _evict(self, now: float) -> None:
        # caller holds the lock
        for k in [k for k, e in self._entries.items() if now - e.stored_at >= self.stale_ttl_seconds]:
            del self._entries[k]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries, key=lambda k: self._entries[k].stored_at)[:overflow]
            for k in oldest:
                del self._entries[k]

    def invalidate(self, organization_id: int, scope: str | None = None) -> int:
        with self._lock:
            doomed = [
                k
                for k in self._entries
                if k.organization_id == organization_id and (scope is None or k.scope == scope)
            ]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.info("Analytics cache invalidated organization_id=%s scope=%s entries=%s", organization_id, scope, len(doomed))
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def _cached(cache: AnalyticsCache | None, key: CacheKey, compute: Callable[[], T]) -> T:
    if cache is None:
        return compute()
    return cache.get_or_compute(key, compute)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemberAcknowledgment:
    user_id: int
    user_handle: str | None
    acknowledged_at: datetime | None
    ip_address: str | None
    acknowledged_version: int | None
    is_valid: bool


@dataclass(frozen=True)
class DocumentAcknowledgmentStatus:
    document_id: int
    members: list[MemberAcknowledgment]
    total_required: int
    total_acknowledged: int
    acknowledgment_rate: float
    current_user_acknowledged: bool = False
    current_user_acknowledged_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ComplianceReport:
    organization_id: int
    total_documents: int
    documents_requiring_acknowledgment: int
    active_member_count: int
    expected_acknowledgments: int
    total_acknowledgments: int
    stale_acknowledgments: int
    compliance_rate: float
    pending_acknowledgments: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VersionAnalytics:
    organization_id: int
    total_acknowledgments: int
    valid_acknowledgments: int
    invalid_acknowledgments: int
    pending_reacknowledgments: int
    up_to_date_acknowledgments: int
    total_documents_requiring_acknowledgment: int
    acknowledgment_validity_rate: float
    version_compliance_rate: float
    average_acknowledgment_lag: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AcknowledgmentAnalytics:
    report: ComplianceReport
    recent_acknowledgments: list[dict[str, Any]] = field(default_factory=list)
    window_days: int = RECENT_ACKNOWLEDGMENT_DAYS

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.report.as_dict(),
            "window_days": self.window_days,
            "recent_acknowledgments": self.recent_acknowledgments,
        }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def count_active_members(s: "Session", organization_id: int) -> int:
    with storage_errors("count active members", organization_id=organization_id):
        n = s.scalar(
            select(func.count(OrganizationMember.id)).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.is_active.is_(True),
            )
        )
    return int(n or 0)


def get_document_acknowledgment_status(
    s: "Session",
    organization_id: int,
    document_id: int,
    current_user_id: int | None = None,
) -> DocumentAcknowledgmentStatus:
    """Per active member: their acknowledgment of the document, if any."""
    with storage_errors("get document acknowledgment status", organization_id=organization_id, document_id=document_id):
        document = s.get(Document, document_id)
        if document is None or document.organization_id != organization_id:
            raise NotFoundError(f"Document {document_id} not found.")

        rows = s.execute(
            select(User, DocumentAcknowledgment)
            .join(OrganizationMember, OrganizationMember.user_id == User.id)
            .outerjoin(
                DocumentAcknowledgment,
                and_(
                    DocumentAcknowledgment.user_id == User.id,
                    DocumentAcknowledgment.document_id == document_id,
                ),
            )
            .where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.is_active.is_(True),
            )
            .order_by(DocumentAcknowledgment.acknowledged_at.desc(), User.id.asc())
        ).all()

    members = [
        MemberAcknowledgment(
            user_id=user.id,
            user_handle=user.handle or user.email,
            acknowledged_at=ack.acknowledged_at if ack else None,
            ip_address=ack.ip_address if ack else None,
            acknowledged_version=ack.acknowledged_version if ack else None,
            is_valid=bool(ack and ack.is_valid),
        )
        for user, ack in rows
    ]
    total_required = len(members)
    total_acknowledged = sum(1 for m in members if m.is_valid)
    rate = total_acknowledged / total_required if total_required > 0 else 0.0

    mine = next((m for m in members if m.user_id == current_user_id), None)
    return DocumentAcknowledgmentStatus(
        document_id=document_id,
        members=members,
        total_required=total_required,
        total_acknowledged=total_acknowledged,
        acknowledgment_rate=rate,
        current_user_acknowledged=bool(mine and mine.is_valid),
        current_user_acknowledged_at=mine.acknowledged_at if mine and mine.is_valid else None,
    )


def _compute_compliance_report(s: "Session", organization_id: int) -> ComplianceReport:
    with storage_errors("compute compliance report", organization_id=organization_id):
        doc_row = s.execute(
            select(
                func.count(Document.id),
                func.count(case((Document.requires_acknowledgment.is_(True), 1))),
            ).where(Document.organization_id == organization_id)
        ).one()
        ack_row = s.execute(
            select(
                func.count(case((DocumentAcknowledgment.requires_reacknowledgment.is_(False), 1))),
                func.count(case((DocumentAcknowledgment.requires_reacknowledgment.is_(True), 1))),
            )
            .join(Document, DocumentAcknowledgment.document_id == Document.id)
            .where(
                Document.organization_id == organization_id,
                Document.requires_acknowledgment.is_(True),
            )
        ).one()
    active_members = count_active_members(s, organization_id)

    total_documents = int(doc_row[0] or 0)
    requiring = int(doc_row[1] or 0)
    valid_acks = int(ack_row[0] or 0)
    stale_acks = int(ack_row[1] or 0)

    expected = requiring * active_members
    # Nothing required means fully compliant.
    compliance_rate = (valid_acks / expected) * 100 if expected > 0 else 100.0
    pending = max(0, expected - valid_acks)

    return ComplianceReport(
        organization_id=organization_id,
        total_documents=total_documents,
        documents_requiring_acknowledgment=requiring,
        active_member_count=active_members,
        expected_acknowledgments=expected,
        total_acknowledgments=valid_acks,
        stale_acknowledgments=stale_acks,
        compliance_rate=compliance_rate,
        pending_acknowledgments=pending,
    )


def get_compliance_report(
    s: "Session",
    organization_id: int,
    *,
    cache: AnalyticsCache | None = None,
) -> ComplianceReport:
    return _cached(
        cache,
        CacheKey(organization_id, SCOPE_COMPLIANCE_REPORT),
        lambda: _compute_compliance_report(s, organization_id),
    )


def _compute_version_analytics(s: "Session", organization_id: int) -> VersionAnalytics:
    lag = Document.version - func.coalesce(DocumentAcknowledgment.acknowledged_version, 0)
    with storage_errors("compute version analytics", organization_id=organization_id):
        row = s.execute(
            select(
                func.count(DocumentAcknowledgment.id),
                func.count(case((DocumentAcknowledgment.requires_reacknowledgment.is_(False), 1))),
                func.count(case((DocumentAcknowledgment.requires_reacknowledgment.is_(True), 1))),
                func.count(
                    case(
                        (
                            and_(
                                DocumentAcknowledgment.requires_reacknowledgment.is_(False),
                                DocumentAcknowledgment.acknowledged_version == Document.version,
                            ),
                            1,
                        )
                    )
                ),
                func.avg(lag),
            )
            .join(Document, DocumentAcknowledgment.document_id == Document.id)
            .where(Document.organization_id == organization_id)
        ).one()
        requiring = s.scalar(
            select(func.count(Document.id)).where(
                Document.organization_id == organization_id,
                Document.requires_acknowledgment.is_(True),
            )
        )

    total = int(row[0] or 0)
    valid = int(row[1] or 0)
    stale = int(row[2] or 0)
    up_to_date = int(row[3] or 0)
    average_lag = float(row[4] or 0)
    requiring = int(requiring or 0)

    validity_rate = (valid / total) * 100 if total > 0 else 100.0
    version_compliance_rate = (up_to_date / requiring) * 100 if requiring > 0 else 100.0

    return VersionAnalytics(
        organization_id=organization_id,
        total_acknowledgments=total,
        valid_acknowledgments=valid,
        invalid_acknowledgments=total - valid,
        pending_reacknowledgments=stale,
        up_to_date_acknowledgments=up_to_date,
        total_documents_requiring_acknowledgment=requiring,
        acknowledgment_validity_rate=validity_rate,
        version_compliance_rate=version_compliance_rate,
        average_acknowledgment_lag=average_lag,
    )


def get_acknowledgment_version_analytics(
    s: "Session",
    organization_id: int,
    *,
    cache: AnalyticsCache | None = None,
) -> VersionAnalytics:
    return _cached(
        cache,
        CacheKey(organization_id, SCOPE_VERSION_ANALYTICS),
        lambda: _compute_version_analytics(s, organization_id),
    )


def get_recent_acknowledgments(
    s: "Session",
    organization_id: int,
    days: int = RECENT_ACKNOWLEDGMENT_DAYS,
    limit: int = RECENT_ACKNOWLEDGMENT_LIMIT,
) -> list[dict[str, Any]]:
    cutoff = utcnow() - timedelta(days=days)
    with storage_errors("get recent acknowledgments", organization_id=organization_id, days=days):
        rows = s.execute(
            select(DocumentAcknowledgment, Document.title, User)
            .join(Document, DocumentAcknowledgment.document_id == Document.id)
            .join(User, DocumentAcknowledgment.user_id == User.id)
            .where(
                Document.organization_id == organization_id,
                DocumentAcknowledgment.acknowledged_at >= cutoff,
            )
            .order_by(DocumentAcknowledgment.acknowledged_at.desc())
            .limit(limit)
        ).all()
    return [
        {
            "document_id": ack.document_id,
            "document_title": title,
            "user_id": user.id,
            "user_handle": user.handle or user.email,
            "acknowledged_at": ack.acknowledged_at.isoformat(),
            "acknowledged_version": ack.acknowledged_version,
        }
        for ack, title, user in rows
    ]


def get_acknowledgment_analytics(
    s: "Session",
    organization_id: int,
    *,
    days: int = RECENT_ACKNOWLEDGMENT_DAYS,
    cache: AnalyticsCache | None = None,
) -> AcknowledgmentAnalytics:
    """`days` is clamped to 1..MAX_ACKNOWLEDGMENT_WINDOW_DAYS before it becomes part of the cache key."""
    days = min(max(int(days), 1), MAX_ACKNOWLEDGMENT_WINDOW_DAYS)

    def _compute() -> AcknowledgmentAnalytics:
        return AcknowledgmentAnalytics(
            report=_compute_compliance_report(s, organization_id),
            recent_acknowledgments=get_recent_acknowledgments(s, organization_id, days=days),
            window_days=days,
        )

    return _cached(cache, CacheKey(organization_id, SCOPE_ACKNOWLEDGMENT_ANALYTICS, (days,)), _compute)
