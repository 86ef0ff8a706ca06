from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.orm import Session

from app.orgdocs.access import require_membership
from app.orgdocs.audit import event_to_dict, events_for_entity
from app.orgdocs.constants import MAX_ACKNOWLEDGMENT_WINDOW_DAYS, RECENT_ACKNOWLEDGMENT_DAYS
from app.orgdocs.db import db_session
from app.orgdocs.models import User
from app.orgdocs.modules.document_control import analytics, service, versioning
from app.orgdocs.modules.document_control.errors import (
    AlreadyAcknowledgedError,
    CascadeStepError,
    NotFoundError,
    StorageError,
    ValidationError,
    VersionConflictError,
)
from app.orgdocs.modules.document_control.invalidation import replay_reacknowledgment_notifications
from app.orgdocs.modules.document_control.models import Document
from app.orgdocs.notifications import NotificationSink, notification_sink_from_config

bp = Blueprint("doc_control", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # require_membership should prevent this, but keep defensive.
        raise RuntimeError("No current user")
    return u


def _cache() -> analytics.AnalyticsCache | None:
    return current_app.extensions.get("analytics_cache")


def _sink(s: Session) -> NotificationSink:
    return notification_sink_from_config(current_app.config, s)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _int_arg(name: str, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.") from None


def _error(message: str, status: int, **extra):
    return jsonify({"ok": False, "error": message, **extra}), status


@bp.errorhandler(NotFoundError)
def _not_found(e: NotFoundError):
    return _error(str(e), 404)


@bp.errorhandler(AlreadyAcknowledgedError)
def _already_acknowledged(e: AlreadyAcknowledgedError):
    return _error(str(e), 409)


@bp.errorhandler(VersionConflictError)
def _version_conflict(e: VersionConflictError):
    return _error(str(e), 409, current_version=e.actual_version)


@bp.errorhandler(ValidationError)
def _validation(e: ValidationError):
    return _error(str(e), 400)


@bp.errorhandler(CascadeStepError)
def _cascade_step(e: CascadeStepError):
    current_app.logger.error(
        "Cascade step failed step=%s document_id=%s version=%s request_id=%s",
        e.step,
        e.document_id,
        e.version_number,
        getattr(g, "request_id", None),
    )
    return _error(str(e), 500, step=e.step, document_id=e.document_id, version_number=e.version_number)


@bp.errorhandler(StorageError)
def _storage(e: StorageError):
    current_app.logger.exception("Storage failure (request_id=%s)", getattr(g, "request_id", None))
    return _error("Storage failure.", 500)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@bp.get("")
@require_membership
def list_documents(org_id: int):
    s = db_session()
    q = s.query(Document).filter(Document.organization_id == org_id)
    folder = (request.args.get("folder_path") or "").strip()
    if folder:
        q = q.filter(Document.folder_path == folder)
    docs = q.order_by(Document.folder_path.asc(), Document.title.asc()).all()
    return jsonify({"ok": True, "documents": [service.document_to_dict(d) for d in docs]})


@bp.post("")
@require_membership
def create_document(org_id: int):
    s = db_session()
    u = _current_user()
    d, v = service.create_document(s, org_id, _json_body(), u, cache=_cache())
    s.commit()
    return jsonify({"ok": True, "document": service.document_to_dict(d), "version": service.version_to_dict(v)}), 201


@bp.get("/<int:doc_id>")
@require_membership
def get_document(org_id: int, doc_id: int):
    s = db_session()
    d = service.require_document(s, doc_id, organization_id=org_id)
    return jsonify({"ok": True, "document": service.document_to_dict(d)})


@bp.patch("/<int:doc_id>")
@require_membership
def update_document(org_id: int, doc_id: int):
    s = db_session()
    u = _current_user()
    data = _json_body()
    expected_version = data.pop("expected_version", None)
    if expected_version is not None and (not isinstance(expected_version, int) or isinstance(expected_version, bool)):
        raise ValidationError("expected_version must be an integer.")

    outcome = service.handle_document_update(
        s,
        doc_id,
        data,
        u,
        sink=_sink(s),
        organization_id=org_id,
        expected_version=expected_version,
        cache=_cache(),
    )
    return jsonify({"ok": True, **outcome.as_dict()})


@bp.post("/<int:doc_id>/detect-changes")
@require_membership
def detect_changes(org_id: int, doc_id: int):
    s = db_session()
    service.require_document(s, doc_id, organization_id=org_id)
    result = service.detect_document_changes(s, doc_id, _json_body())
    return jsonify({"ok": True, "classification": result.as_dict()})


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


@bp.get("/<int:doc_id>/versions")
@require_membership
def version_history(org_id: int, doc_id: int):
    s = db_session()
    service.require_document(s, doc_id, organization_id=org_id)
    versions = versioning.get_version_history(s, doc_id)
    return jsonify({"ok": True, "versions": [service.version_to_dict(v) for v in versions]})


@bp.get("/<int:doc_id>/audit")
@require_membership
def audit_trail(org_id: int, doc_id: int):
    s = db_session()
    service.require_document(s, doc_id, organization_id=org_id)
    limit = _int_arg("limit", 200)
    events = events_for_entity(s, "Document", doc_id, limit=limit)
    return jsonify({"ok": True, "events": [event_to_dict(e) for e in events]})


@bp.get("/<int:doc_id>/versions/statistics")
@require_membership
def version_statistics(org_id: int, doc_id: int):
    s = db_session()
    service.require_document(s, doc_id, organization_id=org_id)
    return jsonify({"ok": True, "statistics": versioning.get_version_statistics(s, doc_id).as_dict()})


@bp.get("/<int:doc_id>/versions/compare")
@require_membership
def compare_versions(org_id: int, doc_id: int):
    s = db_session()
    service.require_document(s, doc_id, organization_id=org_id)
    from_version = _int_arg("from")
    to_version = _int_arg("to")
    if from_version is None or to_version is None:
        raise ValidationError("Both from and to version numbers are required.")
    comparison = versioning.compare_versions(s, doc_id, from_version, to_version)
    return jsonify({"ok": True, "comparison": comparison.as_dict()})


@bp.get("/<int:doc_id>/versions/<int:version_number>")
@require_membership
def get_version(org_id: int, doc_id: int, version_number: int):
    s = db_session()
    service.require_document(s, doc_id, organization_id=org_id)
    v = versioning.require_version(s, doc_id, version_number)
    return jsonify({"ok": True, "version": service.version_to_dict(v)})


@bp.post("/<int:doc_id>/versions/<int:version_number>/notifications/replay")
@require_membership
def replay_notifications(org_id: int, doc_id: int, version_number: int):
    s = db_session()
    service.require_document(s, doc_id, organization_id=org_id)
    data = request.get_json(silent=True) or {}
    user_ids = data.get("user_ids") if isinstance(data, dict) else None
    sent = replay_reacknowledgment_notifications(
        s,
        _sink(s),
        document_id=doc_id,
        version_number=version_number,
        user_ids=user_ids,
    )
    s.commit()
    return jsonify({"ok": True, "notifications_sent": sent})


# ---------------------------------------------------------------------------
# Acknowledgments
# ---------------------------------------------------------------------------


@bp.post("/<int:doc_id>/acknowledge")
@require_membership
def acknowledge(org_id: int, doc_id: int):
    s = db_session()
    u = _current_user()
    data = request.get_json(silent=True) or {}
    notes = data.get("notes") if isinstance(data, dict) else None
    notes = notes.strip() or None if isinstance(notes, str) else None
    result = service.acknowledge_document_version(
        s,
        org_id,
        doc_id,
        u,
        ip_address=request.remote_addr,
        notes=notes,
        sink=_sink(s),
        cache=_cache(),
    )
    s.commit()
    ack = result.acknowledgment
    return jsonify(
        {
            "ok": True,
            "is_reacknowledgment": result.is_reacknowledgment,
            "acknowledgment": {
                "document_id": ack.document_id,
                "user_id": ack.user_id,
                "acknowledged_version": ack.acknowledged_version,
                "acknowledged_at": ack.acknowledged_at.isoformat(),
            },
        }
    )


@bp.post("/acknowledge/bulk")
@require_membership
def bulk_acknowledge(org_id: int):
    s = db_session()
    u = _current_user()
    ids = _json_body().get("document_ids")
    if not isinstance(ids, list) or not ids or not all(isinstance(i, int) for i in ids):
        raise ValidationError("document_ids must be a non-empty list of document ids.")
    result = service.bulk_acknowledge_documents(
        s,
        org_id,
        ids,
        u,
        ip_address=request.remote_addr,
        sink=_sink(s),
        cache=_cache(),
    )
    s.commit()
    return jsonify(
        {
            "ok": True,
            "success": result.success,
            "failed": result.failed,
            "errors": result.errors,
            "acknowledged_documents": result.acknowledged_documents,
        }
    )


@bp.get("/<int:doc_id>/acknowledgment-status")
@require_membership
def my_acknowledgment_status(org_id: int, doc_id: int):
    s = db_session()
    u = _current_user()
    service.require_document(s, doc_id, organization_id=org_id)
    status = service.get_acknowledgment_version_status(s, doc_id, u.id)
    return jsonify({"ok": True, "status": status.as_dict()})


@bp.get("/<int:doc_id>/acknowledgments")
@require_membership
def document_acknowledgments(org_id: int, doc_id: int):
    s = db_session()
    u = _current_user()
    status = analytics.get_document_acknowledgment_status(s, org_id, doc_id, u.id)
    return jsonify({"ok": True, "status": status.as_dict()})


@bp.get("/reacknowledgments/pending")
@require_membership
def pending_reacknowledgments(org_id: int):
    s = db_session()
    pending = service.get_users_requiring_reacknowledgment(s, org_id, _int_arg("document_id"))
    return jsonify({"ok": True, "pending": [p.as_dict() for p in pending]})


@bp.post("/reminders")
@require_membership
def send_reminders(org_id: int):
    s = db_session()
    data = request.get_json(silent=True) or {}
    document_id = data.get("document_id") if isinstance(data, dict) else None
    if document_id is not None and not isinstance(document_id, int):
        raise ValidationError("document_id must be an integer.")
    counts = service.send_acknowledgment_reminders(s, org_id, _sink(s), document_id=document_id)
    s.commit()
    return jsonify({"ok": True, **counts})


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


@bp.get("/analytics/compliance")
@require_membership
def compliance_report(org_id: int):
    s = db_session()
    report = analytics.get_compliance_report(s, org_id, cache=_cache())
    return jsonify({"ok": True, "report": report.as_dict()})


@bp.get("/analytics/versions")
@require_membership
def version_analytics(org_id: int):
    s = db_session()
    result = analytics.get_acknowledgment_version_analytics(s, org_id, cache=_cache())
    return jsonify({"ok": True, "analytics": result.as_dict()})


@bp.get("/analytics/acknowledgments")
@require_membership
def acknowledgment_analytics(org_id: int):
    s = db_session()
    days = _int_arg("days", RECENT_ACKNOWLEDGMENT_DAYS)
    if days is None or not 1 <= days <= MAX_ACKNOWLEDGMENT_WINDOW_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_ACKNOWLEDGMENT_WINDOW_DAYS}.")
    result = analytics.get_acknowledgment_analytics(s, org_id, days=days, cache=_cache())
    return jsonify({"ok": True, "analytics": result.as_dict()})
