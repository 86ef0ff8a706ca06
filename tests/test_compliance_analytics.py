import pytest
from werkzeug.security import generate_password_hash

from app.orgdocs import create_app
from app.orgdocs.db import session_scope
from app.orgdocs.models import Base, Organization, OrganizationMember, User
from app.orgdocs.modules.document_control import service
from app.orgdocs.modules.document_control.analytics import (
    AnalyticsCache,
    get_acknowledgment_analytics,
    get_acknowledgment_version_analytics,
    get_compliance_report,
    get_document_acknowledgment_status,
)
from app.orgdocs.modules.document_control.errors import NotFoundError
from app.orgdocs.notifications import LoggingNotificationSink


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        acme = Organization(name="Acme")
        empty = Organization(name="Empty Co")
        users = [
            User(email=f"user{i}@example.com", handle=f"user{i}", password_hash=generate_password_hash("pw"))
            for i in (1, 2, 3, 4)
        ]
        s.add_all([acme, empty] + users)
        s.flush()
        s.add_all([OrganizationMember(organization_id=acme.id, user_id=u.id) for u in users[:3]])
        # former member: never counted
        s.add(OrganizationMember(organization_id=acme.id, user_id=users[3].id, is_active=False))

    return app


def _setup(app):
    """Acme document at version 3 after a significant edit; user2 re-acknowledged, user3 is stale."""
    with session_scope(app) as s:
        org = s.query(Organization).filter(Organization.name == "Acme").one()
        u1, u2, u3, _ = s.query(User).order_by(User.id.asc()).all()
        d, _ = service.create_document(
            s, org.id, {"title": "Handbook", "content": "x" * 100, "requires_acknowledgment": True}, u1
        )
        service.create_document(s, org.id, {"title": "Lunch menu", "content": "soup"}, u1)
        s.commit()

        service.handle_document_update(s, d.id, {"title": "Handbook v2"}, u1, sink=LoggingNotificationSink())
        service.acknowledge_document_version(s, org.id, d.id, u2)
        service.acknowledge_document_version(s, org.id, d.id, u3)
        s.commit()

        service.handle_document_update(s, d.id, {"content": "x" * 200}, u1, sink=LoggingNotificationSink())
        service.acknowledge_document_version(s, org.id, d.id, u2)
        s.commit()
        return org.id, d.id, (u1.id, u2.id, u3.id)


def test_empty_organization_is_fully_compliant(app):
    with session_scope(app) as s:
        org = s.query(Organization).filter(Organization.name == "Empty Co").one()
        report = get_compliance_report(s, org.id)
        assert report.compliance_rate == 100
        assert report.pending_acknowledgments == 0
        assert report.expected_acknowledgments == 0

        va = get_acknowledgment_version_analytics(s, org.id)
        assert va.acknowledgment_validity_rate == 100
        assert va.version_compliance_rate == 100
        assert va.average_acknowledgment_lag == 0


def test_documents_without_acknowledgment_requirement_are_compliant(app):
    with session_scope(app) as s:
        org = s.query(Organization).filter(Organization.name == "Acme").one()
        u1 = s.query(User).order_by(User.id.asc()).first()
        service.create_document(s, org.id, {"title": "FYI", "content": "hello"}, u1)
        s.commit()
        report = get_compliance_report(s, org.id)
        assert report.total_documents == 1
        assert report.documents_requiring_acknowledgment == 0
        assert report.compliance_rate == 100


def test_compliance_report_counts_valid_acknowledgments(app):
    org_id, _, _ = _setup(app)
    with session_scope(app) as s:
        report = get_compliance_report(s, org_id)
        assert report.total_documents == 2
        assert report.documents_requiring_acknowledgment == 1
        assert report.active_member_count == 3
        assert report.expected_acknowledgments == 3
        assert report.total_acknowledgments == 1
        assert report.stale_acknowledgments == 1
        assert report.pending_acknowledgments == 2
        assert report.compliance_rate == pytest.approx(100 / 3)


def test_version_analytics(app):
    org_id, _, _ = _setup(app)
    with session_scope(app) as s:
        va = get_acknowledgment_version_analytics(s, org_id)
        assert va.total_acknowledgments == 2
        assert va.valid_acknowledgments == 1
        assert va.invalid_acknowledgments == 1
        assert va.pending_reacknowledgments == 1
        assert va.up_to_date_acknowledgments == 1
        assert va.acknowledgment_validity_rate == 50
        assert va.version_compliance_rate == 100
        # user2 at 3/3, user3 at 2/3
        assert va.average_acknowledgment_lag == pytest.approx(0.5)


def test_document_acknowledgment_status(app):
    org_id, doc_id, (u1, u2, u3) = _setup(app)
    with session_scope(app) as s:
        status = get_document_acknowledgment_status(s, org_id, doc_id, current_user_id=u2)
        assert status.total_required == 3
        assert status.total_acknowledged == 1
        assert status.acknowledgment_rate == pytest.approx(1 / 3)
        assert status.current_user_acknowledged is True
        by_user = {m.user_id: m for m in status.members}
        assert set(by_user) == {u1, u2, u3}
        assert by_user[u1].acknowledged_at is None
        assert by_user[u3].acknowledged_version == 2
        assert by_user[u3].is_valid is False
        assert by_user[u2].ip_address is None

        other = s.query(Organization).filter(Organization.name == "Empty Co").one()
        with pytest.raises(NotFoundError):
            get_document_acknowledgment_status(s, other.id, doc_id)


def test_document_status_without_members_has_zero_rate(app):
    with session_scope(app) as s:
        org = s.query(Organization).filter(Organization.name == "Empty Co").one()
        u1 = s.query(User).order_by(User.id.asc()).first()
        d, _ = service.create_document(s, org.id, {"title": "T", "content": "c", "requires_acknowledgment": True}, u1)
        s.commit()
        status = get_document_acknowledgment_status(s, org.id, d.id)
        assert status.total_required == 0
        assert status.acknowledgment_rate == 0


def test_acknowledgment_analytics_lists_recent_acknowledgments(app):
    org_id, doc_id, (_, u2, u3) = _setup(app)
    with session_scope(app) as s:
        result = get_acknowledgment_analytics(s, org_id)
        assert result.window_days == 30
        assert {r["user_id"] for r in result.recent_acknowledgments} == {u2, u3}
        assert result.as_dict()["pending_acknowledgments"] == 2


def test_acknowledgment_window_is_clamped_before_caching(app):
    org_id, _, _ = _setup(app)
    cache = AnalyticsCache(ttl_seconds=300)
    with session_scope(app) as s:
        assert get_acknowledgment_analytics(s, org_id, days=100000, cache=cache).window_days == 365
        assert get_acknowledgment_analytics(s, org_id, days=5000, cache=cache).window_days == 365
        assert get_acknowledgment_analytics(s, org_id, days=-3, cache=cache).window_days == 1
        assert len(cache) == 2


def test_cached_report_is_invalidated_by_acknowledgment(app):
    org_id, doc_id, (u1, _, _) = _setup(app)
    cache = AnalyticsCache(ttl_seconds=300)
    with session_scope(app) as s:
        first = get_compliance_report(s, org_id, cache=cache)
        assert first.pending_acknowledgments == 2
        assert len(cache) == 1

        service.acknowledge_document_version(s, org_id, doc_id, s.get(User, u1), cache=cache)
        s.commit()
        assert len(cache) == 0

        second = get_compliance_report(s, org_id, cache=cache)
        assert second.pending_acknowledgments == 1
