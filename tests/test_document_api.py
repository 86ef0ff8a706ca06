import pytest
from werkzeug.security import generate_password_hash

from app.orgdocs import create_app
from app.orgdocs.db import session_scope
from app.orgdocs.models import AuditEvent, Base, Notification, Organization, OrganizationMember, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATION_BACKEND", "database")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        acme = Organization(name="Acme")
        other = Organization(name="Other")
        admin = User(email="admin@example.com", handle="admin", password_hash=generate_password_hash("pw"))
        reader = User(email="reader@example.com", handle="reader", password_hash=generate_password_hash("pw"))
        outsider = User(email="outsider@example.com", password_hash=generate_password_hash("pw"))
        s.add_all([acme, other, admin, reader, outsider])
        s.flush()
        s.add_all(
            [
                OrganizationMember(organization_id=acme.id, user_id=admin.id, role_key="admin"),
                OrganizationMember(organization_id=acme.id, user_id=reader.id, role_key="staff"),
                OrganizationMember(organization_id=other.id, user_id=outsider.id),
            ]
        )

    return app.test_client()


def _org_id(client, name="Acme"):
    with session_scope(client.application) as s:
        return s.query(Organization).filter(Organization.name == name).one().id


def _login(client, email):
    r = client.post("/auth/login", data={"email": email, "password": "pw"})
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_requires_login_and_membership(client):
    org_id = _org_id(client)
    r = client.get(f"/api/organizations/{org_id}/documents")
    assert r.status_code == 401

    _login(client, "outsider@example.com")
    r = client.get(f"/api/organizations/{org_id}/documents")
    assert r.status_code == 403


def test_bad_credentials_rejected(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 401
    with session_scope(client.application) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").count() == 1


def test_document_acknowledgment_vertical_slice(client):
    org_id = _org_id(client)
    base = f"/api/organizations/{org_id}/documents"

    _login(client, "admin@example.com")
    r = client.post(
        base,
        json={"title": "Security Policy", "content": "x" * 100, "requires_acknowledgment": True},
    )
    assert r.status_code == 201
    doc_id = r.json["document"]["id"]
    assert r.json["document"]["version"] == 1
    assert r.json["version"]["change_summary"] == "Initial version"

    r = client.get(base)
    assert [d["id"] for d in r.json["documents"]] == [doc_id]

    # reader acknowledges; a second attempt conflicts
    client.post("/auth/logout")
    _login(client, "reader@example.com")
    r = client.post(f"{base}/{doc_id}/acknowledge", json={"notes": "read it"})
    assert r.status_code == 200
    assert r.json["is_reacknowledgment"] is False
    assert r.json["acknowledgment"]["acknowledged_version"] == 1

    r = client.post(f"{base}/{doc_id}/acknowledge")
    assert r.status_code == 409
    assert r.json["ok"] is False

    # admin makes a significant edit
    client.post("/auth/logout")
    _login(client, "admin@example.com")
    r = client.post(f"{base}/{doc_id}/detect-changes", json={"content": "x" * 150})
    assert r.status_code == 200
    assert r.json["classification"]["requires_reacknowledgment"] is True

    r = client.patch(f"{base}/{doc_id}", json={"content": "x" * 150, "expected_version": 1})
    assert r.status_code == 200
    assert r.json["version_number"] == 2
    assert r.json["notifications_sent"] == 1
    assert r.json["classification"]["change_summary"] == "Content modified"

    r = client.patch(f"{base}/{doc_id}", json={"title": "Late edit", "expected_version": 1})
    assert r.status_code == 409
    assert r.json["current_version"] == 2

    r = client.get(f"{base}/reacknowledgments/pending")
    assert len(r.json["pending"]) == 1
    assert r.json["pending"][0]["versions_behind"] == 1

    r = client.get(f"{base}/analytics/compliance")
    assert r.json["report"]["pending_acknowledgments"] == 2
    assert r.json["report"]["total_acknowledgments"] == 0

    r = client.get(f"{base}/{doc_id}/versions")
    assert [v["version_number"] for v in r.json["versions"]] == [2, 1]

    r = client.get(f"{base}/{doc_id}/versions/compare?from=1&to=2")
    assert r.status_code == 200
    assert r.json["comparison"]["changes"]["content_changed"] is True

    r = client.get(f"{base}/{doc_id}/versions/9")
    assert r.status_code == 404

    # reader re-acknowledges the new version
    client.post("/auth/logout")
    _login(client, "reader@example.com")
    r = client.get(f"{base}/{doc_id}/acknowledgment-status")
    assert r.json["status"]["acknowledgment_gap"] == 1
    assert r.json["status"]["is_valid"] is False

    r = client.post(f"{base}/{doc_id}/acknowledge")
    assert r.status_code == 200
    assert r.json["is_reacknowledgment"] is True
    assert r.json["acknowledgment"]["acknowledged_version"] == 2

    r = client.get(f"{base}/analytics/versions")
    assert r.json["analytics"]["acknowledgment_validity_rate"] == 100

    with session_scope(client.application) as s:
        reader = s.query(User).filter(User.email == "reader@example.com").one()
        kinds = [
            n.entity_type
            for n in s.query(Notification).filter(Notification.user_id == reader.id).order_by(Notification.id.asc())
        ]
        assert kinds == ["document.requires_reacknowledgment"]
        actions = {e.action for e in s.query(AuditEvent).all()}
        assert {"doc.create", "doc.update", "doc.acknowledge", "doc.reacknowledge"} <= actions

    r = client.get(f"{base}/{doc_id}/audit")
    trail = [e["action"] for e in r.json["events"]]
    assert trail[0] == "doc.reacknowledge"
    assert "doc.acknowledgments_invalidate" in trail
    assert trail[-1] == "doc.create"
    assert r.json["events"][0]["metadata"]["acknowledged_version"] == 2


def test_validation_errors_return_400(client):
    org_id = _org_id(client)
    base = f"/api/organizations/{org_id}/documents"
    _login(client, "admin@example.com")

    r = client.post(base, json={"title": "Empty", "content": ""})
    assert r.status_code == 400
    assert "Content cannot be empty" in r.json["error"]

    r = client.post(base, json={"title": "Roles", "content": "body", "access_roles": "admin"})
    assert r.status_code == 400

    r = client.get(f"{base}/12345")
    assert r.status_code == 404

    r = client.get(f"{base}/analytics/acknowledgments?days=100000")
    assert r.status_code == 400


def test_document_from_other_organization_is_not_found(client):
    other_id = _org_id(client, "Other")
    _login(client, "outsider@example.com")
    r = client.post(f"/api/organizations/{other_id}/documents", json={"title": "Theirs", "content": "body"})
    doc_id = r.json["document"]["id"]
    client.post("/auth/logout")

    _login(client, "admin@example.com")
    acme_id = _org_id(client)
    r = client.get(f"/api/organizations/{acme_id}/documents/{doc_id}")
    assert r.status_code == 404


def test_bulk_acknowledge_and_reminders(client):
    org_id = _org_id(client)
    base = f"/api/organizations/{org_id}/documents"
    _login(client, "admin@example.com")
    ids = [
        client.post(base, json={"title": f"Doc {i}", "content": "body", "requires_acknowledgment": True}).json[
            "document"
        ]["id"]
        for i in range(2)
    ]

    r = client.post(f"{base}/acknowledge/bulk", json={"document_ids": ids + [999]})
    assert r.status_code == 200
    assert r.json["success"] == 2
    assert r.json["failed"] == 1

    r = client.post(f"{base}/reminders", json={})
    assert r.json == {"ok": True, "sent": 2, "failed": 0}


def test_login_is_rate_limited_per_address(client):
    client.application.config["LOGIN_RATE_LIMIT"] = 2
    env = {"REMOTE_ADDR": "10.9.8.7"}
    bad = {"email": "admin@example.com", "password": "nope"}

    assert client.post("/auth/login", data=bad, environ_base=env).status_code == 401
    assert client.post("/auth/login", data=bad, environ_base=env).status_code == 401
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, environ_base=env)
    assert r.status_code == 429

    # other addresses are unaffected
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, environ_base={"REMOTE_ADDR": "10.9.8.8"})
    assert r.status_code == 200


def test_replay_never_notifies_users_outside_the_stale_set(client):
    org_id = _org_id(client)
    base = f"/api/organizations/{org_id}/documents"
    with session_scope(client.application) as s:
        outsider_id = s.query(User).filter(User.email == "outsider@example.com").one().id
        reader_id = s.query(User).filter(User.email == "reader@example.com").one().id

    _login(client, "admin@example.com")
    doc_id = client.post(
        base, json={"title": "Policy", "content": "x" * 100, "requires_acknowledgment": True}
    ).json["document"]["id"]

    # initial version: nothing was ever invalidated
    r = client.post(f"{base}/{doc_id}/versions/1/notifications/replay", json={"user_ids": [outsider_id] * 3})
    assert r.status_code == 200
    assert r.json["notifications_sent"] == 0

    client.post("/auth/logout")
    _login(client, "reader@example.com")
    client.post(f"{base}/{doc_id}/acknowledge")
    client.post("/auth/logout")
    _login(client, "admin@example.com")
    client.patch(f"{base}/{doc_id}", json={"content": "x" * 150})

    r = client.post(
        f"{base}/{doc_id}/versions/2/notifications/replay", json={"user_ids": [outsider_id, reader_id, reader_id]}
    )
    assert r.json["notifications_sent"] == 1

    r = client.post(f"{base}/{doc_id}/versions/2/notifications/replay", json={"user_ids": "everyone"})
    assert r.status_code == 400

    with session_scope(client.application) as s:
        assert s.query(Notification).filter(Notification.user_id == outsider_id).count() == 0
