import pytest

from app.orgdocs import create_app
from app.orgdocs.models import Base


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_analytics_cache_built_from_config(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ANALYTICS_CACHE_TTL_SECONDS", "30")
    monkeypatch.setenv("ANALYTICS_CACHE_SERVE_STALE", "0")

    app = create_app()
    cache = app.extensions["analytics_cache"]
    assert cache.ttl_seconds == 30
    assert cache.serve_stale_on_error is False


def test_production_requires_postgres(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    with pytest.raises(RuntimeError):
        create_app()


def test_unknown_notification_backend_fails_fast(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("NOTIFICATION_BACKEND", "pigeon")
    with pytest.raises(RuntimeError):
        create_app()


def test_bad_integer_setting_fails_fast(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ANALYTICS_CACHE_TTL_SECONDS", "five minutes")
    with pytest.raises(RuntimeError):
        create_app()
