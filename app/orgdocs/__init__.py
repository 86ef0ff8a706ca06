import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv

from app.orgdocs.config import load_config
from app.orgdocs.db import init_db, teardown_db_session
from app.orgdocs.routes import bp as routes_bp
from app.orgdocs.auth import bp as auth_bp, load_current_user
from app.orgdocs.modules.document_control.admin import bp as doc_control_bp
from app.orgdocs.modules.document_control.analytics import AnalyticsCache
from app.orgdocs.notifications import NOTIFICATION_BACKENDS


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL") or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(app.config.get("LOG_LEVEL") or "INFO")

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    if app.config.get("NOTIFICATION_BACKEND") not in NOTIFICATION_BACKENDS:
        raise RuntimeError(f"Unsupported NOTIFICATION_BACKEND: {app.config.get('NOTIFICATION_BACKEND')!r}")

    init_db(app)

    app.extensions["analytics_cache"] = AnalyticsCache(
        ttl_seconds=app.config["ANALYTICS_CACHE_TTL_SECONDS"],
        serve_stale_on_error=app.config["ANALYTICS_CACHE_SERVE_STALE"],
    )

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(doc_control_bp, url_prefix="/api/organizations/<int:org_id>/documents")

    @app.before_request
    def _session_permanent():
        if request.path.startswith(("/health", "/healthz")):
            return None
        session.permanent = True

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"ok": False, "error": "Not found."}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"ok": False, "error": "Request body too large."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"ok": False, "error": "Internal server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
