from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from collections.abc import Generator, Mapping
from typing import Any

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def engine_options(db_url: str, config: Mapping[str, Any]) -> dict[str, Any]:
    opts: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        opts.update(
            pool_recycle=1800,
            pool_size=int(config.get("DB_POOL_SIZE") or 5),
            max_overflow=int(config.get("DB_MAX_OVERFLOW") or 10),
            pool_timeout=30,
        )
    return opts


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    # Without this pragma SQLite accepts dangling document/user references.
    @event.listens_for(engine, "connect")
    def _fk_pragma(dbapi_connection, connection_record):  # type: ignore[no-redef]
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def _dispose_after_fork(engine: Engine) -> None:
    if not hasattr(os, "register_at_fork"):
        return

    def _child() -> None:
        engine.dispose(close=False)
        logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_child)


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **engine_options(db_url, app.config))
    if db_url.startswith("sqlite"):
        enable_sqlite_foreign_keys(engine)
    _dispose_after_fork(engine)

    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    logger.debug("Database engine ready (%s)", engine.url.render_as_string(hide_password=True))


def db_session(app: Flask | None = None) -> Session:
    """Request-scoped session, closed on app-context teardown."""
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        sm = (app or current_app).extensions["sqlalchemy_sessionmaker"]
        s = sm()
        g.db_session = s
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is not None:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Session outside a request (scripts, tests). Commits when the block exits
    cleanly and rolls back otherwise.
    """
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
