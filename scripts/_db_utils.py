from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.orgdocs.db import enable_sqlite_foreign_keys, engine_options
from app.orgdocs.models import Base


def create_script_engine(db_url: str) -> Engine:
    engine = create_engine(db_url, **engine_options(db_url, os.environ))
    if db_url.startswith("sqlite"):
        enable_sqlite_foreign_keys(engine)
    return engine


@contextmanager
def script_session(db_url: str, *, create_schema: bool = False):
    """
    One-shot session for maintenance scripts. Commits on success.

    create_schema runs metadata.create_all first; use it for local SQLite
    databases that have not been through alembic.
    """
    engine = create_script_engine(db_url)
    if create_schema:
        Base.metadata.create_all(bind=engine)
    s: Session = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
