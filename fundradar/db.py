"""SQLite engine and session management.

The engine is process-global and created by ``init_db`` (called from the
app lifespan). ``FUNDRADAR_DB`` points it at another file, which tests use to
keep the lifespan away from the packaged data directory.
"""
from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from fundradar.models import Base

log = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"

_lock = threading.Lock()
_engine = None
_SessionLocal = None
_db_path: Path | None = None


def default_db_path() -> Path:
    """``FUNDRADAR_DB`` if set, else ``data/fundradar.db`` beside the package."""
    override = os.environ.get("FUNDRADAR_DB", "").strip()
    return Path(override) if override else DATA_DIR / "fundradar.db"


def init_db(db_path: str | Path | None = None) -> None:
    """(Re)create the engine for *db_path* and make sure all tables exist."""
    global _engine, _SessionLocal, _db_path
    path = Path(db_path) if db_path is not None else default_db_path()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _db_path = path
    log.info("Database ready at %s", path)


def current_db_path() -> Path | None:
    return _db_path


def get_session() -> Session:
    with _lock:
        factory = _SessionLocal
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


def session_generator() -> Generator[Session, None, None]:
    """Yield a session, rolling back if the consumer raises. Usable with ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# Same lifecycle for scripts: ``with session_scope() as session: ...``
session_scope = contextmanager(session_generator)
