from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()

# Bound lazily by init_engine(); modules import this object directly.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

engine: Optional[Engine] = None

_log = logging.getLogger("db")


def _sqlite_pragmas(dbapi_conn, _record):
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA busy_timeout=5000")
    finally:
        cur.close()


def init_engine(database_url: str, *, pool_size: int = 5, max_overflow: int = 10) -> Engine:
    global engine

    if engine is not None:
        engine.dispose()

    url = str(database_url or "").strip()
    if url.startswith("sqlite"):
        eng = create_engine(url, connect_args={"check_same_thread": False}, future=True)
        event.listen(eng, "connect", _sqlite_pragmas)
    else:
        eng = create_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
            future=True,
        )

    SessionLocal.configure(bind=eng)
    engine = eng
    _log.info("engine initialized dialect=%s", eng.dialect.name)
    return eng


def dialect_name(db) -> str:
    bind = db.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", "") or "")


def ping_db() -> bool:
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def get_pool_stats() -> dict[str, Any]:
    if engine is None:
        return {"initialized": False}
    pool = engine.pool
    out: dict[str, Any] = {"initialized": True, "dialect": engine.dialect.name, "pool": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            try:
                out[name] = int(fn())
            except Exception:
                pass
    return out
