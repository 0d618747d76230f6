from __future__ import annotations

import json
import os
import random
from typing import Any, Iterable, Optional

from flask import g, has_request_context
from sqlalchemy import event, select
from sqlalchemy.dialects import postgresql, sqlite

from cache_layer import invalidate_period_views
from db import SessionLocal, dialect_name
from models import AuditLog, Period, Setting, User
from utils import ApiError, AuthContext, iso_utc_now, parse_roles_csv


CLOSED = "CLOSED"
WRITABLE_PERIOD_STATUSES = {"OPEN", "VOTING"}

SETTING_GRANT_EXPIRY_DAYS = "grant_expiry_days"
SETTING_VOTER_ROLES = "voter_roles"
SETTING_NOMINATOR_ROLES = "nominator_roles"
SETTING_DISCARD_POLICY = "discard_policy"

_PENDING_INVALIDATIONS = "pending_period_invalidations"


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    actor: Optional[AuthContext],
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    at: str = "",
    meta: Any = None,
) -> AuditLog:
    correlation_id = ""
    if has_request_context():
        correlation_id = str(getattr(g, "request_id", "") or "")

    row = AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType=str(entityType or ""),
        entityId=str(entityId or ""),
        action=str(action or "").upper(),
        fromState=str(fromState or ""),
        toState=str(toState or ""),
        stageTag=str(stageTag or ""),
        remark=str(remark or ""),
        actorUserId=str(actor.userId) if actor else "SYSTEM",
        actorRole=str(actor.role) if actor else "SYSTEM",
        at=at or iso_utc_now(),
        correlationId=correlation_id,
        metaJson=json.dumps(meta if meta is not None else {}, default=str),
    )
    db.add(row)
    return row


def setting_raw(db, key: str) -> str:
    row = db.execute(select(Setting).where(Setting.key == str(key or "").strip())).scalar_one_or_none()
    return str(getattr(row, "value", "") or "").strip() if row else ""


def setting_int(db, key: str, default: int) -> int:
    raw = setting_raw(db, key)
    if not raw:
        return int(default)
    try:
        return int(float(json.loads(raw) if raw.startswith('"') else raw))
    except Exception:
        return int(default)


def setting_roles(db, key: str, default: Iterable[str]) -> set[str]:
    roles = parse_roles_csv(setting_raw(db, key))
    return set(roles) if roles else set(default)


def voter_roles(db, cfg) -> set[str]:
    return setting_roles(db, SETTING_VOTER_ROLES, cfg.VOTER_ROLES)


def nominator_roles(db, cfg) -> set[str]:
    return setting_roles(db, SETTING_NOMINATOR_ROLES, cfg.NOMINATOR_ROLES)


def grant_expiry_days(db, cfg) -> int:
    days = setting_int(db, SETTING_GRANT_EXPIRY_DAYS, cfg.GRANT_EXPIRY_DAYS)
    return days if days > 0 else int(cfg.GRANT_EXPIRY_DAYS)


def discard_policy(db, cfg) -> str:
    raw = setting_raw(db, SETTING_DISCARD_POLICY).strip('"').upper()
    return raw if raw in {"BALLOT", "NONE"} else str(cfg.DISCARD_POLICY)


def discard_rng(cfg) -> random.Random:
    seed = str(getattr(cfg, "DISCARD_SEED", "") or "")
    return random.Random(seed) if seed else random.SystemRandom()


def get_period(db, period_id: str) -> Period:
    period = db.execute(select(Period).where(Period.id == period_id)).scalar_one_or_none()
    if not period:
        raise ApiError("NOT_FOUND", "Period not found")
    return period


def lock_period(db, period_id: str, *, shared: bool = False) -> Period:
    """
    Row-lock the period for the rest of the transaction.

    Writers into the ledgers take the shared lock; closure takes the exclusive one,
    so no vote or nomination can land between validation and the status flip.
    """

    period = (
        db.execute(select(Period).where(Period.id == period_id).with_for_update(read=shared, of=Period))
        .scalars()
        .first()
    )
    if not period:
        raise ApiError("NOT_FOUND", "Period not found")
    return period


def lock_user(db, user_id: str) -> Optional[User]:
    """Exclusive row lock on a user; serializes candidate upkeep for that nominee within a period."""

    return db.execute(select(User).where(User.id == user_id).with_for_update(of=User)).scalars().first()


def assert_period_writable(period: Period) -> None:
    status = str(period.status or "").upper()
    if status == CLOSED:
        raise ApiError("PERIOD_CLOSED", "Period is closed")
    if status not in WRITABLE_PERIOD_STATUSES:
        raise ApiError("INVALID_STATE", f"Period is not open (status={status})")


def load_users(db, user_ids: Iterable[str]) -> dict[str, User]:
    ids = sorted({str(x) for x in user_ids if str(x or "").strip()})
    if not ids:
        return {}
    rows = db.execute(select(User).where(User.id.in_(ids))).scalars().all()
    return {str(u.id): u for u in rows}


def serialize_user(u: Optional[User]) -> Optional[dict]:
    if u is None:
        return None
    return {
        "id": str(u.id or ""),
        "name": str(u.name or ""),
        "email": str(u.email or ""),
        "role": str(u.role or ""),
        "active": bool(u.active),
    }


def user_ref(u: User) -> dict:
    return {"id": str(u.id or ""), "name": str(u.name or ""), "role": str(u.role or "")}


def or_none(value: Any) -> Optional[str]:
    s = str(value or "")
    return s or None


def _dialect_insert(db, model):
    name = dialect_name(db)
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    return None


def insert_ignore(db, model, values: dict, *, conflict_cols: list[str]) -> bool:
    """
    INSERT that tolerates an existing row on `conflict_cols`.

    Returns True when a row was inserted. Falls back to select-then-insert on
    dialects without ON CONFLICT.
    """

    stmt = _dialect_insert(db, model)
    if stmt is not None:
        res = db.execute(stmt.values(**values).on_conflict_do_nothing(index_elements=conflict_cols))
        return bool(res.rowcount)

    q = select(model)
    for col in conflict_cols:
        q = q.where(getattr(model, col) == values[col])
    if db.execute(q).scalars().first() is not None:
        return False
    db.add(model(**values))
    db.flush()
    return True


def upsert(db, model, values: dict, *, conflict_cols: list[str], update_cols: list[str]) -> None:
    stmt = _dialect_insert(db, model)
    if stmt is not None:
        ins = stmt.values(**values)
        db.execute(
            ins.on_conflict_do_update(
                index_elements=conflict_cols,
                set_={c: getattr(ins.excluded, c) for c in update_cols},
            )
        )
        return

    q = select(model)
    for col in conflict_cols:
        q = q.where(getattr(model, col) == values[col])
    row = db.execute(q).scalars().first()
    if row is None:
        db.add(model(**values))
    else:
        for c in update_cols:
            setattr(row, c, values[c])
    db.flush()


def invalidate_after_commit(db, period_id: str) -> None:
    """Queue a cache drop for the period's read views; it runs only once the session commits."""

    db.info.setdefault(_PENDING_INVALIDATIONS, set()).add(str(period_id))


@event.listens_for(SessionLocal, "after_commit")
def _run_pending_invalidations(session):
    for period_id in sorted(session.info.pop(_PENDING_INVALIDATIONS, set())):
        invalidate_period_views(period_id)


@event.listens_for(SessionLocal, "after_rollback")
def _drop_pending_invalidations(session):
    session.info.pop(_PENDING_INVALIDATIONS, None)
