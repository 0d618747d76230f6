from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import or_, select

from actions.helpers import load_users, or_none, serialize_user
from cache_layer import LEADERBOARD_KEY, cache_get_or_set
from models import AuditLog, HomeOfficeGrant
from utils import ApiError, require_id, to_iso_utc


AUDIT_DEFAULT_LIMIT = 100
AUDIT_MAX_LIMIT = 500


def serialize_grant(gr: HomeOfficeGrant) -> dict:
    return {
        "id": str(gr.id),
        "userId": str(gr.userId),
        "periodId": or_none(gr.periodId),
        "days": int(gr.days or 0),
        "source": str(gr.source or ""),
        "expiresAt": or_none(gr.expiresAt),
        "redeemed": bool(gr.redeemed),
        "redeemedAt": or_none(gr.redeemedAt),
        "notes": or_none(gr.notes),
        "createdAt": or_none(gr.createdAt),
    }


def _parse_available(value) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in {"true", "1"}:
        return True
    if s in {"false", "0"}:
        return False
    raise ApiError("BAD_REQUEST", "available must be true or false")


def user_grants(data, auth, db, cfg):
    user_id = require_id((data or {}).get("userId"), "userId")
    available = _parse_available((data or {}).get("available"))

    q = select(HomeOfficeGrant).where(HomeOfficeGrant.userId == user_id)
    if available is True:
        now = to_iso_utc(datetime.now(timezone.utc))
        # ISO-8601 UTC text with a fixed layout compares correctly as strings.
        q = q.where(
            HomeOfficeGrant.redeemed.is_(False),
            or_(HomeOfficeGrant.expiresAt == "", HomeOfficeGrant.expiresAt >= now),
        ).order_by(HomeOfficeGrant.expiresAt.asc(), HomeOfficeGrant.id.asc())
    elif available is False:
        q = q.where(HomeOfficeGrant.redeemed.is_(True)).order_by(HomeOfficeGrant.redeemedAt.desc())
    else:
        q = q.order_by(HomeOfficeGrant.createdAt.desc(), HomeOfficeGrant.id.asc())

    return [serialize_grant(gr) for gr in db.execute(q).scalars().all()]


def _build_leaderboard(db) -> list[dict]:
    rows = db.execute(select(HomeOfficeGrant.userId, HomeOfficeGrant.days, HomeOfficeGrant.source)).all()

    acc: dict[str, dict] = {}
    for user_id, days, source in rows:
        e = acc.setdefault(str(user_id), {"totalDays": 0, "normalDays": 0, "bonusDays": 0, "grantsCount": 0})
        d = int(days or 0)
        e["totalDays"] += d
        e["grantsCount"] += 1
        if str(source or "").upper() == "NORMAL":
            e["normalDays"] += d
        else:
            e["bonusDays"] += d

    users = load_users(db, acc.keys())
    out = [{"userId": uid, "user": serialize_user(users.get(uid)), **e} for uid, e in acc.items()]
    out.sort(key=lambda x: (-x["totalDays"], x["userId"]))
    return out


def leaderboard_grants(data, auth, db, cfg):
    return cache_get_or_set(LEADERBOARD_KEY, lambda: _build_leaderboard(db))


def audit_query(data, auth, db, cfg):
    raw_limit = (data or {}).get("limit")
    try:
        limit = int(raw_limit) if raw_limit not in (None, "") else AUDIT_DEFAULT_LIMIT
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "limit must be an integer")
    limit = max(1, min(AUDIT_MAX_LIMIT, limit))

    q = select(AuditLog)
    entity_type = str((data or {}).get("entityType") or "").strip().upper()
    if entity_type:
        q = q.where(AuditLog.entityType == entity_type)
    entity_id = str((data or {}).get("entityId") or "").strip()
    if entity_id:
        q = q.where(AuditLog.entityId == entity_id)

    rows = db.execute(q.order_by(AuditLog.at.desc(), AuditLog.logId.desc()).limit(limit)).scalars().all()
    out = []
    for r in rows:
        try:
            meta = json.loads(r.metaJson or "{}")
        except Exception:
            meta = {}
        out.append(
            {
                "logId": r.logId,
                "entityType": r.entityType,
                "entityId": r.entityId,
                "action": r.action,
                "fromState": r.fromState,
                "toState": r.toState,
                "stageTag": r.stageTag,
                "remark": r.remark,
                "actorUserId": r.actorUserId,
                "actorRole": r.actorRole,
                "at": r.at,
                "correlationId": r.correlationId,
                "meta": meta,
            }
        )
    return out
