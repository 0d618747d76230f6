from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as dt_parser
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from actions.closure import validate_closure
from actions.helpers import (
    CLOSED,
    append_audit,
    discard_policy,
    discard_rng,
    get_period,
    grant_expiry_days,
    invalidate_after_commit,
    load_users,
    lock_period,
    nominator_roles,
    or_none,
    serialize_user,
    voter_roles,
)
from actions.tally import run_tally
from cache_layer import cache_get_or_set, results_key
from models import Period, Tally
from utils import ApiError, AuthContext, new_prefixed_id, optional_bool, optional_text, require_id, to_iso_utc


log = logging.getLogger("periods")


def serialize_period(p: Period) -> dict:
    return {
        "id": str(p.id),
        "weekLabel": str(p.weekLabel or ""),
        "startDate": str(p.startDate or ""),
        "endDate": str(p.endDate or ""),
        "status": str(p.status or ""),
        "createdAt": or_none(p.createdAt),
        "closedAt": or_none(p.closedAt),
    }


def _parse_date(value: Any, field: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", f"Missing {field}")
    try:
        return dt_parser.parse(s).date().isoformat()
    except (ValueError, OverflowError):
        raise ApiError("BAD_REQUEST", f"Invalid {field}")


def period_create(data, auth: Optional[AuthContext], db, cfg):
    week_label = optional_text((data or {}).get("weekLabel"), "weekLabel", max_len=50)
    if not week_label:
        raise ApiError("BAD_REQUEST", "Missing weekLabel")
    start = _parse_date((data or {}).get("startDate"), "startDate")
    end = _parse_date((data or {}).get("endDate"), "endDate")
    if end < start:
        raise ApiError("BAD_REQUEST", "endDate must not be before startDate")

    now = to_iso_utc(datetime.now(timezone.utc))
    period = Period(
        id=new_prefixed_id("PER"),
        weekLabel=week_label,
        startDate=start,
        endDate=end,
        status="OPEN",
        createdAt=now,
        createdBy=str(auth.userId) if auth else "",
        closedAt="",
        closedBy="",
    )
    db.add(period)
    append_audit(
        db,
        entityType="PERIOD",
        entityId=period.id,
        action="PERIOD_CREATE",
        toState="OPEN",
        actor=auth,
        at=now,
        meta={"weekLabel": week_label, "startDate": start, "endDate": end},
    )
    return serialize_period(period)


def period_list(data, auth, db, cfg):
    rows = db.execute(select(Period).order_by(Period.createdAt.desc(), Period.id.desc())).scalars().all()
    return [serialize_period(p) for p in rows]


def period_current(data, auth, db, cfg):
    row = (
        db.execute(
            select(Period)
            .where(Period.status != CLOSED)
            .order_by(Period.createdAt.desc(), Period.id.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )
    return serialize_period(row) if row else None


def _load_results(db, period_id: str) -> list[dict]:
    tallies = (
        db.execute(
            select(Tally)
            .where(Tally.periodId == period_id)
            .order_by(Tally.resultDays.desc(), Tally.countedVotes.desc(), Tally.userId.asc())
        )
        .scalars()
        .all()
    )
    users = load_users(db, [t.userId for t in tallies] + [t.discardedVoterId for t in tallies])

    out = []
    for t in tallies:
        out.append(
            {
                "id": str(t.id),
                "periodId": str(t.periodId),
                "userId": str(t.userId),
                "rawVotes": int(t.rawVotes or 0),
                "countedVotes": int(t.countedVotes or 0),
                "discardedVoterId": or_none(t.discardedVoterId),
                "managerIncluded": bool(t.managerIncluded),
                "resultDays": int(t.resultDays or 0),
                "calculationSeed": str(t.calculationSeed or ""),
                "createdAt": or_none(t.createdAt),
                "user": serialize_user(users.get(str(t.userId))),
                "discardedVoter": serialize_user(users.get(str(t.discardedVoterId))) if t.discardedVoterId else None,
            }
        )
    return out


def period_results(data, auth, db, cfg):
    period_id = require_id((data or {}).get("periodId"), "periodId")
    period = get_period(db, period_id)

    # Tallies are write-once, so a closed period's results never change.
    if str(period.status or "").upper() == CLOSED and cfg.RESULTS_CACHE_ENABLED:
        return cache_get_or_set(results_key(period_id), lambda: _load_results(db, period_id))
    return _load_results(db, period_id)


def close_period(
    db,
    *,
    period_id: str,
    force: bool,
    rng: random.Random,
    auth: Optional[AuthContext],
    cfg,
) -> dict:
    """
    Validate (unless forced), tally and close a period inside the caller's transaction.

    Returns `{"success": True, ...}` on close or `{"success": False, "report": ClosureReport}`
    when validation fails; nothing is written in the latter case.
    """

    period = lock_period(db, period_id)
    from_state = str(period.status or "").upper()
    if from_state == CLOSED:
        raise ApiError("INVALID_STATE", "Period is already closed")

    roles_vote = voter_roles(db, cfg)
    if not force:
        report = validate_closure(db, period_id, voter_roles=roles_vote, nominator_roles=nominator_roles(db, cfg))
        if not report.ok:
            return {"success": False, "report": report}

    now_dt = datetime.now(timezone.utc)
    now = to_iso_utc(now_dt)
    policy = discard_policy(db, cfg)

    try:
        results, grants_count = run_tally(
            db,
            period_id=period_id,
            rng=rng,
            pool_roles=roles_vote,
            policy=policy,
            expiry_days=grant_expiry_days(db, cfg),
            now=now_dt,
        )
    except IntegrityError:
        raise ApiError("INVALID_STATE", "Period is already being closed")

    res = db.execute(
        update(Period)
        .where(Period.id == period_id, Period.status != CLOSED)
        .values(status=CLOSED, closedAt=now, closedBy=str(auth.userId) if auth else "")
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        raise ApiError("INVALID_STATE", "Period is already closed")

    discarded = results[0].discarded_voter_id if results else None
    meta = {
        "force": bool(force),
        "discardPolicy": policy,
        "discardedVoterId": discarded,
        "tallies": len(results),
        "grants": grants_count,
    }

    if force:
        log.warning("force close period=%s actor=%s", period_id, auth.userId if auth else "SYSTEM")
        append_audit(
            db,
            entityType="PERIOD",
            entityId=period_id,
            action="PERIOD_FORCE_CLOSE",
            fromState=from_state,
            toState=CLOSED,
            stageTag="FORCE_OVERRIDE",
            remark="Closure validation bypassed",
            actor=auth,
            at=now,
            meta=meta,
        )
    append_audit(
        db,
        entityType="PERIOD",
        entityId=period_id,
        action="PERIOD_CLOSE",
        fromState=from_state,
        toState=CLOSED,
        actor=auth,
        at=now,
        meta=meta,
    )

    db.flush()
    invalidate_after_commit(db, period_id)
    return {"success": True, **meta}


def period_close(data, auth, db, cfg):
    period_id = require_id((data or {}).get("periodId"), "periodId")
    force = optional_bool((data or {}).get("force"), "force", default=False)

    out = close_period(db, period_id=period_id, force=force, rng=discard_rng(cfg), auth=auth, cfg=cfg)
    if not out["success"]:
        report = out["report"]
        raise ApiError("VALIDATION_REQUIRED", report.summary, extra=report.to_dict())
    return {"success": True}
