from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from actions.helpers import (
    append_audit,
    assert_period_writable,
    get_period,
    load_users,
    lock_period,
    or_none,
    serialize_user,
    upsert,
    voter_roles,
)
from auth import ROLE_MANAGER, assert_acting_as
from models import Candidate, User, Vote
from utils import ApiError, new_prefixed_id, normalize_role, optional_bool, optional_text, require_id, to_iso_utc


log = logging.getLogger("votes")


def serialize_vote(v: Vote, users: dict[str, User] | None = None) -> dict:
    users = users or {}
    return {
        "id": str(v.id),
        "periodId": str(v.periodId),
        "voterId": str(v.voterId),
        "targetUserId": str(v.targetUserId),
        "weight": int(v.weight or 1),
        "comment": or_none(v.comment),
        "createdAt": or_none(v.createdAt),
        "updatedAt": or_none(v.updatedAt),
        "voter": serialize_user(users.get(str(v.voterId))),
        "target": serialize_user(users.get(str(v.targetUserId))),
    }


def _get_vote(db, period_id: str, voter_id: str, target_id: str):
    return db.execute(
        select(Vote).where(Vote.periodId == period_id, Vote.voterId == voter_id, Vote.targetUserId == target_id)
    ).scalar_one_or_none()


def vote_cast(data, auth, db, cfg):
    data = data or {}
    period_id = require_id(data.get("periodId"), "periodId")
    voter_id = require_id(data.get("voterId"), "voterId")
    target_id = require_id(data.get("targetUserId"), "targetUserId")
    comment = optional_text(data.get("comment"), "comment", max_len=1000)
    remove = optional_bool(data.get("remove"), "remove", default=False)

    assert_acting_as(auth, voter_id)

    period = lock_period(db, period_id, shared=True)
    assert_period_writable(period)

    if remove:
        res = db.execute(
            delete(Vote).where(Vote.periodId == period_id, Vote.voterId == voter_id, Vote.targetUserId == target_id)
        )
        removed = int(res.rowcount or 0) > 0
        append_audit(
            db,
            entityType="VOTE",
            entityId=f"{period_id}:{voter_id}:{target_id}",
            action="VOTE_RETRACT",
            actor=auth,
            meta={"periodId": period_id, "voterId": voter_id, "targetUserId": target_id, "removed": removed},
        )
        return {"success": True}

    users = load_users(db, [voter_id, target_id])
    voter = users.get(voter_id)
    if not voter or not bool(voter.active) or normalize_role(voter.role) not in voter_roles(db, cfg):
        raise ApiError("FORBIDDEN", "Only active managers and leaders can vote")
    if voter_id == target_id:
        raise ApiError("INVALID_CANDIDATE", "You cannot vote for yourself")

    is_candidate = db.execute(
        select(Candidate.id).where(Candidate.periodId == period_id, Candidate.userId == target_id)
    ).first()
    if not is_candidate:
        raise ApiError("INVALID_CANDIDATE", "Target is not a candidate in this period")

    # An omitted comment keeps the stored one; an explicit "" clears it.
    update_cols = ["updatedAt"] if data.get("comment") is None else ["comment", "updatedAt"]

    now = to_iso_utc(datetime.now(timezone.utc))
    try:
        upsert(
            db,
            Vote,
            {
                "id": new_prefixed_id("VOT"),
                "periodId": period_id,
                "voterId": voter_id,
                "targetUserId": target_id,
                "weight": 1,
                "comment": comment,
                "createdAt": now,
                "updatedAt": now,
            },
            conflict_cols=["periodId", "voterId", "targetUserId"],
            update_cols=update_cols,
        )
    except IntegrityError:
        # Only reachable on dialects without ON CONFLICT, when two writers race.
        raise ApiError("DUPLICATE_VOTE", "Vote already recorded, retry to update it")

    vote = _get_vote(db, period_id, voter_id, target_id)
    if vote is None:
        raise ApiError("INTERNAL", "Vote was not persisted")
    db.refresh(vote)

    append_audit(
        db,
        entityType="VOTE",
        entityId=str(vote.id),
        action="VOTE_CAST",
        actor=auth,
        at=now,
        meta={"periodId": period_id, "voterId": voter_id, "targetUserId": target_id, "hasComment": bool(comment)},
    )
    log.info("vote period=%s voter=%s target=%s", period_id, voter_id, target_id)
    return serialize_vote(vote, users)


def period_votes(data, auth, db, cfg):
    period_id = require_id((data or {}).get("periodId"), "periodId")
    get_period(db, period_id)

    rows = (
        db.execute(select(Vote).where(Vote.periodId == period_id).order_by(Vote.createdAt.asc(), Vote.id.asc()))
        .scalars()
        .all()
    )
    users = load_users(db, [v.voterId for v in rows] + [v.targetUserId for v in rows])
    return [serialize_vote(v, users) for v in rows]


def period_summary(data, auth, db, cfg):
    """Live standings while the period is open. Discard is not applied here."""

    period_id = require_id((data or {}).get("periodId"), "periodId")
    get_period(db, period_id)

    candidates = db.execute(select(Candidate).where(Candidate.periodId == period_id)).scalars().all()
    votes = db.execute(select(Vote).where(Vote.periodId == period_id)).scalars().all()
    users = load_users(db, [c.userId for c in candidates] + [v.voterId for v in votes])

    by_target: dict[str, list[Vote]] = {}
    for v in votes:
        by_target.setdefault(str(v.targetUserId), []).append(v)

    out = []
    for c in candidates:
        received = by_target.get(str(c.userId), [])
        voters = [users.get(str(v.voterId)) for v in received]
        out.append(
            {
                "userId": str(c.userId),
                "user": serialize_user(users.get(str(c.userId))),
                "voteCount": len(received),
                "voters": sorted(str(u.name or u.id) for u in voters if u is not None),
                "hasManagerVote": any(u is not None and normalize_role(u.role) == ROLE_MANAGER for u in voters),
            }
        )
    out.sort(key=lambda x: (-x["voteCount"], x["userId"]))
    return out
