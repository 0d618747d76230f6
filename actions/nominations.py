from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from actions.helpers import (
    append_audit,
    assert_period_writable,
    get_period,
    insert_ignore,
    load_users,
    lock_period,
    lock_user,
    nominator_roles,
    or_none,
    serialize_user,
)
from auth import ROLE_MEMBER, assert_acting_as
from models import Candidate, Nomination, Project, User
from utils import ApiError, new_prefixed_id, normalize_role, optional_id, optional_text, require_id, to_iso_utc


log = logging.getLogger("nominations")

CATEGORIES = {"TECHNICAL", "LEADERSHIP", "COLLABORATION", "INNOVATION", "IMPACT"}
CONTRIBUTION_TYPES = {"DELIVERY", "QUALITY", "IMPROVEMENT", "SUPPORT", "EFFICIENCY", "INITIATIVE"}

OPERATOR_ROLES = {"ADMIN", "MANAGER"}

DEFAULT_CATEGORY = "COLLABORATION"
DEFAULT_CONTRIBUTION_TYPE = "DELIVERY"


def _enum(value, field: str, allowed: set[str], default: str) -> str:
    if value is None or str(value).strip() == "":
        return default
    s = str(value).strip().upper()
    if s not in allowed:
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    return s


def serialize_nomination(n: Nomination, users: dict[str, User], projects: dict[str, Project] | None = None) -> dict:
    project = (projects or {}).get(str(n.projectId or ""))
    return {
        "id": str(n.id),
        "periodId": str(n.periodId),
        "nominatorId": str(n.nominatorId),
        "nomineeId": str(n.nomineeId),
        "reason": str(n.reason or ""),
        "projectId": or_none(n.projectId),
        "category": str(n.category or DEFAULT_CATEGORY),
        "contributionType": str(n.contributionType or DEFAULT_CONTRIBUTION_TYPE),
        "createdAt": or_none(n.createdAt),
        "nominator": serialize_user(users.get(str(n.nominatorId))),
        "nominee": serialize_user(users.get(str(n.nomineeId))),
        "project": {"id": str(project.id), "name": str(project.name or "")} if project else None,
    }


def _load_projects(db, ids) -> dict[str, Project]:
    wanted = sorted({str(x) for x in ids if str(x or "").strip()})
    if not wanted:
        return {}
    rows = db.execute(select(Project).where(Project.id.in_(wanted))).scalars().all()
    return {str(p.id): p for p in rows}


def sync_candidate(db, *, period_id: str, user_id: str, role: str = "", now: str = "") -> bool:
    """
    Recompute the Candidate row for (user_id, period_id) from live nominations.

    Returns True when the user is a candidate afterwards.
    """

    remaining = int(
        db.execute(
            select(func.count())
            .select_from(Nomination)
            .where(Nomination.periodId == period_id, Nomination.nomineeId == user_id)
        ).scalar()
        or 0
    )
    if remaining > 0:
        insert_ignore(
            db,
            Candidate,
            {
                "id": new_prefixed_id("CAN"),
                "userId": user_id,
                "periodId": period_id,
                "roleAtPeriod": normalize_role(role),
                "createdAt": now or to_iso_utc(datetime.now(timezone.utc)),
            },
            conflict_cols=["userId", "periodId"],
        )
        return True

    db.execute(delete(Candidate).where(Candidate.userId == user_id, Candidate.periodId == period_id))
    return False


def nomination_create(data, auth, db, cfg):
    data = data or {}
    period_id = require_id(data.get("periodId"), "periodId")
    nominator_id = require_id(data.get("nominatorId"), "nominatorId")
    nominee_id = require_id(data.get("nomineeId"), "nomineeId")
    reason = optional_text(data.get("reason"), "reason", max_len=2000)
    project_id = optional_id(data.get("projectId"), "projectId")
    category = _enum(data.get("category"), "category", CATEGORIES, DEFAULT_CATEGORY)
    contribution_type = _enum(data.get("contributionType"), "contributionType", CONTRIBUTION_TYPES, DEFAULT_CONTRIBUTION_TYPE)

    assert_acting_as(auth, nominator_id)

    period = lock_period(db, period_id, shared=True)
    assert_period_writable(period)

    users = load_users(db, [nominator_id, nominee_id])
    nominator = users.get(nominator_id)
    if not nominator or not bool(nominator.active) or normalize_role(nominator.role) not in nominator_roles(db, cfg):
        raise ApiError("FORBIDDEN", "Only active managers and leaders can nominate")

    nominee = users.get(nominee_id)
    if (
        not nominee
        or nominee_id == nominator_id
        or not bool(nominee.active)
        or normalize_role(nominee.role) != ROLE_MEMBER
    ):
        raise ApiError("INVALID_NOMINEE", "Only active members can be nominated")

    projects = {}
    if project_id:
        projects = _load_projects(db, [project_id])
        if project_id not in projects:
            raise ApiError("NOT_FOUND", "Project not found")

    lock_user(db, nominee_id)
    existing = db.execute(
        select(Nomination.id).where(
            Nomination.periodId == period_id,
            Nomination.nominatorId == nominator_id,
            Nomination.nomineeId == nominee_id,
        )
    ).first()
    if existing:
        raise ApiError("DUPLICATE_NOMINATION", "You already nominated this person in this period")

    now = to_iso_utc(datetime.now(timezone.utc))
    nom = Nomination(
        id=new_prefixed_id("NOM"),
        periodId=period_id,
        nominatorId=nominator_id,
        nomineeId=nominee_id,
        reason=reason,
        projectId=project_id,
        category=category,
        contributionType=contribution_type,
        createdAt=now,
    )
    db.add(nom)
    try:
        db.flush()
    except IntegrityError:
        raise ApiError("DUPLICATE_NOMINATION", "You already nominated this person in this period")

    sync_candidate(db, period_id=period_id, user_id=nominee_id, role=nominee.role, now=now)

    append_audit(
        db,
        entityType="NOMINATION",
        entityId=nom.id,
        action="NOMINATION_CREATE",
        actor=auth,
        at=now,
        meta={"periodId": period_id, "nominatorId": nominator_id, "nomineeId": nominee_id, "category": category},
    )
    log.info("nomination period=%s nominator=%s nominee=%s", period_id, nominator_id, nominee_id)
    return serialize_nomination(nom, users, projects)


def nomination_withdraw(data, auth, db, cfg):
    nomination_id = require_id((data or {}).get("nominationId"), "nominationId")

    nom = db.execute(select(Nomination).where(Nomination.id == nomination_id)).scalar_one_or_none()
    if not nom:
        raise ApiError("NOT_FOUND", "Nomination not found")
    if auth and normalize_role(auth.role) not in OPERATOR_ROLES:
        assert_acting_as(auth, str(nom.nominatorId))

    period = lock_period(db, str(nom.periodId), shared=True)
    assert_period_writable(period)

    period_id = str(nom.periodId)
    nominee_id = str(nom.nomineeId)
    lock_user(db, nominee_id)
    db.delete(nom)
    db.flush()

    still_candidate = sync_candidate(db, period_id=period_id, user_id=nominee_id)

    append_audit(
        db,
        entityType="NOMINATION",
        entityId=nomination_id,
        action="NOMINATION_WITHDRAW",
        actor=auth,
        meta={"periodId": period_id, "nomineeId": nominee_id, "candidateRemoved": not still_candidate},
    )
    return {"success": True}


def period_nominations(data, auth, db, cfg):
    period_id = require_id((data or {}).get("periodId"), "periodId")
    get_period(db, period_id)

    rows = (
        db.execute(
            select(Nomination)
            .where(Nomination.periodId == period_id)
            .order_by(Nomination.createdAt.desc(), Nomination.id.desc())
        )
        .scalars()
        .all()
    )
    users = load_users(db, [n.nominatorId for n in rows] + [n.nomineeId for n in rows])
    projects = _load_projects(db, [n.projectId for n in rows])
    return [serialize_nomination(n, users, projects) for n in rows]


def period_candidates(data, auth, db, cfg):
    period_id = require_id((data or {}).get("periodId"), "periodId")
    get_period(db, period_id)

    candidates = (
        db.execute(select(Candidate).where(Candidate.periodId == period_id).order_by(Candidate.createdAt.asc()))
        .scalars()
        .all()
    )
    noms = (
        db.execute(
            select(Nomination)
            .where(Nomination.periodId == period_id)
            .order_by(Nomination.createdAt.asc(), Nomination.id.asc())
        )
        .scalars()
        .all()
    )
    users = load_users(db, [c.userId for c in candidates] + [n.nominatorId for n in noms])
    projects = _load_projects(db, [n.projectId for n in noms])

    by_nominee: dict[str, list[dict]] = {}
    for n in noms:
        by_nominee.setdefault(str(n.nomineeId), []).append(serialize_nomination(n, users, projects))

    out = []
    for c in candidates:
        usr = users.get(str(c.userId))
        if not usr or not bool(usr.active):
            continue
        out.append(
            {
                "id": str(c.id),
                "userId": str(c.userId),
                "periodId": str(c.periodId),
                "roleAtPeriod": str(c.roleAtPeriod or ""),
                "user": serialize_user(usr),
                "nominations": by_nominee.get(str(c.userId), []),
            }
        )
    return out
