from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select

from auth import ROLE_MANAGER
from models import Candidate, HomeOfficeGrant, Tally, User, Vote
from utils import new_prefixed_id, normalize_role, to_iso_utc


log = logging.getLogger("tally")

GRANT_SOURCE_NORMAL = "NORMAL"


@dataclass(frozen=True)
class BallotVote:
    voter_id: str
    target_user_id: str
    voter_role: str


@dataclass(frozen=True)
class TallyResult:
    user_id: str
    raw_votes: int
    counted_votes: int
    discarded_voter_id: Optional[str]
    manager_included: bool
    result_days: int


def award_days(counted_votes: int, manager_included: bool) -> int:
    if counted_votes < 2:
        return 0
    if counted_votes == 2:
        return 1
    return 3 if manager_included else 2


def select_discarded_voter(votes: Iterable[BallotVote], pool_roles: set[str], rng: random.Random) -> Optional[str]:
    """
    Draw the single voter whose whole ballot is excluded from this closure.

    The pool is every distinct voter of the period whose role is in `pool_roles`.
    It is sorted before drawing so a seeded `rng` always picks the same voter.
    """

    pool = sorted({v.voter_id for v in votes if normalize_role(v.voter_role) in pool_roles})
    if not pool:
        return None
    return rng.choice(pool)


def tally_candidates(
    candidate_user_ids: Iterable[str],
    votes: Iterable[BallotVote],
    discarded_voter_id: Optional[str],
) -> list[TallyResult]:
    by_target: dict[str, list[BallotVote]] = {}
    for v in votes:
        by_target.setdefault(v.target_user_id, []).append(v)

    out: list[TallyResult] = []
    for user_id in candidate_user_ids:
        candidate_votes = by_target.get(user_id, [])
        final_votes = [v for v in candidate_votes if v.voter_id != discarded_voter_id]
        counted = len(final_votes)
        manager_included = any(normalize_role(v.voter_role) == ROLE_MANAGER for v in final_votes)
        out.append(
            TallyResult(
                user_id=user_id,
                raw_votes=len(candidate_votes),
                counted_votes=counted,
                discarded_voter_id=discarded_voter_id,
                manager_included=manager_included,
                result_days=award_days(counted, manager_included),
            )
        )
    return out


def load_ballot(db, period_id: str) -> list[BallotVote]:
    rows = db.execute(
        select(Vote.voterId, Vote.targetUserId, User.role)
        .select_from(Vote)
        .outerjoin(User, User.id == Vote.voterId)
        .where(Vote.periodId == period_id)
        .order_by(Vote.voterId.asc(), Vote.targetUserId.asc())
    ).all()
    return [BallotVote(voter_id=str(r[0]), target_user_id=str(r[1]), voter_role=str(r[2] or "")) for r in rows]


def run_tally(
    db,
    *,
    period_id: str,
    rng: random.Random,
    pool_roles: set[str],
    policy: str,
    expiry_days: int,
    now: datetime,
) -> tuple[list[TallyResult], int]:
    """Persist Tally rows and one-day grants for every candidate of the period. Returns (results, grants)."""

    votes = load_ballot(db, period_id)
    candidate_ids = (
        db.execute(select(Candidate.userId).where(Candidate.periodId == period_id).order_by(Candidate.userId.asc()))
        .scalars()
        .all()
    )

    discarded = select_discarded_voter(votes, pool_roles, rng) if policy == "BALLOT" else None
    results = tally_candidates([str(x) for x in candidate_ids], votes, discarded)

    now_s = to_iso_utc(now)
    expires_s = to_iso_utc(now + timedelta(days=int(expiry_days)))

    tallies = []
    grants = []
    for r in results:
        tallies.append(
            Tally(
                id=new_prefixed_id("TAL"),
                periodId=period_id,
                userId=r.user_id,
                rawVotes=r.raw_votes,
                countedVotes=r.counted_votes,
                discardedVoterId=r.discarded_voter_id or "",
                managerIncluded=r.manager_included,
                resultDays=r.result_days,
                calculationSeed=f"{period_id}-{r.user_id}",
                createdAt=now_s,
            )
        )
        for _ in range(r.result_days):
            grants.append(
                HomeOfficeGrant(
                    id=new_prefixed_id("GRT"),
                    userId=r.user_id,
                    periodId=period_id,
                    days=1,
                    source=GRANT_SOURCE_NORMAL,
                    expiresAt=expires_s,
                    redeemed=False,
                    redeemedAt="",
                    notes="",
                    createdAt=now_s,
                )
            )

    db.add_all(tallies)
    db.add_all(grants)
    db.flush()

    log.info(
        "period=%s candidates=%s votes=%s discarded=%s grants=%s",
        period_id,
        len(results),
        len(votes),
        discarded or "-",
        len(grants),
    )
    return results, len(grants)
