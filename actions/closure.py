from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import func, select

from actions.helpers import user_ref
from models import Candidate, Nomination, User, Vote


@dataclass
class ClosureProblem:
    type: str
    message: str
    users: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message, "users": list(self.users)}


@dataclass
class ClosureReport:
    problems: list[ClosureProblem] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    @property
    def summary(self) -> str:
        if self.ok:
            return ""
        counts = {p.type: len(p.users) for p in self.problems}
        out = f"Missing: {counts.get('missing_votes', 0)} votes, {counts.get('missing_nominations', 0)} nominations"
        if "no_candidates" in counts:
            out += ", no candidates"
        return out

    def to_dict(self) -> dict:
        return {
            "validationErrors": [p.to_dict() for p in self.problems],
            "summary": self.summary,
            "canForce": True,
        }


def _active_users_in(db, roles: set[str]) -> list[User]:
    if not roles:
        return []
    return (
        db.execute(select(User).where(User.active.is_(True), User.role.in_(sorted(roles))).order_by(User.name.asc(), User.id.asc()))
        .scalars()
        .all()
    )


def validate_closure(db, period_id: str, *, voter_roles: set[str], nominator_roles: set[str]) -> ClosureReport:
    """Completeness check run before a non-forced close. Never mutates anything."""

    voted = set(db.execute(select(Vote.voterId).where(Vote.periodId == period_id).distinct()).scalars().all())
    nominated = set(
        db.execute(select(Nomination.nominatorId).where(Nomination.periodId == period_id).distinct()).scalars().all()
    )
    candidate_count = int(
        db.execute(select(func.count()).select_from(Candidate).where(Candidate.periodId == period_id)).scalar() or 0
    )

    report = ClosureReport()

    missing_voters = [u for u in _active_users_in(db, voter_roles) if str(u.id) not in voted]
    if missing_voters:
        names = ", ".join(str(u.name or u.id) for u in missing_voters)
        report.problems.append(
            ClosureProblem(
                type="missing_votes",
                message=f"{len(missing_voters)} eligible voter(s) have not voted: {names}",
                users=[user_ref(u) for u in missing_voters],
            )
        )

    missing_nominators = [u for u in _active_users_in(db, nominator_roles) if str(u.id) not in nominated]
    if missing_nominators:
        names = ", ".join(str(u.name or u.id) for u in missing_nominators)
        report.problems.append(
            ClosureProblem(
                type="missing_nominations",
                message=f"{len(missing_nominators)} eligible nominator(s) have not nominated: {names}",
                users=[user_ref(u) for u in missing_nominators],
            )
        )

    if candidate_count == 0:
        report.problems.append(ClosureProblem(type="no_candidates", message="The period has no candidates"))

    return report
