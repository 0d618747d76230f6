from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, UniqueConstraint

from db import Base


class User(Base):
    """Directory row. Owned by the user-management service; read-only here."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, unique=True, index=True)
    role = Column(String, nullable=False, default="MEMBER", index=True)
    active = Column(Boolean, nullable=False, default=True, index=True)
    createdAt = Column(Text, nullable=False, default="")


class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")


class Period(Base):
    __tablename__ = "periods"

    id = Column(String, primary_key=True)
    weekLabel = Column(String(50), nullable=False, default="")
    startDate = Column(String, nullable=False, default="")  # YYYY-MM-DD
    endDate = Column(String, nullable=False, default="")  # YYYY-MM-DD
    status = Column(String, nullable=False, default="OPEN", index=True)  # OPEN|VOTING|CLOSED
    createdAt = Column(Text, nullable=False, default="", index=True)
    createdBy = Column(String, nullable=False, default="")
    closedAt = Column(Text, nullable=False, default="")
    closedBy = Column(String, nullable=False, default="")


class Nomination(Base):
    __tablename__ = "nominations"
    __table_args__ = (
        UniqueConstraint("periodId", "nominatorId", "nomineeId", name="uq_nominations_period_nominator_nominee"),
        Index("ix_nominations_period_nominee", "periodId", "nomineeId"),
    )

    id = Column(String, primary_key=True)
    periodId = Column(String, nullable=False, index=True)
    nominatorId = Column(String, nullable=False, index=True)
    nomineeId = Column(String, nullable=False, index=True)
    reason = Column(Text, nullable=False, default="")
    projectId = Column(String, nullable=False, default="")
    category = Column(String, nullable=False, default="COLLABORATION")
    contributionType = Column(String, nullable=False, default="DELIVERY")
    createdAt = Column(Text, nullable=False, default="", index=True)


class Candidate(Base):
    """Projection of Nomination: one row per (userId, periodId) with >= 1 live nomination."""

    __tablename__ = "candidates"
    __table_args__ = (UniqueConstraint("userId", "periodId", name="uq_candidates_user_period"),)

    id = Column(String, primary_key=True)
    userId = Column(String, nullable=False, index=True)
    periodId = Column(String, nullable=False, index=True)
    roleAtPeriod = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (UniqueConstraint("periodId", "voterId", "targetUserId", name="uq_votes_period_voter_target"),)

    id = Column(String, primary_key=True)
    periodId = Column(String, nullable=False, index=True)
    voterId = Column(String, nullable=False, index=True)
    targetUserId = Column(String, nullable=False, index=True)
    weight = Column(Integer, nullable=False, default=1)
    comment = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Tally(Base):
    """Write-once outcome of counting one candidate in one period."""

    __tablename__ = "tallies"
    __table_args__ = (UniqueConstraint("periodId", "userId", name="uq_tallies_period_user"),)

    id = Column(String, primary_key=True)
    periodId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, index=True)
    rawVotes = Column(Integer, nullable=False, default=0)
    countedVotes = Column(Integer, nullable=False, default=0)
    discardedVoterId = Column(String, nullable=False, default="")
    managerIncluded = Column(Boolean, nullable=False, default=False)
    resultDays = Column(Integer, nullable=False, default=0)
    calculationSeed = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class HomeOfficeGrant(Base):
    __tablename__ = "home_office_grants"
    __table_args__ = (Index("ix_grants_user_redeemed", "userId", "redeemed"),)

    id = Column(String, primary_key=True)
    userId = Column(String, nullable=False, index=True)
    periodId = Column(String, nullable=False, default="", index=True)
    days = Column(Integer, nullable=False, default=1)
    source = Column(String, nullable=False, default="NORMAL")  # NORMAL|POINTS|SPECIAL|BONUS
    expiresAt = Column(Text, nullable=False, default="", index=True)
    redeemed = Column(Boolean, nullable=False, default=False)
    redeemedAt = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")
