from __future__ import annotations

from sqlalchemy import select

from db import SessionLocal
from models import AuditLog, Candidate, Nomination, Period, Project, User
from utils import iso_utc_now


def _seed_user(user_id: str, role: str, *, active: bool = True) -> None:
    with SessionLocal() as db:
        db.add(
            User(
                id=user_id,
                name=f"Name {user_id}",
                email=f"{user_id.lower()}@example.com",
                role=role,
                active=active,
                createdAt=iso_utc_now(),
            )
        )
        db.commit()


def _seed_period(period_id: str = "PER-1", status: str = "OPEN") -> str:
    with SessionLocal() as db:
        db.add(
            Period(
                id=period_id,
                weekLabel="2026-W42",
                startDate="2026-10-12",
                endDate="2026-10-16",
                status=status,
                createdAt=iso_utc_now(),
            )
        )
        db.commit()
    return period_id


def _nominate(client, nominator: str, nominee: str, *, period_id: str = "PER-1", headers=None, **extra):
    body = {"periodId": period_id, "nominatorId": nominator, "nomineeId": nominee, "reason": "Shipped the release"}
    body.update(extra)
    return client.post("/api/nominations", json=body, headers=headers or {})


def _candidates(period_id: str = "PER-1") -> list[str]:
    with SessionLocal() as db:
        return sorted(db.execute(select(Candidate.userId).where(Candidate.periodId == period_id)).scalars().all())


def test_nominate_creates_nomination_and_candidate(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER_DEV")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()
    with SessionLocal() as db:
        db.add(Project(id="PRJ-1", name="Payments", status="ACTIVE", createdAt=iso_utc_now()))
        db.commit()

    res = _nominate(client, "U-LEAD", "U-MEM", projectId="PRJ-1", category="technical")
    assert res.status_code == 200
    body = res.get_json()
    assert body["nominatorId"] == "U-LEAD"
    assert body["nomineeId"] == "U-MEM"
    assert body["category"] == "TECHNICAL"
    assert body["contributionType"] == "DELIVERY"
    assert body["nominator"]["name"] == "Name U-LEAD"
    assert body["nominee"]["role"] == "MEMBER"
    assert body["project"] == {"id": "PRJ-1", "name": "Payments"}

    assert _candidates() == ["U-MEM"]
    with SessionLocal() as db:
        cand = db.execute(select(Candidate).where(Candidate.userId == "U-MEM")).scalar_one()
        assert cand.roleAtPeriod == "MEMBER"
        audit = db.execute(select(AuditLog).where(AuditLog.action == "NOMINATION_CREATE")).scalars().all()
        assert len(audit) == 1


def test_second_nominator_keeps_single_candidate_row(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER_DEV")
    _seed_user("U-MGR", "MANAGER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    assert _nominate(client, "U-LEAD", "U-MEM").status_code == 200
    assert _nominate(client, "U-MGR", "U-MEM").status_code == 200

    assert _candidates() == ["U-MEM"]

    res = client.get("/api/periods/PER-1/candidates")
    assert res.status_code == 200
    rows = res.get_json()
    assert len(rows) == 1
    assert rows[0]["userId"] == "U-MEM"
    assert {n["nominatorId"] for n in rows[0]["nominations"]} == {"U-LEAD", "U-MGR"}


def test_duplicate_nomination_rejected(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER_PO")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    assert _nominate(client, "U-LEAD", "U-MEM").status_code == 200
    res = _nominate(client, "U-LEAD", "U-MEM")
    assert res.status_code == 400
    assert res.get_json()["error"] == "duplicate_nomination"

    with SessionLocal() as db:
        assert len(db.execute(select(Nomination)).scalars().all()) == 1


def test_ineligible_nominator_forbidden(app_client):
    _app, client = app_client
    _seed_user("U-MEM1", "MEMBER")
    _seed_user("U-MEM2", "MEMBER")
    _seed_user("U-OLD", "LEADER", active=False)
    _seed_period()

    res = _nominate(client, "U-MEM1", "U-MEM2")
    assert res.status_code == 403
    assert res.get_json()["error"] == "forbidden"

    res = _nominate(client, "U-OLD", "U-MEM2")
    assert res.status_code == 403

    res = _nominate(client, "U-GHOST", "U-MEM2")
    assert res.status_code == 403

    assert _candidates() == []


def test_invalid_nominee_rejected(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MGR", "MANAGER")
    _seed_user("U-GONE", "MEMBER", active=False)
    _seed_period()

    for nominee in ("U-MGR", "U-GONE", "U-MISSING"):
        res = _nominate(client, "U-LEAD", nominee)
        assert res.status_code == 400
        assert res.get_json()["error"] == "invalid_nominee"


def test_bad_category_and_malformed_ids_rejected(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    res = _nominate(client, "U-LEAD", "U-MEM", category="HEROICS")
    assert res.status_code == 400
    assert res.get_json()["error"] == "bad_request"

    res = _nominate(client, "U-LEAD", "U MEM; drop")
    assert res.status_code == 400
    assert res.get_json()["error"] == "bad_request"


def test_unknown_period_and_project(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    res = _nominate(client, "U-LEAD", "U-MEM", period_id="PER-NOPE")
    assert res.status_code == 404

    res = _nominate(client, "U-LEAD", "U-MEM", projectId="PRJ-NOPE")
    assert res.status_code == 404
    assert res.get_json()["error"] == "not_found"


def test_nominate_in_closed_period(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period(status="CLOSED")

    res = _nominate(client, "U-LEAD", "U-MEM")
    assert res.status_code == 409
    assert res.get_json()["error"] == "period_closed"


def test_gateway_principal_must_match_nominator(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MGR", "MANAGER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    res = _nominate(client, "U-LEAD", "U-MEM", headers={"X-User-Id": "U-MGR"})
    assert res.status_code == 403

    res = _nominate(client, "U-LEAD", "U-MEM", headers={"X-User-Id": "U-LEAD"})
    assert res.status_code == 200

    res = _nominate(client, "U-MGR", "U-MEM", headers={"X-User-Id": "U-UNKNOWN"})
    assert res.status_code == 401
    assert res.get_json()["error"] == "auth_invalid"


def test_withdraw_last_nomination_removes_candidate(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MGR", "MANAGER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    first = _nominate(client, "U-LEAD", "U-MEM").get_json()["id"]
    second = _nominate(client, "U-MGR", "U-MEM").get_json()["id"]

    res = client.delete(f"/api/nominations/{first}")
    assert res.status_code == 200
    assert res.get_json() == {"success": True}
    assert _candidates() == ["U-MEM"]

    res = client.delete(f"/api/nominations/{second}")
    assert res.status_code == 200
    assert _candidates() == []

    with SessionLocal() as db:
        rows = db.execute(select(AuditLog).where(AuditLog.action == "NOMINATION_WITHDRAW")).scalars().all()
        assert len(rows) == 2


def test_withdraw_missing_nomination(app_client):
    _app, client = app_client
    res = client.delete("/api/nominations/NOM-NOPE")
    assert res.status_code == 404
    assert res.get_json()["error"] == "not_found"


def test_period_nominations_listing(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MEM1", "MEMBER")
    _seed_user("U-MEM2", "MEMBER")
    _seed_period()

    _nominate(client, "U-LEAD", "U-MEM1")
    _nominate(client, "U-LEAD", "U-MEM2", contributionType="support")

    res = client.get("/api/periods/PER-1/nominations")
    assert res.status_code == 200
    rows = res.get_json()
    assert {r["nomineeId"] for r in rows} == {"U-MEM1", "U-MEM2"}
    assert {r["contributionType"] for r in rows} == {"DELIVERY", "SUPPORT"}
    assert all(r["projectId"] is None for r in rows)


def test_withdraw_by_other_leader_forbidden(app_client):
    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-PO", "LEADER_PO")
    _seed_user("U-MGR", "MANAGER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    nom_id = _nominate(client, "U-LEAD", "U-MEM").get_json()["id"]

    res = client.delete(f"/api/nominations/{nom_id}", headers={"X-User-Id": "U-PO"})
    assert res.status_code == 403
    assert _candidates() == ["U-MEM"]

    res = client.delete(f"/api/nominations/{nom_id}", headers={"X-User-Id": "U-MGR"})
    assert res.status_code == 200
    assert _candidates() == []


def test_candidate_upkeep_locks_nominee_first(app_client, monkeypatch):
    import actions.nominations as nominations

    _app, client = app_client
    _seed_user("U-LEAD", "LEADER")
    _seed_user("U-MEM", "MEMBER")
    _seed_period()

    calls = []
    real_lock, real_sync = nominations.lock_user, nominations.sync_candidate

    def _lock(db, user_id):
        calls.append(("lock", user_id))
        return real_lock(db, user_id)

    def _sync(db, **kwargs):
        calls.append(("sync", kwargs["user_id"]))
        return real_sync(db, **kwargs)

    monkeypatch.setattr(nominations, "lock_user", _lock)
    monkeypatch.setattr(nominations, "sync_candidate", _sync)

    nom_id = _nominate(client, "U-LEAD", "U-MEM").get_json()["id"]
    assert calls == [("lock", "U-MEM"), ("sync", "U-MEM")]
    assert _candidates() == ["U-MEM"]

    calls.clear()
    assert client.delete(f"/api/nominations/{nom_id}").status_code == 200
    assert calls == [("lock", "U-MEM"), ("sync", "U-MEM")]
    assert _candidates() == []
