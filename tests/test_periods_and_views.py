from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from db import SessionLocal
from models import AuditLog, HomeOfficeGrant, Period, User
from utils import iso_utc_now, new_prefixed_id, to_iso_utc


def _seed_user(user_id: str, role: str) -> None:
    with SessionLocal() as db:
        db.add(User(id=user_id, name=f"Name {user_id}", email=f"{user_id.lower()}@example.com", role=role, active=True, createdAt=iso_utc_now()))
        db.commit()


def _grant(user_id: str, *, source: str = "NORMAL", redeemed: bool = False, expires_in_days: int = 30, redeemed_at: str = "") -> str:
    now = datetime.now(timezone.utc)
    gid = new_prefixed_id("GRT")
    with SessionLocal() as db:
        db.add(
            HomeOfficeGrant(
                id=gid,
                userId=user_id,
                periodId="",
                days=1,
                source=source,
                expiresAt=to_iso_utc(now + timedelta(days=expires_in_days)),
                redeemed=redeemed,
                redeemedAt=redeemed_at,
                notes="",
                createdAt=to_iso_utc(now),
            )
        )
        db.commit()
    return gid


def test_health(app_client):
    _app, client = app_client
    res = client.get("/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "ok"
    assert body["db_pool"]["initialized"] is True
    assert "hits" in body["cache"]
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Request-ID"]


def test_unknown_route_returns_json(app_client):
    _app, client = app_client
    res = client.get("/api/nope")
    assert res.status_code == 404
    assert res.get_json()["error"] == "not_found"


def test_create_list_and_current_period(app_client):
    _app, client = app_client
    _seed_user("U-MGR", "MANAGER")

    res = client.post(
        "/api/periods",
        json={"weekLabel": "2026-W42", "startDate": "2026-10-12", "endDate": "2026-10-16T18:00:00Z"},
        headers={"X-User-Id": "U-MGR"},
    )
    assert res.status_code == 200
    period = res.get_json()
    assert period["status"] == "OPEN"
    assert period["endDate"] == "2026-10-16"
    assert period["closedAt"] is None

    res = client.get("/api/periods/current")
    assert res.status_code == 200
    assert res.get_json()["id"] == period["id"]

    res = client.get("/api/periods")
    assert [p["id"] for p in res.get_json()] == [period["id"]]

    with SessionLocal() as db:
        audit = db.execute(select(AuditLog).where(AuditLog.action == "PERIOD_CREATE")).scalar_one()
        assert audit.actorUserId == "U-MGR"
        assert audit.entityId == period["id"]


def test_create_period_validation(app_client):
    _app, client = app_client
    _seed_user("U-MGR", "MANAGER")
    _seed_user("U-MEM", "MEMBER")
    headers = {"X-User-Id": "U-MGR"}

    res = client.post("/api/periods", json={"weekLabel": "W", "startDate": "2026-10-16", "endDate": "2026-10-12"}, headers=headers)
    assert res.status_code == 400

    res = client.post("/api/periods", json={"weekLabel": "W", "startDate": "not a date", "endDate": "2026-10-12"}, headers=headers)
    assert res.status_code == 400

    res = client.post("/api/periods", json={"weekLabel": "x" * 51, "startDate": "2026-10-12", "endDate": "2026-10-16"}, headers=headers)
    assert res.status_code == 400

    res = client.post(
        "/api/periods",
        json={"weekLabel": "W", "startDate": "2026-10-12", "endDate": "2026-10-16"},
        headers={"X-User-Id": "U-MEM"},
    )
    assert res.status_code == 403


def test_current_period_none_when_all_closed(app_client):
    _app, client = app_client
    with SessionLocal() as db:
        db.add(Period(id="PER-OLD", weekLabel="W", startDate="2026-10-05", endDate="2026-10-09", status="CLOSED", createdAt=iso_utc_now()))
        db.commit()

    res = client.get("/api/periods/current")
    assert res.status_code == 200
    assert res.get_json() is None


def test_user_grants_filters(app_client):
    _app, client = app_client
    _seed_user("U-MEM", "MEMBER")

    later = _grant("U-MEM", expires_in_days=40)
    sooner = _grant("U-MEM", expires_in_days=10)
    _grant("U-MEM", expires_in_days=-1)
    used = _grant("U-MEM", redeemed=True, redeemed_at=iso_utc_now())

    res = client.get("/api/users/U-MEM/grants?available=true")
    assert res.status_code == 200
    assert [g["id"] for g in res.get_json()] == [sooner, later]

    res = client.get("/api/users/U-MEM/grants?available=false")
    assert [g["id"] for g in res.get_json()] == [used]

    res = client.get("/api/users/U-MEM/grants")
    assert len(res.get_json()) == 4

    res = client.get("/api/users/U-MEM/grants?available=maybe")
    assert res.status_code == 400


def test_leaderboard(app_client):
    _app, client = app_client
    _seed_user("U-A", "MEMBER")
    _seed_user("U-B", "MEMBER")

    _grant("U-A")
    _grant("U-B")
    _grant("U-B", source="BONUS")
    _grant("U-B", redeemed=True, redeemed_at=iso_utc_now())

    res = client.get("/api/leaderboard/grants")
    assert res.status_code == 200
    rows = res.get_json()
    assert [r["userId"] for r in rows] == ["U-B", "U-A"]
    assert rows[0]["totalDays"] == 3
    assert rows[0]["normalDays"] == 2
    assert rows[0]["bonusDays"] == 1
    assert rows[0]["grantsCount"] == 3
    assert rows[0]["user"]["name"] == "Name U-B"


def test_audit_query_is_admin_only(app_client):
    _app, client = app_client
    _seed_user("U-ADM", "ADMIN")
    _seed_user("U-MGR", "MANAGER")

    client.post(
        "/api/periods",
        json={"weekLabel": "W", "startDate": "2026-10-12", "endDate": "2026-10-16"},
        headers={"X-User-Id": "U-MGR"},
    )

    assert client.get("/api/audit").status_code == 401
    assert client.get("/api/audit", headers={"X-User-Id": "U-MGR"}).status_code == 403

    res = client.get("/api/audit?limit=1", headers={"X-User-Id": "U-ADM"})
    assert res.status_code == 200
    rows = res.get_json()
    assert len(rows) == 1

    res = client.get("/api/audit?entityType=period", headers={"X-User-Id": "U-ADM"})
    assert [r["action"] for r in res.get_json()] == ["PERIOD_CREATE"]

    res = client.get("/api/audit?limit=abc", headers={"X-User-Id": "U-ADM"})
    assert res.status_code == 400
