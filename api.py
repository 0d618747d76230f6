from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request
from flask_cors import CORS
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

import db as db_module
from actions import dispatch
from actions.helpers import (
    SETTING_DISCARD_POLICY,
    SETTING_GRANT_EXPIRY_DAYS,
    SETTING_NOMINATOR_ROLES,
    SETTING_VOTER_ROLES,
)
from auth import PRINCIPAL_HEADER, assert_permission, resolve_principal, role_or_public
from config import Config
from db import SessionLocal, init_engine
from models import AuditLog, Setting
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, redact_for_audit


rest_api = Blueprint("rest_api", __name__, url_prefix="/api")

_limiter = SimpleRateLimiter()


def _client_ip() -> str:
    fwd = str(request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return fwd or str(request.remote_addr or "")


def _body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        raw = request.get_data(as_text=True) or ""
        if raw.strip():
            raise ApiError("BAD_REQUEST", "Invalid JSON body")
        return {}
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def _rest_handle(action: str, data_fn):
    cfg: Config = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()

    db = None
    auth_ctx = None
    data: Any = {}
    try:
        ip = _client_ip()
        _limiter.check(f"ip:{ip}", cfg.RATE_LIMIT_GLOBAL)
        _limiter.check(f"act:{ip}:{action_u}", cfg.RATE_LIMIT_DEFAULT)

        data = data_fn()

        db = SessionLocal()
        auth_ctx = resolve_principal(db, request.headers.get(PRINCIPAL_HEADER))
        assert_permission(role_or_public(auth_ctx), action_u)

        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)
        db.commit()

        latency_ms = int((now_monotonic() - float(getattr(g, "start_ts", now_monotonic()))) * 1000)
        logging.getLogger("api").info(
            "request_id=%s action=%s actor=%s latency_ms=%s",
            str(getattr(g, "request_id", "") or ""),
            action_u,
            auth_ctx.userId if auth_ctx else "PUBLIC",
            latency_ms,
        )
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        _write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status, extra=e.extra)[0], e.http_status
    except DBAPIError as e:
        if db is not None:
            db.rollback()

        request_id = str(getattr(g, "request_id", "") or "").strip()
        orig = getattr(e, "orig", None)
        orig_msg = re.sub(r"\s+", " ", str(orig) if orig else "").strip()
        if len(orig_msg) > 300:
            orig_msg = orig_msg[:300] + "..."

        if cfg.IS_PRODUCTION or not orig_msg:
            msg = f"Database error (requestId: {request_id})"
        else:
            msg = f"Database error: {orig_msg} (requestId: {request_id})"

        api_err = ApiError("INTERNAL", msg, http_status=500)
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logging.getLogger("api").exception("request_id=%s action=%s", request_id, action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)[0], api_err.http_status
    except Exception as e:
        if db is not None:
            db.rollback()

        request_id = str(getattr(g, "request_id", "") or "").strip()
        if cfg.IS_PRODUCTION:
            msg = f"Unexpected error (requestId: {request_id})"
        else:
            msg = f"Unexpected error: {type(e).__name__} (requestId: {request_id})"

        api_err = ApiError("INTERNAL", msg, http_status=500)
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logging.getLogger("api").exception("request_id=%s action=%s", request_id, action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)[0], api_err.http_status
    finally:
        if db is not None:
            db.close()


@rest_api.post("/periods")
def rest_period_create():
    return _rest_handle("PERIOD_CREATE", _body)


@rest_api.get("/periods")
def rest_period_list():
    return _rest_handle("PERIOD_LIST", dict)


@rest_api.get("/periods/current")
def rest_period_current():
    return _rest_handle("PERIOD_CURRENT", dict)


@rest_api.post("/periods/<period_id>/close")
def rest_period_close(period_id: str):
    return _rest_handle("PERIOD_CLOSE", lambda: {"force": _body().get("force"), "periodId": period_id})


@rest_api.get("/periods/<period_id>/results")
def rest_period_results(period_id: str):
    return _rest_handle("PERIOD_RESULTS", lambda: {"periodId": period_id})


@rest_api.get("/periods/<period_id>/nominations")
def rest_period_nominations(period_id: str):
    return _rest_handle("PERIOD_NOMINATIONS", lambda: {"periodId": period_id})


@rest_api.get("/periods/<period_id>/candidates")
def rest_period_candidates(period_id: str):
    return _rest_handle("PERIOD_CANDIDATES", lambda: {"periodId": period_id})


@rest_api.get("/periods/<period_id>/votes")
def rest_period_votes(period_id: str):
    return _rest_handle("PERIOD_VOTES", lambda: {"periodId": period_id})


@rest_api.get("/periods/<period_id>/summary")
def rest_period_summary(period_id: str):
    return _rest_handle("PERIOD_SUMMARY", lambda: {"periodId": period_id})


@rest_api.post("/nominations")
def rest_nomination_create():
    return _rest_handle("NOMINATION_CREATE", _body)


@rest_api.delete("/nominations/<nomination_id>")
def rest_nomination_withdraw(nomination_id: str):
    return _rest_handle("NOMINATION_WITHDRAW", lambda: {"nominationId": nomination_id})


@rest_api.post("/votes")
def rest_vote_cast():
    return _rest_handle("VOTE_CAST", _body)


@rest_api.get("/users/<user_id>/grants")
def rest_user_grants(user_id: str):
    return _rest_handle("USER_GRANTS", lambda: {"userId": user_id, "available": request.args.get("available")})


@rest_api.get("/leaderboard/grants")
def rest_leaderboard_grants():
    return _rest_handle("LEADERBOARD_GRANTS", dict)


@rest_api.get("/audit")
def rest_audit_query():
    return _rest_handle(
        "AUDIT_QUERY",
        lambda: {
            "limit": request.args.get("limit"),
            "entityType": request.args.get("entityType"),
            "entityId": request.args.get("entityId"),
        },
    )


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_settings(db, cfg: Config):
    defaults = {
        SETTING_GRANT_EXPIRY_DAYS: str(cfg.GRANT_EXPIRY_DAYS),
        SETTING_VOTER_ROLES: ",".join(cfg.VOTER_ROLES),
        SETTING_NOMINATOR_ROLES: ",".join(cfg.NOMINATOR_ROLES),
        SETTING_DISCARD_POLICY: cfg.DISCARD_POLICY,
    }
    existing = set(db.execute(select(Setting.key)).scalars().all())
    now = iso_utc_now()
    for key, value in defaults.items():
        if key in existing:
            continue
        db.add(Setting(key=key, value=value, updatedAt=now, updatedBy="SYSTEM"))


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL, pool_size=cfg.DB_POOL_SIZE, max_overflow=cfg.DB_MAX_OVERFLOW)

    from models import Base  # imported after engine init

    Base.metadata.create_all(bind=engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    # Seed operator-tunable settings at startup (idempotent).
    db0 = SessionLocal()
    try:
        _seed_settings(db0, cfg)
        db0.commit()
    finally:
        db0.close()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/health")
    def health():
        from cache_layer import cache_stats

        return ok(
            {
                "status": "ok" if db_module.ping_db() else "degraded",
                "version": cfg.APP_VERSION,
                "db_pool": db_module.get_pool_stats(),
                "cache": cache_stats(),
            }
        )[0]

    @app.errorhandler(404)
    def _not_found(_e):
        return err("NOT_FOUND", "Route not found", http_status=404)[0], 404

    @app.errorhandler(405)
    def _method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)[0], 405

    logging.getLogger("api").info("app ready env=%s version=%s", cfg.ENV, cfg.APP_VERSION)
    return app


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError):
    db2: Optional[Any] = None
    try:
        db2 = SessionLocal()
        db2.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                fromState="",
                toState="",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps(
                    {
                        "data": redact_for_audit(data or {}),
                        "error": {"code": err_obj.code, "message": err_obj.message},
                    },
                    default=str,
                ),
            )
        )
        db2.commit()
    except Exception:
        logging.getLogger("api").warning("failed to write error audit action=%s", action, exc_info=True)
    finally:
        if db2 is not None:
            db2.close()


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]
    app.run(host=cfg.HOST, port=cfg.PORT)
