from __future__ import annotations

import os

from utils import parse_roles_csv


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, "") or "").strip() or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


DEFAULT_ELIGIBLE_ROLES = "MANAGER,LEADER,LEADER_DEV,LEADER_PO,LEADER_INFRA"

DISCARD_POLICIES = {"BALLOT", "NONE"}


class Config:
    """
    Process configuration, read once from the environment.

    Operator-tunable knobs (grant expiry, role sets, discard policy) are only the
    defaults here; the `settings` table overrides them at runtime.
    """

    def __init__(self):
        self.ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "0.1.0")

        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 3001)
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./homeoffice.db")
        self.DB_POOL_SIZE = max(1, _env_int("DB_POOL_SIZE", 5))
        self.DB_MAX_OVERFLOW = max(0, _env_int("DB_MAX_OVERFLOW", 10))

        self.ALLOWED_ORIGINS = [o.strip() for o in _env_str("ALLOWED_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

        self.RATE_LIMIT_GLOBAL = _env_str("RATE_LIMIT_GLOBAL", "600/60")
        self.RATE_LIMIT_DEFAULT = _env_str("RATE_LIMIT_DEFAULT", "120/60")

        self.GRANT_EXPIRY_DAYS = _env_int("GRANT_EXPIRY_DAYS", 60)
        self.VOTER_ROLES = parse_roles_csv(_env_str("VOTER_ROLES", DEFAULT_ELIGIBLE_ROLES))
        self.NOMINATOR_ROLES = parse_roles_csv(_env_str("NOMINATOR_ROLES", DEFAULT_ELIGIBLE_ROLES))
        self.DISCARD_POLICY = _env_str("DISCARD_POLICY", "BALLOT").upper()
        # Unset: draws come from the OS entropy source.
        self.DISCARD_SEED = _env_str("DISCARD_SEED", "")

        self.RESULTS_CACHE_ENABLED = _env_bool("RESULTS_CACHE_ENABLED", True)

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("Missing DATABASE_URL")
        if self.GRANT_EXPIRY_DAYS <= 0:
            raise RuntimeError("GRANT_EXPIRY_DAYS must be positive")
        if not self.VOTER_ROLES:
            raise RuntimeError("VOTER_ROLES must name at least one role")
        if not self.NOMINATOR_ROLES:
            raise RuntimeError("NOMINATOR_ROLES must name at least one role")
        if self.DISCARD_POLICY not in DISCARD_POLICIES:
            raise RuntimeError(f"DISCARD_POLICY must be one of {sorted(DISCARD_POLICIES)}")
        if self.IS_PRODUCTION and self.DATABASE_URL.startswith("sqlite"):
            raise RuntimeError("SQLite is not supported in production (no row-level locking)")
