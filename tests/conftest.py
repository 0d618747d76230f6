from __future__ import annotations

import os
import sys

import pytest


ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'homeoffice_test.db'}")
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "0/60")
    monkeypatch.setenv("RATE_LIMIT_DEFAULT", "0/60")
    for name in ("DISCARD_POLICY", "DISCARD_SEED", "VOTER_ROLES", "NOMINATOR_ROLES", "GRANT_EXPIRY_DAYS"):
        monkeypatch.delenv(name, raising=False)

    from api import create_app
    from cache_layer import cache_clear

    cache_clear()
    app = create_app()
    app.config["TESTING"] = True

    with app.test_client() as client:
        yield app, client

    cache_clear()
