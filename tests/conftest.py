import asyncio
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

from salon_ledger_api.app.core import db as db_module
from salon_ledger_api.app.core.config import settings
from salon_ledger_api.app.core.security import get_token_verifier
from salon_ledger_api.app.services.staff_service import StaffService


class FakeVerifier:
    """Stands in for the tokeninfo round trip: token -> verified e-mail."""

    def __init__(self, tokens: Optional[Dict[str, str]] = None) -> None:
        self.tokens = dict(tokens or {})
        self.calls = 0

    async def verify(self, token: str) -> Optional[str]:
        self.calls += 1
        return self.tokens.get(token)


@pytest.fixture
def ledger_db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", str(tmp_path / "ledger.db"))
    db_module.init_db()
    return tmp_path / "ledger.db"


@pytest.fixture
def add_staff(ledger_db):
    def _add(email: str, name: str = "", enabled: bool = True):
        return asyncio.run(StaffService.add(email, name=name, enabled=enabled))

    return _add


@pytest.fixture
def verifier():
    return FakeVerifier(
        {
            "token-u1": "u1@example.com",
            "token-u2": "u2@example.com",
            "token-stranger": "stranger@example.com",
        }
    )


@pytest.fixture
def api(ledger_db, verifier):
    from salon_ledger_api.app.main import app

    app.dependency_overrides[get_token_verifier] = lambda: verifier
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
