"""
Shared fixtures.

- In-memory SQLite (StaticPool) so every session in a test sees the same data
- FakeCustodyClient: scripted stand-in for the Snipe-IT client
- ctx(): BookingContext factory
- api: FastAPI TestClient with get_db / get_custody_client overridden
"""

import pytest
from datetime import datetime, time
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from kitdesk.database import Base
from kitdesk import models  # noqa: F401
from kitdesk.exceptions import ExternalSystemError
from kitdesk.models.opening_hours import OpeningHoursDefault
from kitdesk.schemas.booking import BookingContext, UserGroup
from kitdesk.services.snipeit_client import AuthRequirements, CustodyAsset

UTC = ZoneInfo("UTC")

ACCESS_GROUP = UserGroup(id=1, name="Access - Students")


class FakeCustodyClient:
    """Records every call; reads come from plain dicts the test fills in"""

    def __init__(self):
        self.totals: Dict[int, int] = {}
        self.requirements: Dict[int, AuthRequirements] = {}
        self.groups: Dict[int, List[Dict]] = {}
        self.users_by_email: Dict[str, Dict] = {}
        self.checked_out: List[CustodyAsset] = []
        self.calls: List[tuple] = []
        self.fail_reads = False
        self.fail_writes = False

    def _read(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_reads:
            raise ExternalSystemError("Snipe-IT unreachable", http_status=503, error_code="service_unavailable")

    def _write(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_writes:
            raise ExternalSystemError("Snipe-IT rejected the write", error_code="rejected")

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]

    def count_requestable_assets_by_model(self, model_id: int) -> int:
        self._read("count", model_id)
        return self.totals.get(model_id, 0)

    def get_model_auth_requirements(self, model_id: int) -> AuthRequirements:
        self._read("requirements", model_id)
        return self.requirements.get(model_id, AuthRequirements())

    def get_user_groups(self, user_id: int) -> List[Dict]:
        self._read("groups", user_id)
        return self.groups.get(user_id, [])

    def find_user_by_email(self, email: str) -> Optional[Dict]:
        self._read("find_user", email)
        return self.users_by_email.get(email)

    def list_checked_out_assets(self) -> List[CustodyAsset]:
        self._read("list_checked_out")
        return list(self.checked_out)

    def checkout_asset(self, asset_id: int, user_id: int, expected_checkin=None, note: str = ""):
        self._write("checkout", asset_id, user_id, expected_checkin)

    def checkin_asset(self, asset_id: int, note: str = ""):
        self._write("checkin", asset_id)

    def update_expected_checkin(self, asset_id: int, expected_checkin: datetime):
        self._write("update_expected_checkin", asset_id, expected_checkin)

    def add_asset_note(self, asset_id: int, note: str):
        self._write("note", asset_id, note)

    def ping(self) -> bool:
        self._read("ping")
        return True


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def custody():
    return FakeCustodyClient()


@pytest.fixture
def open_all_week(db):
    """Every weekday open 00:00-23:59 (UTC facility in tests)"""
    for weekday in range(1, 8):
        db.add(OpeningHoursDefault(weekday=weekday, open_time=time(0, 0), close_time=time(23, 59)))
    db.commit()


@pytest.fixture
def ctx():
    def make(
        email: str = "alice@example.com",
        name: str = "Alice",
        external_user_id: Optional[int] = 10,
        groups: Optional[List[UserGroup]] = None,
        now: Optional[datetime] = None,
        **flags
    ) -> BookingContext:
        return BookingContext(
            user_name=name,
            user_email=email,
            external_user_id=external_user_id,
            groups=[ACCESS_GROUP] if groups is None else groups,
            now=now,
            **flags
        )
    return make


@pytest.fixture
def api(session_factory, custody, monkeypatch):
    from fastapi.testclient import TestClient
    from kitdesk.database import get_db
    from kitdesk.main import app
    from kitdesk.utils.dependencies import get_custody_client
    from kitdesk.utils import datetime_helpers

    monkeypatch.setattr(datetime_helpers.settings, "timezone", "UTC")

    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_custody_client] = lambda: custody
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
