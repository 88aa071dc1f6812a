import sys
import time
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

backend_dir = Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from branchlms.core.config import settings
from branchlms.db.base import Base
from branchlms.db import session as session_module
from branchlms.main import create_app

# Import models so that they are registered in Base.metadata before create_all.
from branchlms.models import Signatory, Site, User, UserKind, UserRole  # noqa: F401


class _MemoryRedis:
    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def ping(self):
        return True

    def _now(self) -> float:
        return time.time()

    def _get_entry(self, key: str):
        v = self._data.get(key)
        if not v:
            return None
        value, exp = v
        if exp is not None and exp <= self._now():
            self._data.pop(key, None)
            return None
        return value, exp

    def get(self, key: str):
        entry = self._get_entry(key)
        return entry[0] if entry else None

    def set(self, key: str, value: str, ex: int | None = None):
        exp = (self._now() + int(ex)) if ex else None
        self._data[key] = (value, exp)
        return True

    def delete(self, key: str):
        self._data.pop(key, None)
        return 1

    def incr(self, key: str):
        cur = self.get(key)
        n = int(cur or 0) + 1
        _, exp = self._data.get(key, ("", None))
        self._data[key] = (str(n), exp)
        return n

    def expire(self, key: str, seconds: int):
        entry = self._get_entry(key)
        if not entry:
            return False
        value, _ = entry
        self._data[key] = (value, self._now() + int(seconds))
        return True

    def ttl(self, key: str):
        entry = self._get_entry(key)
        if not entry:
            return -2
        _, exp = entry
        if exp is None:
            return -1
        return max(0, int(exp - self._now()))


# Configure test DB (SQLite in-memory) at import time so all tests importing
# branchlms.db.session.SessionLocal will get the patched version.
_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
Base.metadata.create_all(bind=_engine)
session_module.engine = _engine
session_module.SessionLocal = session_module.sessionmaker(autocommit=False, autoflush=False, bind=_engine)

BRANCH_SITE = "north"
OTHER_BRANCH_SITE = "south"


def _seed_sites() -> None:
    with session_module.SessionLocal() as db:
        for sid, name, core in (
            (settings.primary_site_id, "Main", True),
            (settings.external_site_id, "External", False),
            (BRANCH_SITE, "North Branch", False),
            (OTHER_BRANCH_SITE, "South Branch", False),
        ):
            if db.get(Site, sid) is None:
                db.add(Site(id=sid, name=name, is_core=core))
        db.commit()


_seed_sites()


# Stub Redis at import time (rate limiting + proctoring locks).
_mem_redis = _MemoryRedis()
import branchlms.core.redis_client as redis_client_module

redis_client_module.get_redis = lambda: _mem_redis

import branchlms.core.rate_limit as rate_limit_module
rate_limit_module.get_redis = lambda: _mem_redis

import branchlms.routers.health as health_router_module
health_router_module.get_redis = lambda: _mem_redis


@pytest.fixture(autouse=True)
def _reset_redis():
    _mem_redis._data.clear()
    yield


@pytest.fixture(scope="session")
def client():
    app = create_app()

    # Ensure app dependencies use our session factory.
    def _get_db_override():
        db = session_module.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[session_module.get_db] = _get_db_override
    return TestClient(app)


@pytest.fixture()
def db():
    with session_module.SessionLocal() as session:
        yield session


@pytest.fixture()
def memory_redis():
    return _mem_redis


def create_user(
    *,
    site_id: str,
    role: UserRole = UserRole.employee,
    kind: UserKind = UserKind.employee,
    name: str | None = None,
    password_hash: str = "x",
) -> uuid.UUID:
    with session_module.SessionLocal() as db:
        user = User(
            site_id=site_id,
            name=name or f"user_{uuid.uuid4().hex[:8]}",
            full_name="Test User",
            role=role,
            kind=kind,
            password_hash=password_hash,
        )
        db.add(user)
        db.commit()
        return user.id


def headers_for(user_id: uuid.UUID, site_id: str, role: UserRole = UserRole.employee) -> dict[str, str]:
    from branchlms.routers.auth import create_access_token

    token = create_access_token(user_id=str(user_id), role=role.value, site_id=site_id)
    return {"Authorization": f"Bearer {token}"}


def create_signatory(*, site_id: str | None, name: str = "Dr. Signer", position: str = "Director") -> uuid.UUID:
    with session_module.SessionLocal() as db:
        s = Signatory(site_id=site_id, name=name, position=position, signature_image_path="sig.png")
        db.add(s)
        db.commit()
        return s.id


def question(text: str, correct: int = 0, n: int = 3) -> dict:
    return {"text": text, "options": [{"text": f"{text} #{i}", "isCorrect": i == correct} for i in range(n)]}


@pytest.fixture()
def super_admin():
    uid = create_user(site_id=settings.primary_site_id, role=UserRole.admin)
    return uid, headers_for(uid, settings.primary_site_id, UserRole.admin)


@pytest.fixture()
def branch_admin():
    uid = create_user(site_id=BRANCH_SITE, role=UserRole.admin)
    return uid, headers_for(uid, BRANCH_SITE, UserRole.admin)


@pytest.fixture()
def make_course(client):
    """Create a course through the admin API and return its tree."""

    def _make(admin_headers: dict[str, str], **overrides) -> dict:
        body = {
            "title": f"Course {uuid.uuid4().hex[:8]}",
            "description": "Safety basics",
            "venue": "Hall A",
            "modules": [
                {"title": "Module 1", "lessons": [{"type": "document", "title": "Read me", "content": "text"}]},
            ],
        }
        body.update(overrides)
        r = client.post("/admin/courses", json=body, headers=admin_headers)
        assert r.status_code == 200, r.text
        cid = r.json()["id"]
        r = client.get(f"/admin/courses/{cid}", headers=admin_headers)
        assert r.status_code == 200, r.text
        return r.json()

    return _make


@pytest.fixture()
def learner(client):
    """Create an employee in ``site_id`` enrolled in ``course_id``."""

    def _make(admin_headers: dict[str, str], site_id: str, course_id: str):
        uid = create_user(site_id=site_id)
        r = client.post("/admin/enrollments", json={"user_id": str(uid), "course_id": course_id}, headers=admin_headers)
        assert r.status_code == 200, r.text
        return uid, headers_for(uid, site_id)

    return _make


def lesson_ids(tree: dict) -> list[str]:
    return [l["id"] for m in tree["modules"] for l in m["lessons"]]
