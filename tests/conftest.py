# tests/conftest.py
import os

# Settings are read at import time
os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789-abcdefghijklmnop")
os.environ.setdefault("FB_APP_SECRET", "test-app-secret")
os.environ.setdefault("FB_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("FB_PAGE_ACCESS_TOKEN", "test-page-token")

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from jose import jwt

from crm.core.config import settings


def make_token(user_id=7, entity_id=1, role="sales_rep", expires_in=3600, **extra):
    claims = {"sub": str(user_id), "entity_id": entity_id, "role": role, "exp": int(time.time()) + expires_in}
    claims.update(extra)
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def auth_headers(**kwargs):
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}


def fake_lead(lead_id=1, entity_id=1, status="new", assigned_user_id=None):
    return SimpleNamespace(id=lead_id, entity_id=entity_id, status=status, assigned_user_id=assigned_user_id, assigned_at=None)


@pytest.fixture
def session():
    """AsyncSession stand-in; add() is sync on the real thing."""
    mock = AsyncMock()
    mock.add = MagicMock()
    return mock


@pytest.fixture
async def db_session():
    if not os.getenv("DATABASE_URL"):
        pytest.skip("DATABASE_URL not set (expected async postgres url)")

    from sqlalchemy import delete
    from sqlalchemy.dialects.postgresql import insert as pg_insert

    from crm.db.base import Base
    from crm.db.session import dispose_engine, get_session_factory
    from crm.db.session import create_database_engine
    from crm.models import Entity, FacebookPage, LeadStatus, User
    from crm.services.pipeline import DEFAULT_TRANSITIONS

    engine = create_database_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    factory = get_session_factory()
    async with factory() as s:
        await s.execute(
            pg_insert(LeadStatus).values(
                [
                    {"id": i, "name": name, "display_order": i}
                    for i, name in enumerate(DEFAULT_TRANSITIONS, start=1)
                ]
            )
        )
        s.add_all(
            [
                Entity(id=1, name="Acme", website_key="acme-key"),
                Entity(id=2, name="Globex", website_key="globex-key"),
            ]
        )
        await s.flush()
        s.add_all(
            [
                FacebookPage(entity_id=1, page_id="page-1", page_name="Acme Page"),
                User(id=10, entity_id=1, email="rep1@acme.test", role="sales_rep"),
                User(id=11, entity_id=1, email="rep2@acme.test", role="sales_rep"),
                User(id=12, entity_id=1, email="boss@acme.test", role="manager"),
                User(id=20, entity_id=2, email="rep@globex.test", role="sales_rep"),
            ]
        )
        await s.commit()

    async with factory() as s:
        yield s

    await dispose_engine()
