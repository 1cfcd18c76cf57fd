"""
Shared fixtures.

Services run against an in-memory SQLite database with the SAVEPOINT recipe
applied, so unique constraints, the partial open-case index and guarded
updates behave as they do in production. HTTP tests use FastAPI's
TestClient with get_db pointed at the same session.
"""
import os

# Must be set before app.database builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth import create_access_token
from app.database import Base, enable_sqlite_savepoints, get_db
from app.main import create_app
from app.models.db_models import AccountDB, AccountRole


# Fixed clock for service-level tests
NOW = datetime(2026, 3, 10, 12, 0, 0)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db(engine):
    """Database session bound to the test engine."""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    yield session
    session.close()


def make_account(db, email=None, role=AccountRole.USER) -> AccountDB:
    account = AccountDB(id=str(uuid4()), email=email or f"{uuid4().hex[:8]}@example.com", role=role)
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def account(db):
    """A regular business account."""
    return make_account(db, "owner@example.com")


@pytest.fixture
def admin_account(db):
    return make_account(db, "admin@example.com", role=AccountRole.ADMIN)


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def app(db):
    """Application with get_db overridden to the test session."""
    application = create_app()

    def override_get_db():
        yield db

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def auth_headers(account: AccountDB) -> dict:
    token = create_access_token(account.id, account.email, role=account.role.value)
    return {"Authorization": f"Bearer {token}"}
