# larder/conftest.py
import os

import pytest

# Tests always run against the local reference backend on in-memory SQLite
os.environ["BACKEND_MODE"] = "local"
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-for-larder-suite-0123456789")


@pytest.fixture(scope="session", autouse=True)
def test_engine():
    """One in-memory SQLite engine shared by the whole session."""
    from larder.core.database import init_engine, create_all_tables

    engine = init_engine(os.getenv("TEST_DATABASE_URL") or "sqlite://")
    create_all_tables()
    yield engine


@pytest.fixture(scope="function", autouse=True)
def reset_db(test_engine):
    """Drop and recreate every table so each test starts empty."""
    from larder.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def change_broker():
    """Isolated realtime broker so events never leak between tests."""
    from larder.features.remote.sql_gateway import LocalChangeBroker

    return LocalChangeBroker()


@pytest.fixture
def local_mode(monkeypatch):
    from larder.core.config import settings

    monkeypatch.setattr(settings, "BACKEND_MODE", "local")
    return settings
