"""
Database configuration and connection management for the local backend.

The hosted project owns the real schema. This module mirrors the subset the
household core touches so the reference backend (features/remote/sql_gateway.py)
and the test suite can run against SQLite or Postgres:
- SQLAlchemy engine and session management
- Table definitions (profiles, households, household_members,
  household_invitations, items, household_notifications)
- Reset helpers for tests
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from larder.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# Profiles (subscription + onboarding state, one row per auth user)
profiles = Table(
    'profiles',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('username', String(100), nullable=True),
    Column('full_name', Text, nullable=True),
    Column('avatar_url', Text, nullable=True),
    Column('subscription_status', String(50), nullable=False, server_default='free'),
    Column('subscription_plan_id', String(100), nullable=True),
    Column('trial_started_at', DateTime(timezone=True), nullable=True),
    Column('trial_end_at', DateTime(timezone=True), nullable=True),
    Column('has_used_trial', Boolean, nullable=False, default=False),
    # Auth user metadata (onboarding flags)
    Column('user_metadata', JSON, nullable=False, default=dict),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_profiles_subscription_status', 'subscription_status'),
)

households = Table(
    'households',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('invite_code', String(20), nullable=True, unique=True),
    Column('created_by', String(100), nullable=False, index=True),
    Column('max_members', Integer, nullable=False, default=5),
    Column('metadata', JSON, nullable=False, default=dict),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

household_members = Table(
    'household_members',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('household_id', String(100), ForeignKey('households.id', ondelete='CASCADE'), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('role', String(20), nullable=False),  # 'owner', 'member'
    Column('is_active', Boolean, nullable=False, default=True),
    Column('metadata', JSON, nullable=False, default=dict),
    Column('joined_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=True),
    # One membership per (household_id, user_id)
    UniqueConstraint('household_id', 'user_id', name='uq_household_members_household_user'),
    Index('idx_household_members_active', 'user_id', 'is_active'),
)

household_invitations = Table(
    'household_invitations',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('household_id', String(100), ForeignKey('households.id', ondelete='CASCADE'), nullable=False, index=True),
    Column('invited_by', String(100), nullable=False),
    Column('invited_email', String(255), nullable=True),
    Column('invited_user_id', String(100), nullable=True, index=True),
    Column('message', Text, nullable=True),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending | accepted | declined | expired
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('responded_at', DateTime(timezone=True), nullable=True),
    Index('idx_household_invitations_email_status', 'invited_email', 'status'),
)

items = Table(
    'items',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('household_id', String(100), ForeignKey('households.id', ondelete='CASCADE'), nullable=False, index=True),
    Column('name', Text, nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Pending downgrade notifications: append-only rows, deleted one by one on dismissal
household_notifications = Table(
    'household_notifications',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('household_id', String(100), nullable=False),
    Column('kind', String(50), nullable=False),
    Column('payload', JSON, nullable=False, default=dict),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_household_notifications_user_created', 'user_id', 'created_at'),
)
