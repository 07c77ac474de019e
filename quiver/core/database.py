"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for users, entitlements, purchases, usage quota and legacy grants
"""
from typing import Any, Mapping, Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, insert, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from quiver.core.config import settings


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


def is_sqlite_memory(database_url: str) -> bool:
    """True for sqlite://, sqlite:///:memory: and file::memory: style URLs."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return False
    database = url.database or ""
    return database in ("", ":memory:") or url.query.get("mode") == "memory"


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

    if is_sqlite_memory(url):
        # Single shared connection so the in-memory database survives across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    elif url.startswith("sqlite"):
        # File database: pooled connections, used from the webhook threadpool
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
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
    logger.info(f"[database] engine initialized: {_engine.dialect.name}")

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine (tests swap databases between cases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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

    Commits on clean exit, rolls back on error.
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
    """Create all tables defined in metadata (idempotent)."""
    engine = get_engine()
    metadata.create_all(engine)


def drop_all_tables():
    """Drop all tables. Test use only."""
    engine = get_engine()
    metadata.drop_all(engine)


def upsert_row(table: Table, key_column: str, key_value: str, values: Mapping[str, Any]) -> None:
    """
    Update-then-insert keyed on a unique column.

    Only the columns in ``values`` are written, so concurrent writers owning
    different columns do not clobber each other. If a concurrent first write
    wins the insert, the update is replayed against the row it created.
    """
    key = table.c[key_column]
    with get_db_session() as session:
        result = session.execute(update(table).where(key == key_value).values(**values))
        if result.rowcount:
            return
    try:
        with get_db_session() as session:
            session.execute(insert(table).values({key_column: key_value, **values}))
    except IntegrityError:
        with get_db_session() as session:
            session.execute(update(table).where(key == key_value).values(**values))


# ============================================================================
# TABLE DEFINITIONS
# ============================================================================

# Users (identity is owned by the auth layer; billing mirror and arrow profile live here)
users = Table(
    'users',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('subscription_tier', String(32), nullable=False, server_default='free'),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    # Learned Auto-Plot arrow appearance (fletch/nock/wrap colours)
    Column('arrow_appearance', JSON, nullable=True),
    Column('arrow_appearance_description', Text, nullable=True),
    Column('arrow_appearance_updated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_users_stripe_customer_id', 'stripe_customer_id'),
)

# Entitlements (one row per user; merged in place, never deleted)
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('tier', String(32), nullable=False, server_default='free'),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('grace_ends_at', DateTime(timezone=True), nullable=True),
    Column('is_legacy_entitled', Boolean, nullable=False, server_default='0'),
    Column('has_one_time_purchase', Boolean, nullable=False, server_default='0'),
    Column('legacy_email', String(320), nullable=True),
    Column('legacy_checked_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_entitlements_stripe_customer_id', 'stripe_customer_id'),
)

# One-time purchases (append-only ledger)
purchases = Table(
    'purchases',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False, index=True),
    Column('product_id', String(100), nullable=True),
    Column('stripe_payment_id', String(100), nullable=True),
    Column('amount_paid', Integer, nullable=False, server_default='0'),  # minor units
    Column('source', String(32), nullable=False, server_default='stripe'),
    Column('purchased_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_purchases_user_product', 'user_id', 'product_id'),
)

# Metered usage per calendar period (count only ever increases)
usage_quota = Table(
    'usage_quota',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('period_key', String(16), nullable=False),  # YYYY-MM (UTC)
    Column('count', Integer, nullable=False, server_default='0'),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('user_id', 'period_key', name='uq_usage_quota_user_period'),
    Index('idx_usage_quota_user_period', 'user_id', 'period_key'),
)

# Legacy access grants keyed by normalized email
legacy_users = Table(
    'legacy_users',
    metadata,
    Column('email', String(320), primary_key=True),
    Column('products', JSON, nullable=False),
    Column('notes', Text, nullable=True),
    Column('added_by', String(128), nullable=True),
    Column('granted_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
