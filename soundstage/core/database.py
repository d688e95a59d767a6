"""
Database engine, sessions and table definitions.

The ledger runs on SQLAlchemy Core: every balance mutation is a single
guarded statement inside a short transaction opened by get_db_session().
SQLite (local development, tests) and Postgres (production) are both
supported; TEST_DATABASE_URL in the environment wins over DATABASE_URL.
"""
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func, select

from soundstage.core.config import settings

logger = logging.getLogger("soundstage")

metadata = MetaData()

# Postgres pool sizing; SQLite uses the driver defaults
POSTGRES_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> str:
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if not url.startswith("sqlite"):
        return dict(POSTGRES_POOL)
    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 15}}
    if ":memory:" in url:
        # One shared connection, otherwise every session sees an empty database
        options["poolclass"] = StaticPool
    return options


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the engine and session factory; disposes any previous engine."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured")

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, **_engine_options(url))
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    return _engine


def get_engine() -> Engine:
    return _engine if _engine is not None else init_engine()


@contextmanager
def get_db_session():
    """
    One transaction: commit on clean exit, roll back on any exception.

        with get_db_session() as session:
            session.execute(...)
    """
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Idempotent; existing tables are left alone."""
    metadata.create_all(bind=get_engine())


def reset_database() -> None:
    """Delete every row, keeping the schema. Tests only."""
    with get_engine().begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except SQLAlchemyError as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
    return True


# Accounts: one row per authenticated user
accounts = Table(
    'accounts',
    metadata,
    Column('account_id', String(100), primary_key=True),
    Column('plan_tier', String(30), nullable=False, server_default='free'),
    Column('credit_balance', Integer, nullable=False, server_default='0'),
    Column('last_reset_at', DateTime(timezone=True), nullable=False),
    Column('payment_customer_id', String(100), nullable=True, unique=True),
    Column('subscription_id', String(100), nullable=True),
    Column('vocal_gender_preference', String(1), nullable=False, server_default='m'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('credit_balance >= 0', name='ck_accounts_balance_non_negative'),
    Index('idx_accounts_plan_tier', 'plan_tier'),
)

# Append-only audit of every balance mutation
credit_ledger = Table(
    'credit_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), nullable=False),
    Column('entry_type', String(20), nullable=False),  # deduct, credit, refund, reset, payment
    Column('amount', Integer, nullable=False),  # signed delta
    Column('balance_after', Integer, nullable=False),
    Column('operation_kind', String(50), nullable=True),
    Column('reference', String(200), nullable=True),  # payment id, task id, reason
    Column('details', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_credit_ledger_account_created', 'account_id', 'created_at'),
)

# Payment idempotency: one row per reconciled payment reference
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('payment_id', String(200), nullable=False),
    Column('account_id', String(100), nullable=False, index=True),
    Column('bundle_id', String(50), nullable=True),
    Column('credits', Integer, nullable=False),
    Column('source', String(30), nullable=False),  # webhook, client_confirm
    Column('provider_event_id', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('payment_id', name='uq_payment_events_payment_id'),
)

# Dispatched generation tasks (resolved by polling or callback)
generation_tasks = Table(
    'generation_tasks',
    metadata,
    Column('task_id', String(200), primary_key=True),
    Column('account_id', String(100), nullable=False),
    Column('operation_kind', String(50), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('credits_charged', Integer, nullable=False, server_default='0'),
    Column('result', JSON, nullable=True),
    Column('error', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_generation_tasks_account_created', 'account_id', 'created_at'),
    Index('idx_generation_tasks_status', 'status'),
)
