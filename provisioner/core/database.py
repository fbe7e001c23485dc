"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for the catalog (plans, eggs), the topology
  (locations, nodes, allocations) and per-user entitlement state
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    PrimaryKeyConstraint,
    inspect,
    text,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from provisioner.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Seconds a SQLite connection waits on a locked database before failing
SQLITE_BUSY_TIMEOUT = 30

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

    connect_args = {}
    if url.startswith("sqlite"):
        # Pooled connections are handed to whichever thread checks them out
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}

    if _engine is not None:
        _engine.dispose()

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
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

    Commits on clean exit, rolls back on any exception. Each block is one
    transaction, so a conditional UPDATE and the bookkeeping written next to
    it land together or not at all.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except BaseException:
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


def check_connection() -> bool:
    """
    Check if database connection is available.
    
    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed", extra={"error": str(e)})
        return False


def missing_tables() -> list[str]:
    """Names of tables declared in metadata but absent from the database."""
    existing = set(inspect(get_engine()).get_table_names())
    return [name for name in metadata.tables if name not in existing]


# Plans catalog. Created by an administrator, read-only to the engine.
plans = Table(
    'plans',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(100), nullable=False, unique=True),
    Column('cpu', Integer, nullable=False),
    Column('memory', Integer, nullable=False),
    Column('disk', Integer, nullable=False),
    Column('servers', Integer, nullable=False, server_default='1'),
    Column('allocations', Integer, nullable=False, server_default='1'),
    Column('databases', Integer, nullable=False, server_default='0'),
    Column('backups', Integer, nullable=False, server_default='0'),
    Column('is_trial', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Locations group nodes under shared eligibility rules and a capacity ceiling
locations = Table(
    'locations',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('short', String(60), nullable=False, unique=True),
    Column('long', Text, nullable=True),
    Column('required_plans', JSON, nullable=True),  # empty / NULL = unrestricted
    Column('max_servers', Integer, nullable=False),
    # Touched by every capacity-guarded claim; the row write orders them
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('max_servers >= 0', name='ck_locations_max_servers'),
)

nodes = Table(
    'nodes',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('location_id', Integer, ForeignKey('locations.id'), nullable=False),
    Column('name', String(100), nullable=False),
    Column('public', Boolean, nullable=False, server_default='1'),
    Index('idx_nodes_location_public', 'location_id', 'public'),
)

# An allocation with instance_id NULL is free. A provisional claim holds
# a "pending:<claim_id>" placeholder until the instance id is known.
allocations = Table(
    'allocations',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('node_id', Integer, ForeignKey('nodes.id'), nullable=False),
    Column('ip', String(45), nullable=False),
    Column('port', Integer, nullable=False),
    Column('instance_id', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('node_id', 'ip', 'port', name='uq_allocations_node_ip_port'),
    Index('idx_allocations_node_instance', 'node_id', 'instance_id'),
)

# Eggs (provisioning templates)
eggs = Table(
    'eggs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(191), nullable=False),
    Column('description', Text, nullable=True),
    Column('startup', Text, nullable=False),
    Column('docker_images', JSON, nullable=False),  # {"label": "image"}
    Column('image_url', Text, nullable=True),
)

egg_variables = Table(
    'egg_variables',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('egg_id', Integer, ForeignKey('eggs.id'), nullable=False, index=True),
    Column('env_variable', String(191), nullable=False),
    Column('default_value', Text, nullable=True),
    UniqueConstraint('egg_id', 'env_variable', name='uq_egg_variables_egg_env'),
)

# Per-user, per-plan entitlement counters. purchased_count is written by the
# external purchase process; activated_count only by the ledger.
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(100), nullable=False),
    Column('plan_name', String(100), nullable=False),
    Column('purchased_count', Integer, nullable=False, server_default='0'),
    Column('activated_count', Integer, nullable=False, server_default='0'),
    Column('plan_id', Integer, ForeignKey('plans.id'), nullable=True),
    Column('activated_on', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    PrimaryKeyConstraint('user_id', 'plan_name', name='pk_entitlements'),
    CheckConstraint(
        'activated_count >= 0 AND activated_count <= purchased_count',
        name='ck_entitlements_quota',
    ),
)

# One row per reservation token; status moves held -> released | committed once
entitlement_reservations = Table(
    'entitlement_reservations',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_name', String(100), nullable=False),
    Column('status', String(20), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_entitlement_reservations_user_plan', 'user_id', 'plan_name'),
)
