"""
Database models and async database manager for passkeyrp.

This module defines the SQLAlchemy ORM models (User, Credential, Challenge, Session, AuditEvent) and provides the async engine and session manager. Only SQLite (aiosqlite) and PostgreSQL (asyncpg) are supported.
"""

import json
import logging
import time
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import Column, event, ForeignKey, LargeBinary, AsyncAdaptedQueuePool
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator, TEXT, String, Text, Boolean, Integer, Float

from passkeyrp.core.config import settings

logger = logging.getLogger(__name__)

# --- Base Model ---
Base = declarative_base()

# --- Async Engine Setup ---
db_uri = settings.DEFAULT_DATABASE_URI
if 'sqlite' in db_uri and 'aiosqlite' not in db_uri:
    db_uri = db_uri.replace('sqlite:///', 'sqlite+aiosqlite:///')

if 'sqlite' in db_uri:
    engine = create_async_engine(db_uri, connect_args={'check_same_thread': False, 'timeout': 30})
else:
    engine = create_async_engine(
        db_uri,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_recycle=settings.DATABASE_POOL_RECYCLE,
        pool_pre_ping=settings.DATABASE_POOL_PRE_PING,
    )

# --- SQLite PRAGMA Configuration ---
if engine.dialect.name == 'sqlite':
    @event.listens_for(Engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Enforces foreign key constraints so user deletion cascades on SQLite."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# --- Custom Column Types ---

class JsonType(TypeDecorator):
    """
    Stores a Python value as JSON. Uses native JSONB on PostgreSQL, TEXT on SQLite.
    """
    impl = TEXT
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(Text)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == 'postgresql':
            return value
        return json.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == 'postgresql':
            return value
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value


# --- ORM Models ---

class User(Base):
    """
    Identity anchor. Created once, by the first successful registration under
    an unseen user handle; removed only by explicit account deletion.
    """
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(80), unique=True, nullable=False, index=True)
    display_name = Column(String(120), nullable=False, default="")
    webauthn_user_id = Column(LargeBinary(64), unique=True, nullable=False)
    created_at = Column(Float, nullable=False, default=time.time)

    credentials = relationship("Credential", back_populates="user", cascade="all, delete-orphan",
                               passive_deletes=True)
    sessions = relationship("Session", back_populates="user", cascade="all, delete-orphan",
                            passive_deletes=True)

    def __repr__(self):
        return f"<User {self.username}>"


class Credential(Base):
    """
    A registered public key. `public_key` holds the canonical COSE_Key CBOR
    exactly as the authenticator produced it.
    """
    __tablename__ = 'credentials'

    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(LargeBinary(1023), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(Integer, default=0, nullable=False)
    aaguid = Column(LargeBinary(16), nullable=True)
    transports = Column(JsonType, nullable=True, default=list)
    is_backup_eligible = Column(Boolean, default=False, nullable=False)
    is_backed_up = Column(Boolean, default=False, nullable=False)
    created_at = Column(Float, nullable=False, default=time.time)
    last_used_at = Column(Float, nullable=True)
    user = relationship("User", back_populates="credentials")

    def __repr__(self):
        return f"<Credential {self.credential_id.hex()[:16]} (User: {self.user_id})>"


class Challenge(Base):
    """
    Single-use nonce bound to one ceremony kind and, optionally, a user handle.
    """
    __tablename__ = 'challenges'

    id = Column(Integer, primary_key=True, autoincrement=True)
    value = Column(LargeBinary(64), unique=True, nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # "registration" or "authentication"
    scope = Column(String(80), nullable=True)
    webauthn_user_id = Column(LargeBinary(64), nullable=True)
    display_name = Column(String(120), nullable=True)
    created_at = Column(Float, nullable=False, default=time.time)
    consumed = Column(Boolean, default=False, nullable=False)
    consumed_at = Column(Float, nullable=True)

    def is_expired(self, now: float = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at >= settings.CHALLENGE_TTL_SECONDS


class Session(Base):
    """
    Proof of a completed ceremony. Keyed by the SHA-256 of the opaque token
    so a leaked table does not leak usable tokens.
    """
    __tablename__ = 'sessions'

    token_hash = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    authenticated_at = Column(Float, nullable=False, default=time.time)
    create_ip = Column(String(45), nullable=True)
    user = relationship('User', back_populates='sessions')

    def is_expired(self, now: float = None) -> bool:
        now = time.time() if now is None else now
        return now - self.authenticated_at >= settings.SESSION_LIFETIME_SECONDS

    @property
    def expires_at(self) -> float:
        return self.authenticated_at + settings.SESSION_LIFETIME_SECONDS


class AuditEvent(Base):
    __tablename__ = 'audit_events'
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    timestamp = Column(Float, nullable=False, default=time.time)
    ip_address = Column(String(45), nullable=True)
    details = Column(JsonType, nullable=True)


class DatabaseManager:
    """
    Manages async database connections and sessions.
    Handles auto-creation of tables and audit event logging.
    """
    AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    def __init__(self):
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize_database(self):
        """Creates tables if they don't exist."""
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def get_context_manager_db(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provides an async database session as a context manager.
        Ensures tables are created if AUTO_CREATE_DATABASE is enabled.
        """
        if settings.AUTO_CREATE_DATABASE and not self._initialized:
            async with self._init_lock:
                if not self._initialized:
                    await self.initialize_database()
        async with self.AsyncSessionLocal() as session:
            yield session

    def get_db(self):
        """
        Returns an async context manager for a database session.
        Usage: async with db_manager.get_db() as db:
        """
        return self.get_context_manager_db()

    async def log_audit_event(self, user_id, event_type: str, ip_address: str = None, details: dict = None,
                              db: AsyncSession = None):
        """
        Records an audit event. If db is provided the event joins that
        transaction and the caller commits; otherwise it is committed here.
        """
        audit_event = AuditEvent(
            user_id=user_id,
            event_type=event_type,
            ip_address=ip_address,
            details=details or {}
        )
        if db:
            db.add(audit_event)
            return audit_event

        async with self.get_db() as session:
            session.add(audit_event)
            await session.commit()
            return audit_event


db_manager = DatabaseManager()
