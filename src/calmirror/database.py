"""Database models and operations for sync properties and locking."""

import asyncio
import os
import socket
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4
import logging

from sqlalchemy import create_engine, Column, String, DateTime, Text, Index, update, delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
import pytz

from .config import Settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as stored in the database (naive)."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


class PropertyDB(Base):
    """Database model for key-value properties, scoped per principal."""

    __tablename__ = 'properties'

    scope = Column(String(255), primary_key=True)
    key = Column(String(500), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_property_updated', 'updated_at'),
    )


class LockDB(Base):
    """Database model for named lease locks."""

    __tablename__ = 'locks'

    name = Column(String(100), primary_key=True)
    owner = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class DatabaseManager:
    """Database manager for properties and locks."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()


class PropertyStore:
    """Durable string properties for one principal."""

    def __init__(self, db: DatabaseManager, scope: str):
        self.db = db
        self.scope = scope

    def get(self, key: str) -> Optional[str]:
        with self.db.get_session() as session:
            row = session.get(PropertyDB, (self.scope, key))
            return row.value if row else None

    def set(self, key: str, value: str) -> None:
        with self.db.get_session() as session:
            session.merge(PropertyDB(scope=self.scope, key=key, value=value, updated_at=utcnow()))
            session.commit()

    def delete(self, key: str) -> None:
        with self.db.get_session() as session:
            session.execute(
                delete(PropertyDB).where(PropertyDB.scope == self.scope, PropertyDB.key == key)
            )
            session.commit()

    def keys(self, prefix: str = "") -> List[str]:
        with self.db.get_session() as session:
            query = session.query(PropertyDB.key).filter(PropertyDB.scope == self.scope)
            if prefix:
                query = query.filter(PropertyDB.key.startswith(prefix, autoescape=True))
            return sorted(key for (key,) in query.all())

    def clear(self) -> None:
        """Remove every property of this scope."""
        with self.db.get_session() as session:
            session.execute(delete(PropertyDB).where(PropertyDB.scope == self.scope))
            session.commit()


class LockTimeoutError(Exception):
    """The lock could not be acquired within the allowed wait."""
    pass


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class DatabaseLock:
    """Named mutual-exclusion lease shared by every process using the database.

    A live holder renews its lease while inside ``hold``; one that crashes
    keeps the lock only until its lease expires.
    """

    def __init__(
        self,
        db: DatabaseManager,
        name: str,
        lease: timedelta,
        owner: Optional[str] = None
    ):
        self.db = db
        self.name = name
        self.lease = lease
        self.owner = owner or default_owner()
        self.logger = logger.getChild('lock')

    def try_acquire(self) -> bool:
        """Take the lock if it is free, expired or already ours."""
        now = utcnow()
        expires_at = now + self.lease
        with self.db.get_session() as session:
            try:
                result = session.execute(
                    update(LockDB)
                    .where(LockDB.name == self.name)
                    .where(or_(LockDB.expires_at <= now, LockDB.owner == self.owner))
                    .values(owner=self.owner, acquired_at=now, expires_at=expires_at)
                )
                if result.rowcount == 0:
                    session.add(LockDB(
                        name=self.name,
                        owner=self.owner,
                        acquired_at=now,
                        expires_at=expires_at
                    ))
                session.commit()
                return True
            except IntegrityError:
                session.rollback()
                return False

    def renew(self) -> bool:
        """Extend our lease; False if the lock is no longer ours."""
        now = utcnow()
        with self.db.get_session() as session:
            result = session.execute(
                update(LockDB)
                .where(LockDB.name == self.name, LockDB.owner == self.owner)
                .values(expires_at=now + self.lease)
            )
            session.commit()
            return result.rowcount > 0

    def release(self) -> None:
        with self.db.get_session() as session:
            session.execute(
                delete(LockDB).where(LockDB.name == self.name, LockDB.owner == self.owner)
            )
            session.commit()

    def holder(self) -> Optional[str]:
        """Owner of a live lease, if any."""
        with self.db.get_session() as session:
            row = session.get(LockDB, self.name)
            if row is None or row.expires_at <= utcnow():
                return None
            return row.owner

    async def acquire(self, timeout: float, poll_interval: float = 1.0) -> None:
        """Wait up to ``timeout`` seconds for the lock.

        Raises:
            LockTimeoutError: If the lock is still held by someone else
        """
        loop = asyncio.get_event_loop()
        deadline = loop.time() + timeout
        while not self.try_acquire():
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LockTimeoutError(
                    f"Lock '{self.name}' still held by {self.holder()} after {timeout:.0f}s"
                )
            await asyncio.sleep(min(poll_interval, remaining))
        self.logger.debug(f"Acquired lock '{self.name}' as {self.owner}")

    async def _keep_alive(self) -> None:
        interval = self.lease.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            if not self.renew():
                self.logger.error(f"Lost lock '{self.name}', another holder took it over")
                return

    @asynccontextmanager
    async def hold(self, timeout: float, poll_interval: float = 1.0):
        """Hold the lock for the body of the block, renewing the lease until it exits."""
        await self.acquire(timeout, poll_interval)
        heartbeat = asyncio.ensure_future(self._keep_alive())
        try:
            yield self
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            self.release()
            self.logger.debug(f"Released lock '{self.name}'")
