"""
Persistent store for Certs Monitor.

Wraps a SQLAlchemy async engine and exposes two session scopes: ``session()``
for reads and ``transaction()`` for all-or-nothing groups of writes.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from certs_monitor.config import Config
from certs_monitor.logger import get_logger
from certs_monitor.models import Base, Domain, User
from certs_monitor.utils import generate_token


class Store:
    """Owns the database engine and hands out sessions."""

    def __init__(self, config: Config, engine: Optional[AsyncEngine] = None):
        self.config = config
        self.logger = get_logger("store")
        self.engine = engine or create_async_engine(config.database_url, **self._engine_kwargs())
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self.logger.info(f"Store initialized - URL: {self._mask_password(config.database_url)}")

    def _engine_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"echo": self.config.database_echo}

        # SQLite gets a fresh connection per session and waits on write locks
        if self.config.database_url.startswith("sqlite"):
            kwargs["poolclass"] = NullPool
            kwargs["connect_args"] = {"timeout": 30}
        else:
            kwargs["pool_pre_ping"] = True

        return kwargs

    @staticmethod
    def _mask_password(url: str) -> str:
        if "://" not in url:
            return url

        protocol, rest = url.split("://", 1)
        if "@" not in rest:
            return url

        credentials, host_part = rest.split("@", 1)
        if ":" in credentials:
            user, _ = credentials.split(":", 1)
            return f"{protocol}://{user}:****@{host_part}"

        return url

    async def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("Database schema ensured")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session for read-only work; nothing is committed."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session whose writes are applied atomically.

        Commits when the block exits normally and rolls back when it raises,
        so a partially applied group of writes is never observable.
        """
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def add_user(
        self,
        email: str,
        confirmed: bool = True,
        send_heartbeat_report: bool = True,
    ) -> User:
        """Create a user with a fresh settings token."""
        async with self.transaction() as session:
            user = User(
                email=email,
                confirmed=confirmed,
                send_heartbeat_report=send_heartbeat_report,
                settings_token=generate_token(),
            )
            session.add(user)
        return user

    async def add_domain(
        self, user_id: int, name: str, port: int = 443, confirmed: bool = True
    ) -> Domain:
        """Register a domain for monitoring."""
        async with self.transaction() as session:
            domain = Domain(user_id=user_id, name=name.lower(), port=port, confirmed=confirmed)
            session.add(domain)
        return domain

    async def get_domain(self, domain_id: int) -> Optional[Domain]:
        async with self.session() as session:
            return await session.get(Domain, domain_id)

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.session() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def get_health_status(self) -> Dict[str, Any]:
        """Get store health status."""
        start = time.monotonic()
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return {
                "database": {
                    "status": "healthy",
                    "latency_ms": round((time.monotonic() - start) * 1000, 2),
                }
            }
        except SQLAlchemyError as e:
            self.logger.error(f"Database health check failed: {e}")
            return {"database": {"status": "error", "error": str(e)}}

    async def close(self) -> None:
        """Dispose of the engine and its connections."""
        await self.engine.dispose()
        self.logger.info("Store closed")
