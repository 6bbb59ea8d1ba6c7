"""
Database Manager - SQLite connection and session scope for the record store.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy import event
from contextlib import asynccontextmanager
from pathlib import Path
import logging

from .models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages the SQLite database connection.

    Creates tables, applies migrations and hands out transactional sessions.
    Transactions are begun explicitly so SAVEPOINTs (``begin_nested``) work
    under aiosqlite. Write sessions open with ``BEGIN IMMEDIATE`` so a
    writer waits on ``busy_timeout`` for the lock instead of failing when a
    deferred read transaction tries to upgrade.
    """

    def __init__(self, storage_path: str = "./storage", db_name: str = "knowledge.db"):
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_path / db_name
        self.db_url = f"sqlite+aiosqlite:///{self.db_path}"
        self._migrated = False
        self._initialized = False
        self._engine = None
        self._session_factory = None
        self._write_session_factory = None

    def _get_engine(self):
        """Lazy engine creation - ensures it's created in the right event loop context."""
        if self._engine is None:
            self._engine = create_async_engine(
                self.db_url,
                connect_args={"check_same_thread": False},
                # Each operation gets a fresh connection
                poolclass=NullPool,
                pool_pre_ping=True,
            )

            @event.listens_for(self._engine.sync_engine, "connect")
            def set_sqlite_pragmas(dbapi_conn, connection_record):
                # Take over transaction control from the driver
                dbapi_conn.isolation_level = None
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=30000")
                # Required for relationship cascade on delete
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute("PRAGMA temp_store=MEMORY")
                cursor.close()

            @event.listens_for(self._engine.sync_engine, "begin")
            def do_begin(conn):
                mode = conn.get_execution_options().get("sqlite_begin")
                conn.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")

            self._session_factory = async_sessionmaker(
                bind=self._engine,
                expire_on_commit=False,
                class_=AsyncSession
            )
            self._write_session_factory = async_sessionmaker(
                bind=self._engine.execution_options(sqlite_begin="IMMEDIATE"),
                expire_on_commit=False,
                class_=AsyncSession
            )
        return self._engine

    @property
    def engine(self):
        return self._get_engine()

    @property
    def SessionLocal(self):
        self._get_engine()
        return self._session_factory

    def _run_migrations(self, force: bool = False):
        """Run schema migrations (sync, outside the async engine)."""
        if self._migrated and not force:
            return

        if self.db_path.exists():
            from .migrations import run_migrations
            count, applied = run_migrations(str(self.db_path))
            if count > 0:
                logger.info(f"Applied {count} migration(s): {applied}")

        self._migrated = True

    async def init_db(self):
        """Initialize the database tables and run migrations."""
        if self._initialized:
            return

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self._run_migrations(force=True)

        self._initialized = True
        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def get_session(self, write: bool = False):
        """
        Provide a transactional scope around a series of operations.

        Pass ``write=True`` for any scope that inserts, updates or deletes;
        it takes the database write lock up front. Rolls back on any
        BaseException so a cancelled task never commits half of its writes.
        """
        self._get_engine()
        factory = self._write_session_factory if write else self._session_factory
        session = factory()
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def close(self):
        """Dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._write_session_factory = None
            self._initialized = False
