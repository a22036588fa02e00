from typing import Dict, AsyncGenerator
from contextlib import asynccontextmanager
import urllib.parse
import asyncio
import logging
from pkg.db_util.types import PostgresConfig
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from pkg.log.logger import get_logger


# Module-level singletons keyed by database URL: one engine per database
_engine_cache: Dict[str, AsyncEngine] = {}
_sessionmaker_cache: Dict[str, async_sessionmaker] = {}
_connection_instances: Dict[str, "PostgresConnection"] = {}


class PostgresConnection:
    """Async SQLAlchemy engine + session factory for the chat session store."""

    @staticmethod
    def _generate_db_url_from_config(db_config: PostgresConfig) -> str:
        if not db_config.host:
            raise ValueError("Database host configuration is missing.")
        encoded_password = urllib.parse.quote_plus(db_config.password) if db_config.password else ""
        return (
            f"postgresql+asyncpg://{db_config.username}:{encoded_password}"
            f"@{db_config.host}:{db_config.port}/{db_config.database}"
        )

    def __new__(cls, db_config: PostgresConfig, logger: logging.Logger):
        """Return the existing instance for this database URL, if any."""
        db_url = cls._generate_db_url_from_config(db_config)
        if db_url in _connection_instances:
            return _connection_instances[db_url]

        instance = super().__new__(cls)
        instance._db_url = db_url
        _connection_instances[db_url] = instance
        return instance

    def __init__(self, db_config: PostgresConfig, logger: logging.Logger):
        # __init__ runs for reused instances too
        if hasattr(self, "_initialized"):
            return
        self.logger = logger
        self.db_config = db_config
        self._initialized = True

    async def get_engine(self, max_retries: int = 3, initial_delay: float = 2.0) -> AsyncEngine:
        """Get or create the engine, retrying with exponential backoff."""
        if self._db_url in _engine_cache:
            return _engine_cache[self._db_url]

        pool_opts = {
            "pool_size": self.db_config.pool_size,
            "max_overflow": self.db_config.max_overflow,
            "pool_timeout": self.db_config.pool_timeout,
            "pool_recycle": self.db_config.pool_recycle,
            "pool_pre_ping": True,
        }
        self.logger.info(f"Creating async engine with pool options: {pool_opts}")

        last_error = None
        for attempt in range(max_retries):
            try:
                engine = create_async_engine(
                    self._db_url,
                    echo=False,
                    connect_args={
                        "timeout": 15,
                        "command_timeout": 15,
                        "server_settings": {"application_name": "research-chat-dashboard"},
                    },
                    **pool_opts,
                )

                self.logger.info(f"Testing database connection (attempt {attempt + 1}/{max_retries})...")
                async with engine.connect() as conn:
                    await conn.exec_driver_sql("SELECT 1")

                _engine_cache[self._db_url] = engine
                _sessionmaker_cache[self._db_url] = async_sessionmaker(
                    bind=engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                    autoflush=False,
                )
                self.logger.info("Async engine and sessionmaker created and cached.")
                return engine

            except (SQLAlchemyError, OSError, ConnectionError) as e:
                last_error = e
                delay = initial_delay * (2 ** attempt)
                if attempt < max_retries - 1:
                    self.logger.warning(
                        f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
                else:
                    self.logger.error(f"Failed to create database engine after {max_retries} attempts: {e}", exc_info=True)

        raise ConnectionError(f"Could not create database engine after {max_retries} attempts: {last_error}") from last_error

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session; commit on success, roll back on error, always close."""
        await self.get_engine()
        sessionmaker = _sessionmaker_cache.get(self._db_url)
        if sessionmaker is None:
            raise ConnectionError("Database engine/sessionmaker not initialized.")

        session: AsyncSession = sessionmaker()
        try:
            yield session
            if session.in_transaction():
                await session.commit()
        except Exception as e:
            self.logger.error(f"Error in database session: {e}. Rolling back.", exc_info=True)
            if session.in_transaction():
                await session.rollback()
            raise
        finally:
            await session.close()


async def close_all_engines():
    """Close every cached engine. Used on application shutdown."""
    for db_url, engine in list(_engine_cache.items()):
        try:
            await engine.dispose()
        except SQLAlchemyError as e:
            get_logger(__name__).error(f"Error closing engine for {db_url[:50]}...: {e}")
        finally:
            _engine_cache.pop(db_url, None)
            _sessionmaker_cache.pop(db_url, None)
