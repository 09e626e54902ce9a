import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.exceptions import TransientError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _enable_sqlite_write_locking(engine: AsyncEngine) -> None:
    """SQLite has no row locks; make every transaction take the write lock up front
    so check-and-reserve sequences are serialized like SELECT ... FOR UPDATE."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo, connect_args={"timeout": 30})
        _enable_sqlite_write_locking(engine)
        return engine
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


engine = build_engine(str(settings.DATABASE_URL), echo=settings.DEBUG)

# session factory
async_session = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:  # to be used as dependency
    async with async_session() as session:
        yield session


async def run_in_transaction(
    db: AsyncSession,
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    retries: int = None,
    **kwargs: Any,
) -> T:
    """Run ``operation(db, ...)`` inside one transaction.

    Domain errors and integrity violations roll back and propagate unchanged.
    Other driver-level failures (lock timeouts, serialization failures, dropped
    connections) are retried with the same inputs, then surfaced as TransientError.
    """
    retries = settings.TXN_RETRY_ATTEMPTS if retries is None else retries
    if db.in_transaction():
        # close the implicit read transaction left by earlier queries
        await db.commit()
    attempt = 0
    while True:
        try:
            async with db.begin():
                return await operation(db, *args, **kwargs)
        except IntegrityError:
            raise
        except DBAPIError as exc:
            if attempt >= retries:
                logger.error("transaction failed after %d attempts: %s", attempt + 1, exc.__class__.__name__)
                raise TransientError("Temporary database failure, please retry") from exc
            attempt += 1
            logger.warning("retrying %s after %s", getattr(operation, "__name__", "operation"), exc.__class__.__name__)
