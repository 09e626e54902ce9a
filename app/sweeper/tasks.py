import asyncio

from celery.utils.log import get_task_logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.celery_app import celery_app
from app.config import settings
from app.db.session import build_engine
from app.metrics import update_pending_holds
from app.services.expiry import sweep_expired

logger = get_task_logger(__name__)


async def run_sweep(database_url: str = None, limit: int = None) -> int:
    """One sweep on a private engine; each worker invocation gets its own event loop."""
    engine = build_engine(database_url or settings.DATABASE_URL)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as db:
            expired = await sweep_expired(db, limit=limit)
            await update_pending_holds(db)
            return expired
    finally:
        await engine.dispose()


@celery_app.task(bind=True, autoretry_for=(Exception,), retry_backoff=True, retry_backoff_max=60, max_retries=3)
def sweep_expired_bookings(self, limit: int = None) -> int:
    """Release seats held by pending bookings whose hold window has passed."""
    expired = asyncio.run(run_sweep(limit=limit))
    if expired:
        logger.info("expired %d bookings", expired)
    return expired
