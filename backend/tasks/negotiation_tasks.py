"""Negotiation housekeeping Celery tasks"""
from tasks.celery_app import celery_app
import asyncio
import logging

logger = logging.getLogger(__name__)


async def _expire(session_factory) -> int:
    from app.services.negotiation import NegotiationEngine

    async with session_factory() as db:
        return await NegotiationEngine(db).expire_stale_offers()


async def _expire_with_task_engine() -> int:
    from app.database import task_session_factory

    async with task_session_factory() as session_factory:
        return await _expire(session_factory)


@celery_app.task
def expire_stale_offers():
    """Expire PENDING offers past the configured window"""
    expired = asyncio.run(_expire_with_task_engine())
    return {"expired": expired}
