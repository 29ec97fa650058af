"""Certificate issuance Celery tasks"""
from tasks.celery_app import celery_app
import asyncio
import logging

from app.config import settings

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async coroutine in sync context"""
    return asyncio.run(coro)


async def _issue(session_factory, transaction_id: int) -> dict:
    from app.services.workflow import build_workflow

    async with session_factory() as db:
        workflow = build_workflow(db, session_factory)
        transaction = await workflow.issue_pending_certificate(transaction_id)
        return {
            "success": transaction.certificate_ref is not None,
            "transaction_code": transaction.transaction_code,
            "certificate_ref": transaction.certificate_ref,
            "attempts": transaction.certificate_attempts,
        }


async def _issue_with_task_engine(transaction_id: int) -> dict:
    from app.database import task_session_factory

    async with task_session_factory() as session_factory:
        return await _issue(session_factory, transaction_id)


async def _pending_transaction_ids(session_factory, max_attempts: int) -> list:
    from sqlalchemy import select
    from app.models.transaction import LandTransaction, TransactionStatus

    async with session_factory() as db:
        result = await db.execute(
            select(LandTransaction.id)
            .where(
                LandTransaction.status == TransactionStatus.COMPLETED,
                LandTransaction.certificate_pending.is_(True),
                LandTransaction.certificate_attempts < max_attempts,
            )
            .order_by(LandTransaction.completed_date)
        )
        return list(result.scalars().all())


async def _sweep(session_factory, max_attempts: int) -> dict:
    from app.exceptions import CollaboratorUnavailable

    issued = 0
    failed = 0
    for transaction_id in await _pending_transaction_ids(session_factory, max_attempts):
        try:
            outcome = await _issue(session_factory, transaction_id)
        except CollaboratorUnavailable as e:
            logger.warning(f"Certificate for transaction {transaction_id} still pending: {e.message}")
            failed += 1
            continue
        if outcome["success"]:
            issued += 1

    return {"issued": issued, "still_pending": failed}


async def _sweep_with_task_engine(max_attempts: int) -> dict:
    from app.database import task_session_factory

    async with task_session_factory() as session_factory:
        return await _sweep(session_factory, max_attempts)


@celery_app.task(
    bind=True,
    max_retries=settings.CERTIFICATE_RETRY_MAX_ATTEMPTS,
    default_retry_delay=settings.CERTIFICATE_RETRY_DELAY_SECONDS
)
def issue_pending_certificate(self, transaction_id: int):
    """
    Issue the certificates of a completed transfer out of band.

    The ownership change has already committed; only the certificate
    documents and verification code are still missing.
    """
    from app.services.error_handling import diagnose_and_log_error, error_handler

    try:
        logger.info(f"Issuing pending certificate for transaction {transaction_id}")
        return run_async(_issue_with_task_engine(transaction_id))

    except Exception as e:
        diagnose_and_log_error(f"TXN#{transaction_id}", "issue_pending_certificate", e, self.request.retries)

        should_retry, delay = error_handler.should_retry(
            e, self.request.retries, max_retries=settings.CERTIFICATE_RETRY_MAX_ATTEMPTS
        )
        if should_retry:
            raise self.retry(exc=e, countdown=delay)

        return {
            "success": False,
            "transaction_id": transaction_id,
            "error": str(e),
        }


@celery_app.task
def sweep_pending_certificates():
    """Periodic pass over completed transfers still waiting for certificates"""
    result = run_async(_sweep_with_task_engine(settings.CERTIFICATE_RETRY_MAX_ATTEMPTS))
    if result["issued"] or result["still_pending"]:
        logger.info(f"Certificate sweep: {result['issued']} issued, {result['still_pending']} still pending")
    return result
