"""Ownership transfer coordinator.

Runs after an admin approves a transaction and moves the parcel from seller to
buyer in a fixed order:

1. check the parcel is still the seller's and still held by this transaction
2. close the seller's tenure and open the buyer's
3. hand the parcel to the buyer
4. move the parcel between the two users' holdings
5. issue certificates (best effort)
6. mark the transaction and its chat COMPLETED

Every step looks at stored state first and only applies what has not landed,
so re-running ``transfer`` on an APPROVED transaction that was interrupted
finishes the job without duplicating history. Steps 2-4 are committed before
the certificate collaborator is called; a certificate failure leaves the
transfer completed with ``certificate_pending`` set and a retry queued.
"""
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import CollaboratorUnavailable, ConflictError, NotFoundError, TransferPreconditionFailed
from app.models.land import Land, TransferType
from app.models.transaction import LandTransaction, TimelineEvent, TimelineEventType, TransactionStatus
from app.models.user import User
from app.services.collaborators import CertificateService, CertificateIssue, call_with_timeout
from app.services.land_registry import LandRegistryStore
from app.services.negotiation import NegotiationEngine

logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")


def queue_certificate_retry(transaction_id: int) -> None:
    """Hand certificate issuance to the background worker"""
    from tasks.certificate_tasks import issue_pending_certificate

    issue_pending_certificate.apply_async(
        args=[transaction_id],
        countdown=settings.CERTIFICATE_RETRY_DELAY_SECONDS,
        queue="certificates",
    )


class OwnershipTransferCoordinator:
    """Re-entrant seller -> buyer transfer for an approved transaction"""

    def __init__(
        self,
        db: AsyncSession,
        registry: LandRegistryStore,
        negotiation: NegotiationEngine,
        certificates: CertificateService,
        retry_queue: Optional[Callable[[int], None]] = None,
        collaborator_timeout: Optional[float] = None,
    ):
        self.db = db
        self.registry = registry
        self.negotiation = negotiation
        self.certificates = certificates
        self.retry_queue = retry_queue or queue_certificate_retry
        self.collaborator_timeout = collaborator_timeout or settings.COLLABORATOR_TIMEOUT_SECONDS

    async def _load(self, transaction_id: int) -> LandTransaction:
        result = await self.db.execute(
            select(LandTransaction)
            .where(LandTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise NotFoundError(message="Transaction not found", details={"transaction_id": transaction_id})
        return transaction

    async def _get_user(self, user_id: int) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise NotFoundError(message="User not found", details={"user_id": user_id})
        return user

    def _precondition_failed(self, transaction_code: str, message: str, **details) -> TransferPreconditionFailed:
        logger.error(f"Transfer precondition failed for {transaction_code}: {message}")
        return TransferPreconditionFailed(
            message=message,
            details={"transaction_code": transaction_code, **details},
        )

    async def transfer(self, transaction_id: int, actor_id: Optional[int] = None) -> LandTransaction:
        transaction = await self._load(transaction_id)
        code = transaction.transaction_code

        if transaction.status == TransactionStatus.COMPLETED:
            return transaction
        if transaction.status != TransactionStatus.APPROVED:
            raise self._precondition_failed(
                code,
                f"Transaction is {transaction.status.value}; only APPROVED transactions can be transferred",
                status=transaction.status.value,
            )

        # Plain values: the registry rolls back on a lost insert, which expires loaded rows
        land_id, buyer_id, seller_id = transaction.land_id, transaction.buyer_id, transaction.seller_id
        land = await self.registry.get_land(land_id)
        now = datetime.utcnow()

        # Step 1
        already_assigned = land.current_owner_id == buyer_id and land.active_transaction_code is None
        if not already_assigned:
            if land.current_owner_id != seller_id:
                raise self._precondition_failed(
                    code,
                    "Land owner no longer matches the transaction seller",
                    land_id=land_id,
                    current_owner_id=land.current_owner_id,
                    seller_id=seller_id,
                )
            if land.active_transaction_code != code:
                raise self._precondition_failed(
                    code,
                    "Land is not held by this transaction",
                    land_id=land_id,
                    active_transaction_code=land.active_transaction_code,
                )

        # Step 2
        buyer_tenure = await self.registry.tenure_for_reference(land_id, code)
        if buyer_tenure is None:
            open_tenure = await self.registry.open_tenure(land_id)
            if open_tenure is not None:
                if open_tenure.owner_id != seller_id:
                    raise self._precondition_failed(
                        code,
                        "Open ownership record does not belong to the seller",
                        land_id=land_id,
                        tenure_owner_id=open_tenure.owner_id,
                    )
                await self.registry.close_open_tenure(land_id, seller_id, now)
            try:
                await self.registry.append_tenure(land_id, buyer_id, TransferType.SALE, code, now)
            except ConflictError as e:
                raise self._precondition_failed(code, e.message, land_id=land_id) from e

        # Step 3
        if not already_assigned:
            assigned = await self.registry.assign_owner(land_id, buyer_id, code)
            if not assigned:
                land = await self.registry.get_land(land_id)
                if land.current_owner_id != buyer_id:
                    raise self._precondition_failed(
                        code, "Land changed while ownership was being assigned", land_id=land_id
                    )

        # Step 4
        await self.registry.remove_holding(seller_id, land_id)
        await self.registry.add_holding(buyer_id, land_id)

        logger.info(f"Land {land_id} transferred from user {seller_id} to user {buyer_id} under {code}")

        # Step 5
        land = await self.registry.get_land(land_id)
        transaction = await self._load(transaction_id)
        transaction = await self._record_completion_details(transaction, land)
        transaction = await self._issue_certificates(transaction, land, actor_id)

        # Step 6
        transaction = await self._mark_completed(transaction, actor_id)
        if transaction.chat_id:
            await self.negotiation.complete(transaction.chat_id, code, actor_id)

        return await self._load(transaction_id)

    async def _record_completion_details(self, transaction: LandTransaction, land: Land) -> LandTransaction:
        if transaction.registration_number:
            return transaction

        agreed_price = Decimal(transaction.agreed_price)
        stamp_duty = (agreed_price * Decimal(str(settings.STAMP_DUTY_RATE))).quantize(MONEY)
        registration_fee = Decimal(str(settings.REGISTRATION_FEE)).quantize(MONEY)

        await self.db.execute(
            update(LandTransaction)
            .where(LandTransaction.id == transaction.id, LandTransaction.registration_number.is_(None))
            .values(
                registration_number=f"REG-{int(time.time() * 1000)}",
                registration_office=f"{land.district} Sub-Registrar Office",
                stamp_duty=stamp_duty,
                registration_fee=registration_fee,
                total_charges=stamp_duty + registration_fee,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return await self._load(transaction.id)

    async def _issue_certificates(self, transaction: LandTransaction, land: Land,
                                  actor_id: Optional[int]) -> LandTransaction:
        if transaction.certificate_ref:
            return transaction

        buyer = await self._get_user(transaction.buyer_id)
        try:
            issue = await call_with_timeout(
                self.certificates.issue(transaction, land, buyer),
                "certificate service",
                self.collaborator_timeout,
            )
        except CollaboratorUnavailable as e:
            transaction = await self._mark_certificate_pending(transaction, actor_id, e.message)
            try:
                self.retry_queue(transaction.id)
            except Exception as queue_error:
                logger.error(
                    f"Could not queue certificate retry for {transaction.transaction_code}: {queue_error}"
                )
            return transaction

        return await self._attach_certificates(transaction, issue, actor_id)

    async def _mark_certificate_pending(self, transaction: LandTransaction, actor_id: Optional[int],
                                        reason: str) -> LandTransaction:
        logger.warning(f"Certificate issuance deferred for {transaction.transaction_code}: {reason}")
        await self.db.execute(
            update(LandTransaction)
            .where(LandTransaction.id == transaction.id)
            .values(certificate_pending=True, certificate_attempts=LandTransaction.certificate_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if not transaction.certificate_pending:
            self.db.add(TimelineEvent(
                transaction_id=transaction.id,
                event=TimelineEventType.CERTIFICATE_PENDING,
                timestamp=datetime.utcnow(),
                performed_by=actor_id,
                description="Certificate generation deferred; it will be retried",
                event_metadata={"reason": reason},
            ))
        await self.db.commit()
        return await self._load(transaction.id)

    async def _attach_certificates(self, transaction: LandTransaction, issue: CertificateIssue,
                                   actor_id: Optional[int]) -> LandTransaction:
        result = await self.db.execute(
            update(LandTransaction)
            .where(LandTransaction.id == transaction.id, LandTransaction.certificate_ref.is_(None))
            .values(
                certificate_ref=issue.certificate_ref,
                ownership_certificate_ref=issue.ownership_certificate_ref,
                verification_code=issue.verification_code,
                certificate_pending=False,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.db.add(TimelineEvent(
                transaction_id=transaction.id,
                event=TimelineEventType.CERTIFICATE_ISSUED,
                timestamp=datetime.utcnow(),
                performed_by=actor_id,
                description="Transaction and ownership certificates issued",
                event_metadata={"verification_code": issue.verification_code},
            ))
        await self.db.commit()
        return await self._load(transaction.id)

    async def _mark_completed(self, transaction: LandTransaction, actor_id: Optional[int]) -> LandTransaction:
        transaction_id, code = transaction.id, transaction.transaction_code
        registration_number = transaction.registration_number
        now = datetime.utcnow()
        result = await self.db.execute(
            update(LandTransaction)
            .where(LandTransaction.id == transaction_id, LandTransaction.status == TransactionStatus.APPROVED)
            .values(status=TransactionStatus.COMPLETED, completed_date=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            transaction = await self._load(transaction_id)
            if transaction.status == TransactionStatus.COMPLETED:
                return transaction
            raise self._precondition_failed(
                code,
                f"Transaction moved to {transaction.status.value} during transfer",
                status=transaction.status.value,
            )

        self.db.add(TimelineEvent(
            transaction_id=transaction_id,
            event=TimelineEventType.COMPLETED,
            timestamp=now,
            performed_by=actor_id,
            description="Ownership transferred to the buyer",
            event_metadata={"registration_number": registration_number},
        ))
        await self.db.commit()

        logger.info(f"Transaction {code} completed")
        return await self._load(transaction_id)

    async def issue_pending_certificate(self, transaction_id: int, actor_id: Optional[int] = None) -> LandTransaction:
        """Retry certificate issuance for a completed transaction.

        Raises ``CollaboratorUnavailable`` when the collaborator is still down so
        the caller can schedule another attempt.
        """
        transaction = await self._load(transaction_id)
        if transaction.certificate_ref or not transaction.certificate_pending:
            return transaction

        land = await self.registry.get_land(transaction.land_id)
        buyer = await self._get_user(transaction.buyer_id)
        try:
            issue = await call_with_timeout(
                self.certificates.issue(transaction, land, buyer),
                "certificate service",
                self.collaborator_timeout,
            )
        except CollaboratorUnavailable:
            await self.db.execute(
                update(LandTransaction)
                .where(LandTransaction.id == transaction.id)
                .values(certificate_attempts=LandTransaction.certificate_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            raise

        logger.info(f"Pending certificate issued for {transaction.transaction_code}")
        return await self._attach_certificates(transaction, issue, actor_id)
