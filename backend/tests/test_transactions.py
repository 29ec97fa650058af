"""Tests for the transaction lifecycle: initiation, documents, review, cancellation"""
import re
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import update

from app.exceptions import (
    ConcurrentTransactionExists,
    IneligibleOwner,
    InvalidNegotiationState,
    InvalidTransactionState,
    UnauthorizedActor,
    ValidationError,
)
from app.models.chat import ChatStatus, OfferStatus
from app.models.land import Land, LandStatus
from app.models.transaction import (
    InitiationSource,
    TimelineEventType,
    TransactionDocumentType,
    TransactionStatus,
)
from app.services.transactions import ReviewVerdict, generate_transaction_code
from app.services.workflow import DocumentUpload


def sale_agreement(content: bytes = b"%PDF-1.4 sale agreement") -> DocumentUpload:
    return DocumentUpload(
        content=content,
        document_type=TransactionDocumentType.SALE_AGREEMENT,
        filename="sale_agreement.pdf",
        mime_type="application/pdf",
    )


class TestTransactionCode:

    def test_code_format(self):
        codes = {generate_transaction_code() for _ in range(50)}

        assert len(codes) == 50
        for code in codes:
            assert re.fullmatch(r"TXN[0-9A-F]{10}", code)


class TestInitiation:
    """Creating a transaction takes the parcel off the market"""

    @pytest.mark.asyncio
    async def test_initiate_from_agreed_chat(self, workflow, users, listed_land, agreed_chat, audit_sink):
        transaction = await workflow.initiate_transaction(users["buyer"].id, chat_id=agreed_chat.id)

        assert transaction.status == TransactionStatus.INITIATED
        assert transaction.agreed_price == Decimal("550000")
        assert transaction.escrow_amount == Decimal("55000.00")
        assert transaction.initiated_from == InitiationSource.CHAT
        assert transaction.seller_confirmed is True
        assert transaction.buyer_id == users["buyer"].id
        assert transaction.seller_id == users["seller"].id

        land = await workflow.get_land(listed_land.id)
        assert land.status == LandStatus.UNDER_TRANSACTION
        assert land.active_transaction_code == transaction.transaction_code

        chat, _, _ = await workflow.get_negotiation(agreed_chat.id, users["buyer"].id)
        assert chat.status == ChatStatus.TRANSACTION_INITIATED
        assert chat.transaction_id == transaction.id

        _, timeline, _ = await workflow.get_transaction(transaction.id, users["buyer"].id)
        assert [entry.event for entry in timeline] == [TimelineEventType.INITIATED]
        assert "TRANSACTION_INITIATE" in audit_sink.kinds()

    @pytest.mark.asyncio
    async def test_seller_may_initiate_agreed_deal(self, workflow, users, agreed_chat):
        transaction = await workflow.initiate_transaction(users["seller"].id, chat_id=agreed_chat.id)

        assert transaction.buyer_id == users["buyer"].id
        assert transaction.seller_id == users["seller"].id

    @pytest.mark.asyncio
    async def test_chat_must_be_agreed(self, workflow, users, listed_land):
        chat = await workflow.start_negotiation(listed_land.id, users["buyer"].id)

        with pytest.raises(InvalidNegotiationState):
            await workflow.initiate_transaction(users["buyer"].id, chat_id=chat.id)

        land = await workflow.get_land(listed_land.id)
        assert land.status == LandStatus.FOR_SALE
        assert land.active_transaction_code is None

    @pytest.mark.asyncio
    async def test_price_must_match_agreement(self, workflow, users, agreed_chat):
        with pytest.raises(ValidationError):
            await workflow.initiate_transaction(
                users["buyer"].id, chat_id=agreed_chat.id, agreed_price=Decimal("400000")
            )

    @pytest.mark.asyncio
    async def test_outsider_cannot_initiate_from_chat(self, workflow, users, agreed_chat):
        with pytest.raises(UnauthorizedActor):
            await workflow.initiate_transaction(users["other_buyer"].id, chat_id=agreed_chat.id)

    @pytest.mark.asyncio
    async def test_marketplace_purchase_uses_asking_price(self, workflow, users, listed_land):
        transaction = await workflow.initiate_transaction(users["buyer"].id, land_id=listed_land.id)

        assert transaction.agreed_price == Decimal("500000")
        assert transaction.initiated_from == InitiationSource.MARKETPLACE
        assert transaction.seller_confirmed is False
        assert transaction.chat_id is None

    @pytest.mark.asyncio
    async def test_second_transaction_on_same_land_refused(self, workflow, users, listed_land, chat_transaction):
        with pytest.raises(ConcurrentTransactionExists):
            await workflow.initiate_transaction(users["other_buyer"].id, land_id=listed_land.id)

        land = await workflow.get_land(listed_land.id)
        assert land.active_transaction_code == chat_transaction.transaction_code

    @pytest.mark.asyncio
    async def test_unverified_buyer_refused(self, workflow, users, listed_land):
        with pytest.raises(IneligibleOwner):
            await workflow.initiate_transaction(users["unverified"].id, land_id=listed_land.id)

    @pytest.mark.asyncio
    async def test_owner_cannot_buy_own_land(self, workflow, users, listed_land):
        with pytest.raises(ValidationError):
            await workflow.initiate_transaction(users["seller"].id, land_id=listed_land.id)


class TestDocuments:

    @pytest.mark.asyncio
    async def test_parties_submit_documents(self, workflow, users, chat_transaction, document_store):
        transaction = await workflow.submit_documents(
            chat_transaction.id, users["buyer"].id, [sale_agreement()]
        )
        assert transaction.status == TransactionStatus.DOCUMENTS_SUBMITTED

        # Further documents while still waiting for review
        await workflow.submit_documents(
            chat_transaction.id,
            users["seller"].id,
            [DocumentUpload(content=b"noc", document_type=TransactionDocumentType.NOC, filename="noc.pdf")],
        )

        _, timeline, documents = await workflow.get_transaction(chat_transaction.id, users["seller"].id)
        assert [d.document_type for d in documents] == [
            TransactionDocumentType.SALE_AGREEMENT,
            TransactionDocumentType.NOC,
        ]
        assert documents[0].uploaded_by == users["buyer"].id
        assert documents[0].file_size == len(b"%PDF-1.4 sale agreement")
        assert documents[0].content_ref in document_store.blobs
        assert [e.event for e in timeline].count(TimelineEventType.DOCUMENTS_UPLOADED) == 2

    @pytest.mark.asyncio
    async def test_outsider_cannot_submit(self, workflow, users, chat_transaction):
        with pytest.raises(UnauthorizedActor):
            await workflow.submit_documents(chat_transaction.id, users["other_buyer"].id, [sale_agreement()])

    @pytest.mark.asyncio
    async def test_empty_submission_refused(self, workflow, users, chat_transaction):
        with pytest.raises(ValidationError):
            await workflow.submit_documents(chat_transaction.id, users["buyer"].id, [])


class TestReview:
    """Admin review outcomes"""

    @pytest.mark.asyncio
    async def test_reject_releases_land_and_reopens_chat(self, workflow, users, listed_land,
                                                         agreed_chat, chat_transaction):
        admin = users["admin"].id
        await workflow.submit_documents(chat_transaction.id, users["buyer"].id, [sale_agreement()])

        transaction = await workflow.review(
            chat_transaction.id, admin, ReviewVerdict.REJECT, rejection_reason="Documents incomplete"
        )

        assert transaction.status == TransactionStatus.REJECTED
        assert transaction.rejection_reason == "Documents incomplete"
        assert transaction.reviewed_by == admin

        _, timeline, _ = await workflow.get_transaction(transaction.id, admin)
        assert [e.event for e in timeline][-2:] == [TimelineEventType.REVIEW_STARTED, TimelineEventType.REJECTED]
        assert timeline[-1].description == "Transaction rejected: Documents incomplete"
        assert timeline[-1].event_metadata["reason"] == "Documents incomplete"

        land = await workflow.get_land(listed_land.id)
        assert land.status == LandStatus.FOR_SALE
        assert land.for_sale is True
        assert land.active_transaction_code is None
        assert land.current_owner_id == users["seller"].id

        chat, _, history = await workflow.get_negotiation(agreed_chat.id, users["buyer"].id)
        assert chat.status == ChatStatus.ACTIVE
        assert chat.offer_status is None
        assert chat.agreed_price is None
        assert chat.transaction_id is None
        assert history[-1].status == OfferStatus.ACCEPTED

        # The parties can bargain again, starting with the buyer
        with pytest.raises(InvalidNegotiationState):
            await workflow.make_offer(chat.id, users["seller"].id, Decimal("600000"))
        chat = await workflow.make_offer(chat.id, users["buyer"].id, Decimal("530000"))
        assert chat.offer_status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, workflow, users, chat_transaction):
        await workflow.submit_documents(chat_transaction.id, users["buyer"].id, [sale_agreement()])

        with pytest.raises(ValidationError):
            await workflow.review(chat_transaction.id, users["admin"].id, ReviewVerdict.REJECT)

        transaction, _, _ = await workflow.get_transaction(chat_transaction.id, users["admin"].id)
        assert transaction.status == TransactionStatus.DOCUMENTS_SUBMITTED

    @pytest.mark.asyncio
    async def test_review_needs_documents(self, workflow, users, chat_transaction):
        with pytest.raises(InvalidTransactionState):
            await workflow.review(chat_transaction.id, users["admin"].id, ReviewVerdict.APPROVE)

    @pytest.mark.asyncio
    async def test_only_admin_reviews(self, workflow, users, chat_transaction):
        await workflow.submit_documents(chat_transaction.id, users["buyer"].id, [sale_agreement()])

        with pytest.raises(UnauthorizedActor):
            await workflow.start_review(chat_transaction.id, users["seller"].id)
        with pytest.raises(UnauthorizedActor):
            await workflow.review(chat_transaction.id, users["buyer"].id, ReviewVerdict.APPROVE)

    @pytest.mark.asyncio
    async def test_marketplace_sale_needs_seller_confirmation(self, workflow, users, listed_land):
        transaction = await workflow.initiate_transaction(users["buyer"].id, land_id=listed_land.id)
        await workflow.submit_documents(transaction.id, users["buyer"].id, [sale_agreement()])

        with pytest.raises(InvalidTransactionState):
            await workflow.review(transaction.id, users["admin"].id, ReviewVerdict.APPROVE)

        with pytest.raises(UnauthorizedActor):
            await workflow.confirm_sale(transaction.id, users["buyer"].id)

        confirmed = await workflow.confirm_sale(transaction.id, users["seller"].id)
        assert confirmed.seller_confirmed is True

        completed = await workflow.review(transaction.id, users["admin"].id, ReviewVerdict.APPROVE)
        assert completed.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pending_review_queue(self, workflow, users, chat_transaction):
        assert await workflow.pending_review(users["admin"].id) == []

        await workflow.submit_documents(chat_transaction.id, users["buyer"].id, [sale_agreement()])

        pending = await workflow.pending_review(users["admin"].id)
        assert [t.id for t in pending] == [chat_transaction.id]


class TestCancellation:

    @pytest.mark.asyncio
    async def test_buyer_cancels_before_review(self, workflow, users, listed_land, agreed_chat, chat_transaction):
        transaction = await workflow.cancel_transaction(chat_transaction.id, users["buyer"].id, "Loan fell through")

        assert transaction.status == TransactionStatus.CANCELLED

        land = await workflow.get_land(listed_land.id)
        assert land.status == LandStatus.FOR_SALE
        assert land.active_transaction_code is None

        chat, _, _ = await workflow.get_negotiation(agreed_chat.id, users["buyer"].id)
        assert chat.status == ChatStatus.CANCELLED

        # The parcel is free for someone else
        other = await workflow.initiate_transaction(users["other_buyer"].id, land_id=listed_land.id)
        assert other.status == TransactionStatus.INITIATED

    @pytest.mark.asyncio
    async def test_cannot_cancel_under_review(self, workflow, users, chat_transaction):
        await workflow.submit_documents(chat_transaction.id, users["buyer"].id, [sale_agreement()])
        await workflow.start_review(chat_transaction.id, users["admin"].id)

        with pytest.raises(InvalidTransactionState):
            await workflow.cancel_transaction(chat_transaction.id, users["seller"].id)

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, workflow, users, chat_transaction):
        with pytest.raises(UnauthorizedActor):
            await workflow.cancel_transaction(chat_transaction.id, users["other_buyer"].id)

    @pytest.mark.asyncio
    async def test_my_transactions(self, workflow, users, chat_transaction):
        mine = await workflow.my_transactions(users["seller"].id)
        assert [t.id for t in mine] == [chat_transaction.id]

        assert await workflow.my_transactions(users["buyer"].id, TransactionStatus.COMPLETED) == []
        assert await workflow.my_transactions(users["other_buyer"].id) == []


class TestReconcile:

    @pytest.mark.asyncio
    async def test_stale_reservation_released(self, db, workflow, users, listed_land):
        await db.execute(
            update(Land)
            .where(Land.id == listed_land.id)
            .values(status=LandStatus.UNDER_TRANSACTION, active_transaction_code="TXN00DEADBEEF")
        )
        await db.commit()

        with pytest.raises(UnauthorizedActor):
            await workflow.reconcile_parcel(listed_land.id, users["seller"].id)

        land = await workflow.reconcile_parcel(listed_land.id, users["admin"].id)
        assert land.status == LandStatus.FOR_SALE
        assert land.active_transaction_code is None

    @pytest.mark.asyncio
    async def test_live_reservation_kept(self, workflow, users, listed_land, chat_transaction):
        land = await workflow.reconcile_parcel(listed_land.id, users["admin"].id)

        assert land.status == LandStatus.UNDER_TRANSACTION
        assert land.active_transaction_code == chat_transaction.transaction_code

    @pytest.mark.asyncio
    async def test_fresh_reservation_without_transaction_kept(self, workflow, users, listed_land):
        # Reserved, but the transaction row is not written yet
        assert await workflow.registry.reserve_for_transaction(listed_land.id, "TXN00CAFE0001")

        land = await workflow.reconcile_parcel(listed_land.id, users["admin"].id)

        assert land.status == LandStatus.UNDER_TRANSACTION
        assert land.active_transaction_code == "TXN00CAFE0001"

    @pytest.mark.asyncio
    async def test_old_reservation_without_transaction_released(self, db, workflow, users, listed_land):
        assert await workflow.registry.reserve_for_transaction(listed_land.id, "TXN00CAFE0002")
        await db.execute(
            update(Land)
            .where(Land.id == listed_land.id)
            .values(reserved_at=datetime.utcnow() - timedelta(minutes=10))
        )
        await db.commit()

        land = await workflow.reconcile_parcel(listed_land.id, users["admin"].id)

        assert land.status == LandStatus.FOR_SALE
        assert land.active_transaction_code is None
        assert land.reserved_at is None


class TestStatistics:

    @pytest.mark.asyncio
    async def test_counts_and_completed_value(self, workflow, users, chat_transaction):
        admin = users["admin"].id
        stats, monthly = await workflow.transaction_statistics(admin)
        assert stats["total_transactions"] == 1
        assert stats["completed"] == 0
        assert stats["completed_value"] == Decimal("0.00")
        assert stats["average_completed_price"] is None

        await workflow.submit_documents(chat_transaction.id, users["buyer"].id, [sale_agreement()])
        stats, _ = await workflow.transaction_statistics(admin)
        assert stats["pending_review"] == 1
        assert stats["status_breakdown"]["DOCUMENTS_SUBMITTED"] == 1

        await workflow.review(chat_transaction.id, admin, ReviewVerdict.APPROVE)
        stats, monthly = await workflow.transaction_statistics(admin)

        assert stats["pending_review"] == 0
        assert stats["completed"] == 1
        assert stats["completed_value"] == Decimal("550000.00")
        assert stats["average_completed_price"] == Decimal("550000.00")
        assert set(stats["status_breakdown"]) == {s.value for s in TransactionStatus}

        assert [m["month"] for m in monthly] == list(range(1, 13))
        this_month = monthly[datetime.utcnow().month - 1]
        assert this_month["initiated"] == 1
        assert this_month["completed"] == 1
        assert this_month["completed_value"] == Decimal("550000.00")

    @pytest.mark.asyncio
    async def test_other_year_is_empty(self, workflow, users, chat_transaction):
        _, monthly = await workflow.transaction_statistics(users["admin"].id, 2001)

        assert sum(m["initiated"] for m in monthly) == 0
        assert sum(m["completed"] for m in monthly) == 0

    @pytest.mark.asyncio
    async def test_admin_only(self, workflow, users):
        with pytest.raises(UnauthorizedActor):
            await workflow.transaction_statistics(users["seller"].id)
