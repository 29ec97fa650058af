"""Tests for the negotiation engine through the workflow facade"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update

from app.config import settings
from app.exceptions import (
    ConflictError,
    InvalidNegotiationState,
    NoActiveOffer,
    SelfAcceptanceDenied,
    UnauthorizedActor,
    ValidationError,
)
from app.models.chat import Chat, ChatStatus, MessageType, OfferStatus
from app.services.negotiation import NegotiationEngine


async def backdate_offer(db, chat_id: int, hours: int) -> None:
    await db.execute(
        update(Chat)
        .where(Chat.id == chat_id)
        .values(offer_made_at=datetime.utcnow() - timedelta(hours=hours))
    )
    await db.commit()


class TestStartNegotiation:

    @pytest.mark.asyncio
    async def test_start_opens_chat_with_greeting(self, workflow, users, listed_land):
        chat = await workflow.start_negotiation(listed_land.id, users["buyer"].id)

        assert chat.status == ChatStatus.ACTIVE
        assert chat.seller_id == users["seller"].id
        assert chat.offer_status is None

        _, messages, _ = await workflow.get_negotiation(chat.id, users["buyer"].id)
        assert len(messages) == 1
        assert messages[0].message == (
            f"Hi! I'm interested in your land (Asset ID: {listed_land.asset_id}). Can we discuss?"
        )

    @pytest.mark.asyncio
    async def test_start_twice_returns_same_chat(self, workflow, users, listed_land):
        first = await workflow.start_negotiation(listed_land.id, users["buyer"].id)
        second = await workflow.start_negotiation(listed_land.id, users["buyer"].id)

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_owner_cannot_negotiate_with_self(self, workflow, users, listed_land):
        with pytest.raises(ValidationError):
            await workflow.start_negotiation(listed_land.id, users["seller"].id)

    @pytest.mark.asyncio
    async def test_unlisted_land_cannot_be_negotiated(self, workflow, users, listed_land):
        await workflow.unlist(listed_land.id, users["seller"].id)

        with pytest.raises(ConflictError):
            await workflow.start_negotiation(listed_land.id, users["buyer"].id)

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_chat(self, workflow, users, listed_land):
        chat = await workflow.start_negotiation(listed_land.id, users["buyer"].id)

        with pytest.raises(UnauthorizedActor):
            await workflow.get_negotiation(chat.id, users["other_buyer"].id)

        # Admins may inspect any negotiation
        inspected, _, _ = await workflow.get_negotiation(chat.id, users["admin"].id)
        assert inspected.id == chat.id


class TestOfferProtocol:
    """Offer, counter-offer, accept and reject"""

    @pytest.mark.asyncio
    async def test_offer_counter_accept(self, workflow, users, listed_land):
        buyer, seller = users["buyer"].id, users["seller"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)

        chat = await workflow.make_offer(chat.id, buyer, Decimal("500000"))
        assert chat.offer_status == OfferStatus.PENDING
        assert chat.offer_by_id == buyer
        assert chat.offer_version == 1

        chat = await workflow.counter_offer(chat.id, seller, Decimal("550000"))
        assert chat.offer_amount == Decimal("550000")
        assert chat.offer_by_id == seller
        assert chat.offer_version == 2

        chat = await workflow.accept_offer(chat.id, buyer)
        assert chat.status == ChatStatus.DEAL_AGREED
        assert chat.agreed_price == Decimal("550000")
        assert chat.agreed_date is not None
        assert chat.offer_status == OfferStatus.ACCEPTED

        _, messages, history = await workflow.get_negotiation(chat.id, seller)
        assert [m.message_type for m in messages] == [
            MessageType.TEXT,
            MessageType.OFFER,
            MessageType.COUNTER_OFFER,
            MessageType.ACCEPTANCE,
        ]
        assert len(history) == 1
        assert history[0].amount == Decimal("500000")
        assert history[0].offered_by_id == buyer
        assert history[0].status == OfferStatus.COUNTER_OFFERED

    @pytest.mark.asyncio
    async def test_seller_cannot_open_bidding(self, workflow, users, listed_land):
        chat = await workflow.start_negotiation(listed_land.id, users["buyer"].id)

        with pytest.raises(InvalidNegotiationState):
            await workflow.make_offer(chat.id, users["seller"].id, Decimal("600000"))

    @pytest.mark.asyncio
    async def test_cannot_accept_own_offer(self, workflow, users, listed_land):
        buyer = users["buyer"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("500000"))

        with pytest.raises(SelfAcceptanceDenied):
            await workflow.accept_offer(chat.id, buyer)

        chat, _, _ = await workflow.get_negotiation(chat.id, buyer)
        assert chat.status == ChatStatus.ACTIVE
        assert chat.offer_status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_offer_refused_while_pending(self, workflow, users, listed_land):
        buyer, seller = users["buyer"].id, users["seller"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("500000"))

        with pytest.raises(InvalidNegotiationState):
            await workflow.make_offer(chat.id, seller, Decimal("650000"))

    @pytest.mark.asyncio
    async def test_reject_then_fresh_offer(self, workflow, users, listed_land):
        buyer, seller = users["buyer"].id, users["seller"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("400000"))

        chat = await workflow.reject_offer(chat.id, seller, "Too low")
        assert chat.status == ChatStatus.ACTIVE
        assert chat.offer_status == OfferStatus.REJECTED

        # Either side may bid again once nothing is pending
        chat = await workflow.make_offer(chat.id, seller, Decimal("520000"))
        assert chat.offer_status == OfferStatus.PENDING
        assert chat.offer_by_id == seller

        _, messages, history = await workflow.get_negotiation(chat.id, buyer)
        assert history[-1].status == OfferStatus.REJECTED
        assert history[-1].amount == Decimal("400000")
        assert any("Reason: Too low" in m.message for m in messages)

    @pytest.mark.asyncio
    async def test_outsider_cannot_make_offers(self, workflow, users, listed_land):
        chat = await workflow.start_negotiation(listed_land.id, users["buyer"].id)

        with pytest.raises(UnauthorizedActor):
            await workflow.make_offer(chat.id, users["other_buyer"].id, Decimal("700000"))

    @pytest.mark.asyncio
    async def test_offers_closed_after_agreement(self, workflow, users, listed_land):
        buyer, seller = users["buyer"].id, users["seller"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("500000"))
        await workflow.accept_offer(chat.id, seller)

        with pytest.raises(InvalidNegotiationState):
            await workflow.make_offer(chat.id, buyer, Decimal("450000"))


class TestOfferExpiry:

    @pytest.mark.asyncio
    async def test_stale_offer_cannot_be_accepted(self, db, workflow, users, listed_land):
        buyer, seller = users["buyer"].id, users["seller"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("500000"))
        await backdate_offer(db, chat.id, settings.OFFER_EXPIRY_HOURS + 1)

        with pytest.raises(NoActiveOffer):
            await workflow.accept_offer(chat.id, seller)

    @pytest.mark.asyncio
    async def test_sweep_expires_stale_offers(self, db, workflow, users, listed_land):
        buyer = users["buyer"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("500000"))
        await backdate_offer(db, chat.id, settings.OFFER_EXPIRY_HOURS + 1)

        assert await workflow.expire_stale_offers() == 1
        assert await workflow.expire_stale_offers() == 0

        chat, messages, _ = await workflow.get_negotiation(chat.id, buyer)
        assert chat.offer_status == OfferStatus.EXPIRED
        assert messages[-1].message_type == MessageType.SYSTEM
        assert messages[-1].sender_id is None

        chat = await workflow.make_offer(chat.id, buyer, Decimal("510000"))
        assert chat.offer_status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_sweep_leaves_fresh_offers(self, workflow, users, listed_land):
        buyer = users["buyer"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("500000"))

        assert await workflow.expire_stale_offers() == 0

    @pytest.mark.asyncio
    async def test_sweep_skips_offer_changed_underneath(self, db, session_factory, workflow, users, listed_land,
                                                        monkeypatch):
        first = await workflow.start_negotiation(listed_land.id, users["buyer"].id)
        second = await workflow.start_negotiation(listed_land.id, users["other_buyer"].id)
        for chat in (first, second):
            await workflow.make_offer(chat.id, chat.buyer_id, Decimal("500000"))
            await backdate_offer(db, chat.id, settings.OFFER_EXPIRY_HOURS + 1)

        original_apply = NegotiationEngine._apply
        bumped = []

        async def apply_after_a_rival_write(self, chat, change, sender_id, extra_values=None):
            if not bumped:
                # Another request moves the offer between the sweep's read and its write
                bumped.append(chat.id)
                async with session_factory() as rival:
                    await rival.execute(
                        update(Chat)
                        .where(Chat.id == chat.id)
                        .values(offer_version=Chat.offer_version + 1, offer_made_at=datetime.utcnow())
                    )
                    await rival.commit()
            return await original_apply(self, chat, change, sender_id, extra_values)

        monkeypatch.setattr(NegotiationEngine, "_apply", apply_after_a_rival_write)

        assert await workflow.expire_stale_offers() == 1

        async with session_factory() as session:
            rows = (await session.execute(select(Chat).where(Chat.id.in_([first.id, second.id])))).scalars().all()
        statuses = {row.id: row.offer_status for row in rows}

        assert statuses[bumped[0]] == OfferStatus.PENDING
        (untouched,) = [chat_id for chat_id in statuses if chat_id != bumped[0]]
        assert statuses[untouched] == OfferStatus.EXPIRED


class TestMessagesAndWithdrawal:

    @pytest.mark.asyncio
    async def test_mark_read_counts_counterparty_messages(self, workflow, users, listed_land):
        buyer, seller = users["buyer"].id, users["seller"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.send_message(chat.id, buyer, "Is the borewell working?")
        await workflow.send_message(chat.id, seller, "Yes, since 2019.")

        assert await workflow.mark_read(chat.id, seller) == 2
        assert await workflow.mark_read(chat.id, seller) == 0
        assert await workflow.mark_read(chat.id, buyer) == 1

    @pytest.mark.asyncio
    async def test_empty_message_refused(self, workflow, users, listed_land):
        chat = await workflow.start_negotiation(listed_land.id, users["buyer"].id)

        with pytest.raises(ValidationError):
            await workflow.send_message(chat.id, users["buyer"].id, "   ")

    @pytest.mark.asyncio
    async def test_blocked_chat_is_silenced(self, workflow, users, listed_land):
        buyer, seller = users["buyer"].id, users["seller"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)

        chat = await workflow.block_negotiation(chat.id, seller, "Spam")
        assert chat.status == ChatStatus.BLOCKED

        with pytest.raises(InvalidNegotiationState):
            await workflow.send_message(chat.id, buyer, "Hello?")
        with pytest.raises(InvalidNegotiationState):
            await workflow.make_offer(chat.id, buyer, Decimal("500000"))

    @pytest.mark.asyncio
    async def test_cancelled_chat_allows_a_new_one(self, workflow, users, listed_land):
        buyer = users["buyer"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.cancel_negotiation(chat.id, buyer, "Changed my mind")

        fresh = await workflow.start_negotiation(listed_land.id, buyer)
        assert fresh.id != chat.id
        assert fresh.status == ChatStatus.ACTIVE


class TestStatistics:

    @pytest.mark.asyncio
    async def test_counts_by_status(self, workflow, users, listed_land, agreed_chat):
        chat = await workflow.start_negotiation(listed_land.id, users["other_buyer"].id)
        await workflow.cancel_negotiation(chat.id, users["other_buyer"].id)
        await workflow.start_negotiation(listed_land.id, users["other_buyer"].id)

        stats = await workflow.negotiation_statistics(users["admin"].id)

        assert stats["total_chats"] == 3
        assert stats["active_chats"] == 1
        assert stats["deals_agreed"] == 1
        assert stats["status_breakdown"]["CANCELLED"] == 1
        assert stats["status_breakdown"]["BLOCKED"] == 0

    @pytest.mark.asyncio
    async def test_admin_only(self, workflow, users):
        with pytest.raises(UnauthorizedActor):
            await workflow.negotiation_statistics(users["buyer"].id)
