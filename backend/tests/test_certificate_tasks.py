"""Tests for the background certificate and offer-expiry jobs"""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update

from app.config import settings
from app.models.chat import Chat, OfferStatus
from app.models.transaction import LandTransaction
from app.services.collaborators import ReportLabCertificateService
from app.services.transactions import ReviewVerdict
from app.services.workflow import DocumentUpload
from tasks import certificate_tasks, negotiation_tasks


@pytest.fixture(autouse=True)
def storage_in_tmp(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "STORAGE_PATH", str(tmp_path / "storage"))


@pytest_asyncio.fixture
async def pending_certificate(workflow, users, chat_transaction, certificates):
    """A completed transfer whose certificate failed once"""
    certificates.fail = True
    await workflow.submit_documents(
        chat_transaction.id,
        users["buyer"].id,
        [DocumentUpload(content=b"%PDF-1.4 deed", filename="deed.pdf", mime_type="application/pdf")],
    )
    await workflow.start_review(chat_transaction.id, users["admin"].id)
    transaction = await workflow.review(chat_transaction.id, users["admin"].id, ReviewVerdict.APPROVE)
    assert transaction.certificate_pending is True
    return transaction


async def load(session_factory, transaction_id):
    async with session_factory() as session:
        result = await session.execute(select(LandTransaction).where(LandTransaction.id == transaction_id))
        return result.scalar_one()


class TestIssuePendingCertificate:

    @pytest.mark.asyncio
    async def test_issue_renders_real_certificates(self, session_factory, pending_certificate):
        outcome = await certificate_tasks._issue(session_factory, pending_certificate.id)

        assert outcome["success"] is True
        assert outcome["transaction_code"] == pending_certificate.transaction_code
        assert outcome["certificate_ref"].startswith("sha256:")

        stored = await load(session_factory, pending_certificate.id)
        assert stored.certificate_pending is False
        assert len(stored.verification_code) == 12

    @pytest.mark.asyncio
    async def test_issue_is_idempotent(self, session_factory, pending_certificate):
        first = await certificate_tasks._issue(session_factory, pending_certificate.id)
        second = await certificate_tasks._issue(session_factory, pending_certificate.id)

        assert second["certificate_ref"] == first["certificate_ref"]


class TestSweepPendingCertificates:

    @pytest.mark.asyncio
    async def test_sweep_issues_pending(self, session_factory, pending_certificate):
        assert await certificate_tasks._sweep(session_factory, max_attempts=5) == {
            "issued": 1,
            "still_pending": 0,
        }
        assert await certificate_tasks._sweep(session_factory, max_attempts=5) == {
            "issued": 0,
            "still_pending": 0,
        }

    @pytest.mark.asyncio
    async def test_sweep_counts_failures(self, session_factory, pending_certificate, monkeypatch):
        async def offline(self, transaction, land, new_owner):
            raise ConnectionError("renderer unavailable")

        monkeypatch.setattr(ReportLabCertificateService, "issue", offline)

        result = await certificate_tasks._sweep(session_factory, max_attempts=5)

        assert result == {"issued": 0, "still_pending": 1}
        stored = await load(session_factory, pending_certificate.id)
        assert stored.certificate_attempts == 2
        assert stored.certificate_pending is True

    @pytest.mark.asyncio
    async def test_sweep_skips_exhausted(self, session_factory, pending_certificate):
        result = await certificate_tasks._sweep(session_factory, max_attempts=1)

        assert result == {"issued": 0, "still_pending": 0}


class TestExpireStaleOffers:

    @pytest.mark.asyncio
    async def test_expire_task(self, session_factory, workflow, users, listed_land):
        buyer = users["buyer"].id
        chat = await workflow.start_negotiation(listed_land.id, buyer)
        await workflow.make_offer(chat.id, buyer, Decimal("500000"))

        assert await negotiation_tasks._expire(session_factory) == 0

        async with session_factory() as session:
            await session.execute(
                update(Chat)
                .where(Chat.id == chat.id)
                .values(offer_made_at=datetime.utcnow() - timedelta(hours=settings.OFFER_EXPIRY_HOURS + 1))
            )
            await session.commit()

        assert await negotiation_tasks._expire(session_factory) == 1

        async with session_factory() as session:
            stored = (await session.execute(select(Chat).where(Chat.id == chat.id))).scalar_one()
        assert stored.offer_status == OfferStatus.EXPIRED
