"""Shared fixtures: a throwaway SQLite registry and in-memory collaborators"""
import hashlib
import os
import sys
from datetime import datetime
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set up test environment BEFORE importing anything that uses settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_land_registry.db")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "True")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.database import Base
import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.exceptions import CollaboratorUnavailable, NotFoundError
from app.models.land import Land, LandStatus, LandType, OwnershipRecord, TransferType
from app.models.user import LandHolding, User, UserRole, VerificationStatus
from app.services.collaborators import (
    AuditSink,
    CertificateIssue,
    CertificateService,
    DatabaseIdentityService,
    DocumentStore,
)
from app.services.workflow import WorkflowFacade


class RecordingAuditSink(AuditSink):
    """Keeps audit events in a list"""

    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    async def record(self, event_kind, actor_id, target_kind, target_id, details=None):
        if self.fail:
            raise RuntimeError("audit store offline")
        self.events.append((event_kind, actor_id, target_kind, target_id, details or {}))

    def kinds(self):
        return [event[0] for event in self.events]


class InMemoryDocumentStore(DocumentStore):

    def __init__(self):
        self.blobs = {}

    async def put(self, content: bytes) -> str:
        ref = f"sha256:{hashlib.sha256(content).hexdigest()}"
        self.blobs[ref] = content
        return ref

    async def get(self, content_ref: str) -> bytes:
        if content_ref not in self.blobs:
            raise NotFoundError(message=f"Document not found: {content_ref}")
        return self.blobs[content_ref]


class FakeCertificateService(CertificateService):
    """Issues deterministic references; can be switched into a failing mode"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.issued = []

    async def issue(self, transaction, land, new_owner) -> CertificateIssue:
        if self.fail:
            raise CollaboratorUnavailable(message="certificate service offline")
        self.issued.append(transaction.transaction_code)
        return CertificateIssue(
            certificate_ref=f"sha256:txn-{transaction.transaction_code}",
            ownership_certificate_ref=f"sha256:own-{transaction.transaction_code}",
            verification_code=f"V{transaction.transaction_code[-6:]}",
        )


class RecordingRetryQueue:

    def __init__(self):
        self.queued = []

    def __call__(self, transaction_id: int) -> None:
        self.queued.append(transaction_id)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def add_all(session_factory, *objects):
    async with session_factory() as session:
        session.add_all(objects)
        await session.commit()
        for obj in objects:
            await session.refresh(obj)
    return objects


@pytest_asyncio.fixture
async def users(session_factory):
    admin, seller, buyer, other_buyer, unverified = await add_all(
        session_factory,
        User(email="admin@example.com", full_name="Registry Admin", role=UserRole.ADMIN,
             verification_status=VerificationStatus.VERIFIED),
        User(email="seller@example.com", full_name="Sunita Seller",
             verification_status=VerificationStatus.VERIFIED),
        User(email="buyer@example.com", full_name="Bharat Buyer",
             verification_status=VerificationStatus.VERIFIED),
        User(email="other@example.com", full_name="Other Buyer",
             verification_status=VerificationStatus.VERIFIED),
        User(email="pending@example.com", full_name="Pending Person",
             verification_status=VerificationStatus.PENDING),
    )
    return {
        "admin": admin,
        "seller": seller,
        "buyer": buyer,
        "other_buyer": other_buyer,
        "unverified": unverified,
    }


@pytest_asyncio.fixture
async def listed_land(session_factory, users):
    """One acre owned by the seller, listed at 500000, with its INITIAL tenure"""
    (land,) = await add_all(
        session_factory,
        Land(
            asset_id="KAMYS123456001",
            survey_number="45/2",
            village="Hosahalli",
            taluka="Hunsur",
            district="Mysuru",
            state="Karnataka",
            pincode="571105",
            area_acres=1.0,
            land_type=LandType.AGRICULTURAL,
            current_owner_id=users["seller"].id,
            status=LandStatus.FOR_SALE,
            for_sale=True,
            asking_price=Decimal("500000.00"),
            listed_date=datetime.utcnow(),
            added_by=users["admin"].id,
        ),
    )
    await add_all(
        session_factory,
        OwnershipRecord(
            land_id=land.id,
            sequence=1,
            owner_id=users["seller"].id,
            from_date=datetime(2020, 1, 1),
            transfer_type=TransferType.INITIAL,
            document_reference="DIGITAL_CLAIM",
        ),
        LandHolding(user_id=users["seller"].id, land_id=land.id),
    )
    return land


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def certificates():
    return FakeCertificateService()


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def retry_queue():
    return RecordingRetryQueue()


@pytest.fixture
def make_workflow(audit_sink, certificates, document_store, retry_queue):
    """Build a facade over any session, sharing the same collaborators"""
    def _make(session) -> WorkflowFacade:
        return WorkflowFacade(
            session,
            identity=DatabaseIdentityService(session),
            audit=audit_sink,
            certificates=certificates,
            document_store=document_store,
            retry_queue=retry_queue,
            collaborator_timeout=2.0,
        )
    return _make


@pytest.fixture
def workflow(db, make_workflow):
    return make_workflow(db)


@pytest_asyncio.fixture
async def agreed_chat(workflow, users, listed_land):
    """Buyer offers 500000, seller counters 550000, buyer accepts"""
    buyer, seller = users["buyer"].id, users["seller"].id
    chat = await workflow.start_negotiation(listed_land.id, buyer)
    await workflow.make_offer(chat.id, buyer, Decimal("500000"))
    await workflow.counter_offer(chat.id, seller, Decimal("550000"))
    return await workflow.accept_offer(chat.id, buyer)


@pytest_asyncio.fixture
async def chat_transaction(workflow, users, agreed_chat):
    return await workflow.initiate_transaction(users["buyer"].id, chat_id=agreed_chat.id)
