"""External collaborators consumed by the transfer workflow.

Document storage, certificate rendering, audit logging and identity checks
sit behind small abstract interfaces so the workflow can be exercised with
in-memory fakes. Every call goes through ``call_with_timeout``; a timeout or
failure surfaces as ``CollaboratorUnavailable``.
"""
import asyncio
import hashlib
import hmac
import io
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional

import aiofiles
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import CollaboratorUnavailable, NotFoundError
from app.models.audit_log import AuditLog
from app.models.land import Land
from app.models.transaction import LandTransaction
from app.models.user import User, UserRole, VerificationStatus

logger = logging.getLogger(__name__)


async def call_with_timeout(awaitable: Awaitable, collaborator: str, timeout: float):
    """Await a collaborator call with a bounded timeout"""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{collaborator} timed out after {timeout}s")
        raise CollaboratorUnavailable(
            message=f"{collaborator} timed out",
            details={"collaborator": collaborator, "timeout_seconds": timeout},
        )
    except CollaboratorUnavailable:
        raise
    except Exception as e:
        logger.warning(f"{collaborator} failed: {e}")
        raise CollaboratorUnavailable(
            message=f"{collaborator} failed: {e}",
            details={"collaborator": collaborator},
        ) from e


# Document storage

class DocumentStore(ABC):
    """Content-addressed file store"""

    @abstractmethod
    async def put(self, content: bytes) -> str:
        """Store bytes and return their content reference"""

    @abstractmethod
    async def get(self, content_ref: str) -> bytes:
        """Load bytes by content reference"""


class LocalDocumentStore(DocumentStore):
    """Stores documents on disk under ``<base>/documents/<aa>/<sha256>``"""

    REF_PREFIX = "sha256:"

    def __init__(self, base_path: str):
        self.base_path = base_path

    def _path_for(self, digest: str) -> str:
        return os.path.join(self.base_path, "documents", digest[:2], digest)

    async def put(self, content: bytes) -> str:
        digest = hashlib.sha256(content).hexdigest()
        path = self._path_for(digest)

        # Same content, same path: an existing file is already correct
        if not os.path.exists(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(content)

        return f"{self.REF_PREFIX}{digest}"

    async def get(self, content_ref: str) -> bytes:
        if not content_ref.startswith(self.REF_PREFIX):
            raise NotFoundError(message=f"Unknown document reference: {content_ref}")
        path = self._path_for(content_ref[len(self.REF_PREFIX):])
        if not os.path.exists(path):
            raise NotFoundError(message=f"Document not found: {content_ref}")
        async with aiofiles.open(path, "rb") as f:
            return await f.read()


# Certificates

@dataclass
class CertificateIssue:
    """References returned by the certificate collaborator"""
    certificate_ref: str
    ownership_certificate_ref: str
    verification_code: str


class CertificateService(ABC):

    @abstractmethod
    async def issue(self, transaction: LandTransaction, land: Land, new_owner: User) -> CertificateIssue:
        """Render and store the transaction and ownership certificates"""


class ReportLabCertificateService(CertificateService):
    """Renders certificates as PDFs with a verification QR code"""

    def __init__(self, document_store: DocumentStore, secret_key: str, frontend_url: str):
        self.document_store = document_store
        self.secret_key = secret_key
        self.frontend_url = frontend_url.rstrip("/")

    def verification_code_for(self, transaction_code: str) -> str:
        digest = hmac.new(self.secret_key.encode(), transaction_code.encode(), hashlib.sha256).hexdigest()
        return digest[:12].upper()

    def verify_url(self, transaction_code: str) -> str:
        return f"{self.frontend_url}/verify-ownership/{transaction_code}"

    def _render(self, title: str, rows: list, verify_url: str) -> bytes:
        from reportlab.graphics.barcode.qr import QrCodeWidget
        from reportlab.graphics.shapes import Drawing
        from reportlab.lib.pagesizes import A4
        from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
        from reportlab.lib.units import inch
        from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

        buffer = io.BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=A4,
                                rightMargin=72, leftMargin=72,
                                topMargin=72, bottomMargin=72)

        styles = getSampleStyleSheet()
        styles.add(ParagraphStyle(name='CertificateHeader',
                                  parent=styles['Heading1'],
                                  fontSize=18,
                                  spaceAfter=12,
                                  alignment=1))
        styles.add(ParagraphStyle(name='CertificateTitle',
                                  parent=styles['Heading2'],
                                  fontSize=14,
                                  spaceAfter=24,
                                  alignment=1))

        story = [
            Paragraph("LAND REGISTRY DEPARTMENT", styles['CertificateHeader']),
            Paragraph(title, styles['CertificateTitle']),
        ]

        table = Table(rows, colWidths=[2 * inch, 4 * inch])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ]))
        story.append(table)
        story.append(Spacer(1, 24))

        qr = QrCodeWidget(verify_url)
        x0, y0, x1, y1 = qr.getBounds()
        size = 1.5 * inch
        drawing = Drawing(size, size, transform=[size / (x1 - x0), 0, 0, size / (y1 - y0), 0, 0])
        drawing.add(qr)
        story.append(drawing)
        story.append(Paragraph(f"Scan or visit {verify_url} to verify", styles['Normal']))
        story.append(Spacer(1, 12))
        story.append(Paragraph(
            f"Generated on {datetime.utcnow().strftime('%Y-%m-%d %H:%M')} UTC",
            styles['Normal'],
        ))

        doc.build(story)
        return buffer.getvalue()

    def render_transaction_certificate(self, transaction: LandTransaction, land: Land,
                                       new_owner: User, verification_code: str) -> bytes:
        rows = [
            ["Transaction ID:", transaction.transaction_code],
            ["Land Asset ID:", land.asset_id],
            ["Survey Number:", land.survey_number],
            ["Location:", f"{land.village}, {land.taluka}, {land.district}, {land.state}"],
            ["Buyer:", new_owner.full_name or new_owner.email],
            ["Agreed Price:", f"{transaction.agreed_price:,.2f}"],
            ["Registration No.:", transaction.registration_number or ""],
            ["Verification Code:", verification_code],
        ]
        return self._render("TRANSACTION CERTIFICATE", rows, self.verify_url(transaction.transaction_code))

    def render_ownership_certificate(self, transaction: LandTransaction, land: Land,
                                     new_owner: User, verification_code: str) -> bytes:
        rows = [
            ["Land Asset ID:", land.asset_id],
            ["Survey Number:", land.survey_number],
            ["Village:", land.village],
            ["District:", land.district],
            ["Land Type:", land.land_type.value],
            ["Owner:", new_owner.full_name or new_owner.email],
            ["Transfer Reference:", transaction.transaction_code],
            ["Verification Code:", verification_code],
        ]
        return self._render("LAND OWNERSHIP CERTIFICATE", rows, self.verify_url(transaction.transaction_code))

    async def issue(self, transaction: LandTransaction, land: Land, new_owner: User) -> CertificateIssue:
        verification_code = self.verification_code_for(transaction.transaction_code)

        transaction_pdf = await asyncio.to_thread(
            self.render_transaction_certificate, transaction, land, new_owner, verification_code
        )
        ownership_pdf = await asyncio.to_thread(
            self.render_ownership_certificate, transaction, land, new_owner, verification_code
        )

        certificate_ref = await self.document_store.put(transaction_pdf)
        ownership_certificate_ref = await self.document_store.put(ownership_pdf)

        logger.info(f"Issued certificates for transaction {transaction.transaction_code}")

        return CertificateIssue(
            certificate_ref=certificate_ref,
            ownership_certificate_ref=ownership_certificate_ref,
            verification_code=verification_code,
        )


# Audit

class AuditSink(ABC):

    @abstractmethod
    async def record(self, event_kind: str, actor_id: Optional[int], target_kind: str,
                     target_id: Any, details: Optional[Dict[str, Any]] = None) -> None:
        """Persist one audit event"""


class DatabaseAuditSink(AuditSink):
    """Writes audit events in a session of its own so they never share a workflow commit"""

    HIGH_SEVERITY = {"TRANSACTION_APPROVE", "TRANSACTION_REJECT", "TRANSFER_FAILED", "USER_VERIFY"}

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(self, event_kind: str, actor_id: Optional[int], target_kind: str,
                     target_id: Any, details: Optional[Dict[str, Any]] = None) -> None:
        async with self.session_factory() as session:
            session.add(AuditLog(
                user_id=actor_id,
                action=event_kind,
                resource_type=target_kind,
                resource_id=str(target_id) if target_id is not None else None,
                details=details or {},
                severity="HIGH" if event_kind in self.HIGH_SEVERITY else "MEDIUM",
            ))
            await session.commit()


# Identity

class IdentityService(ABC):

    @abstractmethod
    async def is_ownership_eligible(self, user_id: int) -> bool:
        """True when the user may become a parcel's current owner"""

    @abstractmethod
    async def is_admin(self, user_id: int) -> bool:
        """True when the user holds the administrator capability"""

    @abstractmethod
    async def set_verification(self, user_id: int, admin_id: int, approve: bool,
                               rejection_reason: Optional[str] = None) -> User:
        """Record an admin decision on a user's identity"""


class DatabaseIdentityService(IdentityService):
    """Identity capabilities backed by the users table"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_user(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def is_ownership_eligible(self, user_id: int) -> bool:
        user = await self._get_user(user_id)
        return bool(user and user.is_active and user.verification_status == VerificationStatus.VERIFIED)

    async def is_admin(self, user_id: int) -> bool:
        user = await self._get_user(user_id)
        return bool(user and user.is_active and user.role == UserRole.ADMIN)

    async def set_verification(self, user_id: int, admin_id: int, approve: bool,
                               rejection_reason: Optional[str] = None) -> User:
        """Record an admin decision on a user's identity documents"""
        user = await self._get_user(user_id)
        if not user:
            raise NotFoundError(message="User not found")

        user.verification_status = VerificationStatus.VERIFIED if approve else VerificationStatus.REJECTED
        user.verified_by = admin_id
        user.verification_date = datetime.utcnow()
        user.rejection_reason = None if approve else rejection_reason
        await self.db.commit()
        await self.db.refresh(user)

        logger.info(f"User {user_id} verification set to {user.verification_status.value} by admin {admin_id}")
        return user
