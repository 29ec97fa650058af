"""Transactions router: initiation, documents, review and verification"""
from fastapi import APIRouter, Depends, HTTPException, Query, status, UploadFile, File, Form
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
import logging
import os

from app.config import settings
from app.models.transaction import (
    InitiationSource,
    LandTransaction,
    TimelineEventType,
    TransactionDocumentType,
    TransactionStatus,
)
from app.models.user import User
from app.routers.auth import get_current_user, get_current_admin, get_workflow
from app.services.transactions import ReviewVerdict
from app.services.workflow import DocumentUpload, WorkflowFacade

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transactions", tags=["Transactions"])


# Request/Response Models
class InitiateTransactionRequest(BaseModel):
    """Start from an agreed negotiation (chat_id) or buy from the marketplace (land_id)"""
    chat_id: Optional[int] = None
    land_id: Optional[int] = None
    agreed_price: Optional[Decimal] = Field(None, gt=0)


class ReviewRequest(BaseModel):
    verdict: ReviewVerdict
    comments: Optional[str] = Field(None, max_length=2000)
    rejection_reason: Optional[str] = Field(None, max_length=1000)
    documents_verified: bool = True
    legal_clearance: bool = True
    financial_verification: bool = True


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class TransactionResponse(BaseModel):
    id: int
    transaction_code: str
    land_id: int
    seller_id: int
    buyer_id: int
    chat_id: Optional[int]
    agreed_price: Decimal
    escrow_amount: Optional[Decimal]
    initiated_from: InitiationSource
    seller_confirmed: bool
    status: TransactionStatus

    reviewed_by: Optional[int]
    review_date: Optional[datetime]
    review_comments: Optional[str]
    rejection_reason: Optional[str]

    completed_date: Optional[datetime]
    registration_number: Optional[str]
    registration_office: Optional[str]
    stamp_duty: Optional[Decimal]
    registration_fee: Optional[Decimal]
    total_charges: Optional[Decimal]
    certificate_ref: Optional[str]
    ownership_certificate_ref: Optional[str]
    verification_code: Optional[str]
    certificate_pending: bool

    created_at: datetime
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class TimelineEntryResponse(BaseModel):
    event: TimelineEventType
    timestamp: datetime
    performed_by: Optional[int]
    description: Optional[str]
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="event_metadata")

    model_config = ConfigDict(from_attributes=True)


class DocumentResponse(BaseModel):
    id: int
    document_type: TransactionDocumentType
    document_name: Optional[str]
    content_ref: str
    mime_type: Optional[str]
    file_size: Optional[int]
    uploaded_by: int
    uploaded_at: datetime
    verified: bool

    model_config = ConfigDict(from_attributes=True)


class TransactionDetailResponse(TransactionResponse):
    timeline: List[TimelineEntryResponse]
    documents: List[DocumentResponse]


class VerificationResponse(BaseModel):
    """Public proof of a completed transfer"""
    transaction_code: str
    asset_id: str
    owner_id: Optional[int]
    completed_date: Optional[datetime]
    registration_number: Optional[str]
    verification_code: Optional[str]
    certificate_pending: bool


class TransactionStatisticsResponse(BaseModel):
    total_transactions: int
    pending_review: int
    completed: int
    completed_value: Decimal
    average_completed_price: Optional[Decimal]
    status_breakdown: Dict[str, int]


class MonthlyStatisticsResponse(BaseModel):
    month: int
    initiated: int
    completed: int
    completed_value: Decimal


class StatisticsResponse(BaseModel):
    year: int
    statistics: TransactionStatisticsResponse
    monthly_stats: List[MonthlyStatisticsResponse]


def validate_upload_file(file: UploadFile, file_size: int) -> None:
    """Validate uploaded file type and size"""
    if file_size == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File {file.filename} is empty"
        )

    if file_size > settings.max_upload_size_bytes:
        max_mb = settings.MAX_UPLOAD_SIZE_MB
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size is {max_mb}MB"
        )

    file_ext = ""
    if file.filename:
        file_ext = os.path.splitext(file.filename)[1].lower()

    if file_ext and file_ext not in settings.allowed_extensions_list:
        allowed = ", ".join(settings.allowed_extensions_list)
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"File type not allowed. Allowed extensions: {allowed}"
        )

    content_type = (file.content_type or "").lower()
    if content_type and content_type not in settings.allowed_mimetypes_list:
        allowed = ", ".join(settings.allowed_mimetypes_list)
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"MIME type not allowed. Allowed types: {allowed}"
        )


def detect_mime_type(file_ext: str, content_type: Optional[str]) -> str:
    """Detect MIME type from extension or content type"""
    mime_map = {
        ".pdf": "application/pdf",
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
    }

    if file_ext and file_ext.lower() in mime_map:
        return mime_map[file_ext.lower()]

    if content_type and content_type in settings.allowed_mimetypes_list:
        return content_type

    return "application/octet-stream"


def to_response(transaction: LandTransaction) -> TransactionResponse:
    return TransactionResponse.model_validate(transaction)


# Endpoints
@router.post("", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def initiate_transaction(
    request: InitiateTransactionRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    transaction = await workflow.initiate_transaction(
        current_user.id,
        land_id=request.land_id,
        agreed_price=request.agreed_price,
        chat_id=request.chat_id,
    )
    return to_response(transaction)


@router.get("/mine", response_model=List[TransactionResponse])
async def my_transactions(
    status_filter: Optional[TransactionStatus] = None,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    transactions = await workflow.my_transactions(current_user.id, status_filter)
    return [to_response(t) for t in transactions]


@router.get("/pending-review", response_model=List[TransactionResponse])
async def pending_review(
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Transactions waiting for an admin decision"""
    transactions = await workflow.pending_review(admin.id)
    return [to_response(t) for t in transactions]


@router.get("/admin/statistics", response_model=StatisticsResponse)
async def transaction_statistics(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Transaction counts, completed sale value and monthly figures (Admin only)"""
    year = year or datetime.utcnow().year
    stats, monthly = await workflow.transaction_statistics(admin.id, year)
    return StatisticsResponse(
        year=year,
        statistics=TransactionStatisticsResponse(**stats),
        monthly_stats=[MonthlyStatisticsResponse(**month) for month in monthly],
    )


@router.get("/verify/{transaction_code}", response_model=VerificationResponse)
async def verify_transfer(
    transaction_code: str,
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Public verification target of the certificate QR code"""
    transaction, land = await workflow.verify_transfer(transaction_code)
    return VerificationResponse(
        transaction_code=transaction.transaction_code,
        asset_id=land.asset_id,
        owner_id=land.current_owner_id,
        completed_date=transaction.completed_date,
        registration_number=transaction.registration_number,
        verification_code=transaction.verification_code,
        certificate_pending=transaction.certificate_pending,
    )


@router.get("/{transaction_id}", response_model=TransactionDetailResponse)
async def get_transaction(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    transaction, timeline, documents = await workflow.get_transaction(transaction_id, current_user.id)
    return TransactionDetailResponse(
        **to_response(transaction).model_dump(),
        timeline=[TimelineEntryResponse.model_validate(entry) for entry in timeline],
        documents=[DocumentResponse.model_validate(document) for document in documents],
    )


@router.post("/{transaction_id}/confirm", response_model=TransactionResponse)
async def confirm_sale(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Seller confirms a marketplace purchase"""
    transaction = await workflow.confirm_sale(transaction_id, current_user.id)
    return to_response(transaction)


@router.post("/{transaction_id}/documents", response_model=TransactionResponse)
async def submit_documents(
    transaction_id: int,
    files: List[UploadFile] = File(...),
    document_type: TransactionDocumentType = Form(TransactionDocumentType.OTHER),
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Upload supporting documents (buyer or seller)"""
    uploads = []
    for file in files:
        content = await file.read()
        validate_upload_file(file, len(content))
        file_ext = os.path.splitext(file.filename or "")[1]
        uploads.append(DocumentUpload(
            content=content,
            document_type=document_type,
            filename=file.filename,
            mime_type=detect_mime_type(file_ext, file.content_type),
        ))

    transaction = await workflow.submit_documents(transaction_id, current_user.id, uploads)
    return to_response(transaction)


@router.post("/{transaction_id}/start-review", response_model=TransactionResponse)
async def start_review(
    transaction_id: int,
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    transaction = await workflow.start_review(transaction_id, admin.id)
    return to_response(transaction)


@router.post("/{transaction_id}/review", response_model=TransactionResponse)
async def review_transaction(
    transaction_id: int,
    request: ReviewRequest,
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Approve (and transfer ownership) or reject a transaction"""
    transaction = await workflow.review(
        transaction_id,
        admin.id,
        request.verdict,
        comments=request.comments,
        rejection_reason=request.rejection_reason,
        documents_verified=request.documents_verified,
        legal_clearance=request.legal_clearance,
        financial_verification=request.financial_verification,
    )
    return to_response(transaction)


@router.post("/{transaction_id}/transfer", response_model=TransactionResponse)
async def retry_transfer(
    transaction_id: int,
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Finish an approved transfer that was interrupted"""
    transaction = await workflow.retry_transfer(transaction_id, admin.id)
    return to_response(transaction)


@router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_transaction(
    transaction_id: int,
    request: CancelRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    transaction = await workflow.cancel_transaction(transaction_id, current_user.id, request.reason)
    return to_response(transaction)
