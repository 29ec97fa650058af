"""Negotiations router: chat messages and the offer protocol"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal
import logging

from app.models.chat import Chat, ChatStatus, MessageType, OfferStatus
from app.models.user import User
from app.routers.auth import get_current_admin, get_current_user, get_workflow
from app.services.workflow import WorkflowFacade

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/negotiations", tags=["Negotiations"])


# Request/Response Models
class StartNegotiationRequest(BaseModel):
    land_id: int


class OfferRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class MessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class CurrentOfferResponse(BaseModel):
    amount: Decimal
    offered_by: int
    status: OfferStatus
    offered_at: Optional[datetime]


class ChatResponse(BaseModel):
    id: int
    land_id: int
    buyer_id: int
    seller_id: int
    status: ChatStatus
    current_offer: Optional[CurrentOfferResponse]
    offer_version: int
    agreed_price: Optional[Decimal]
    agreed_date: Optional[datetime]
    transaction_id: Optional[int]
    created_at: datetime
    last_activity: Optional[datetime]


class MessageResponse(BaseModel):
    id: int
    sender_id: Optional[int]
    message: str
    message_type: MessageType
    offer_amount: Optional[Decimal]
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OfferHistoryResponse(BaseModel):
    amount: Decimal
    offered_by_id: int
    status: OfferStatus
    offered_at: Optional[datetime]
    superseded_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ChatDetailResponse(ChatResponse):
    messages: List[MessageResponse]
    offer_history: List[OfferHistoryResponse]


class ReadResponse(BaseModel):
    marked_read: int


class NegotiationStatisticsResponse(BaseModel):
    total_chats: int
    active_chats: int
    deals_agreed: int
    status_breakdown: Dict[str, int]


# Helper to convert chat to response
def chat_to_response(chat: Chat) -> ChatResponse:
    current_offer = None
    if chat.offer_status is not None:
        current_offer = CurrentOfferResponse(
            amount=chat.offer_amount,
            offered_by=chat.offer_by_id,
            status=chat.offer_status,
            offered_at=chat.offer_made_at,
        )
    return ChatResponse(
        id=chat.id,
        land_id=chat.land_id,
        buyer_id=chat.buyer_id,
        seller_id=chat.seller_id,
        status=chat.status,
        current_offer=current_offer,
        offer_version=chat.offer_version,
        agreed_price=chat.agreed_price,
        agreed_date=chat.agreed_date,
        transaction_id=chat.transaction_id,
        created_at=chat.created_at,
        last_activity=chat.last_activity,
    )


# Endpoints
@router.post("", response_model=ChatResponse, status_code=status.HTTP_201_CREATED)
async def start_negotiation(
    request: StartNegotiationRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Open a negotiation with the owner of a listed parcel"""
    chat = await workflow.start_negotiation(request.land_id, current_user.id)
    return chat_to_response(chat)


@router.get("/mine", response_model=List[ChatResponse])
async def my_negotiations(
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chats = await workflow.my_negotiations(current_user.id)
    return [chat_to_response(chat) for chat in chats]


@router.get("/admin/statistics", response_model=NegotiationStatisticsResponse)
async def negotiation_statistics(
    admin: User = Depends(get_current_admin),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    """Negotiation counts by status (Admin only)"""
    stats = await workflow.negotiation_statistics(admin.id)
    return NegotiationStatisticsResponse(**stats)


@router.get("/{chat_id}", response_model=ChatDetailResponse)
async def get_negotiation(
    chat_id: int,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chat, messages, history = await workflow.get_negotiation(chat_id, current_user.id)
    return ChatDetailResponse(
        **chat_to_response(chat).model_dump(),
        messages=[MessageResponse.model_validate(m) for m in messages],
        offer_history=[OfferHistoryResponse.model_validate(h) for h in history],
    )


@router.post("/{chat_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: int,
    request: MessageRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    message = await workflow.send_message(chat_id, current_user.id, request.message)
    return MessageResponse.model_validate(message)


@router.post("/{chat_id}/read", response_model=ReadResponse)
async def mark_read(
    chat_id: int,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    count = await workflow.mark_read(chat_id, current_user.id)
    return ReadResponse(marked_read=count)


@router.post("/{chat_id}/offer", response_model=ChatResponse)
async def make_offer(
    chat_id: int,
    request: OfferRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chat = await workflow.make_offer(chat_id, current_user.id, request.amount)
    return chat_to_response(chat)


@router.post("/{chat_id}/counter-offer", response_model=ChatResponse)
async def counter_offer(
    chat_id: int,
    request: OfferRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chat = await workflow.counter_offer(chat_id, current_user.id, request.amount)
    return chat_to_response(chat)


@router.post("/{chat_id}/accept", response_model=ChatResponse)
async def accept_offer(
    chat_id: int,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chat = await workflow.accept_offer(chat_id, current_user.id)
    return chat_to_response(chat)


@router.post("/{chat_id}/reject", response_model=ChatResponse)
async def reject_offer(
    chat_id: int,
    request: RejectRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chat = await workflow.reject_offer(chat_id, current_user.id, request.reason)
    return chat_to_response(chat)


@router.post("/{chat_id}/cancel", response_model=ChatResponse)
async def cancel_negotiation(
    chat_id: int,
    request: ReasonRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chat = await workflow.cancel_negotiation(chat_id, current_user.id, request.reason)
    return chat_to_response(chat)


@router.post("/{chat_id}/block", response_model=ChatResponse)
async def block_negotiation(
    chat_id: int,
    request: ReasonRequest,
    current_user: User = Depends(get_current_user),
    workflow: WorkflowFacade = Depends(get_workflow)
):
    chat = await workflow.block_negotiation(chat_id, current_user.id, request.reason)
    return chat_to_response(chat)
