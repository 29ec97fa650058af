"""Explicit state-transition rules for negotiations and transactions.

Nothing here touches the database. Each ``plan_*`` function looks at the
current chat record and either returns the change to apply or raises the
error that explains why the action is not allowed. The negotiation engine
applies a returned change with a single conditional update.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, FrozenSet, Optional

from app.exceptions import (
    InvalidNegotiationState,
    InvalidTransactionState,
    NoActiveOffer,
    SelfAcceptanceDenied,
    ValidationError,
)
from app.models.chat import Chat, ChatStatus, MessageType, OfferStatus
from app.models.transaction import TransactionStatus


CHAT_TRANSITIONS: Dict[ChatStatus, FrozenSet[ChatStatus]] = {
    ChatStatus.ACTIVE: frozenset({ChatStatus.DEAL_AGREED, ChatStatus.CANCELLED, ChatStatus.BLOCKED}),
    ChatStatus.DEAL_AGREED: frozenset({ChatStatus.TRANSACTION_INITIATED, ChatStatus.CANCELLED, ChatStatus.BLOCKED}),
    # ACTIVE again only when the admin rejects the transaction
    ChatStatus.TRANSACTION_INITIATED: frozenset({ChatStatus.COMPLETED, ChatStatus.ACTIVE, ChatStatus.CANCELLED}),
    ChatStatus.COMPLETED: frozenset(),
    ChatStatus.CANCELLED: frozenset(),
    ChatStatus.BLOCKED: frozenset(),
}

TRANSACTION_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.INITIATED: frozenset({TransactionStatus.DOCUMENTS_SUBMITTED, TransactionStatus.CANCELLED}),
    TransactionStatus.DOCUMENTS_SUBMITTED: frozenset({
        TransactionStatus.DOCUMENTS_SUBMITTED,
        TransactionStatus.UNDER_REVIEW,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.UNDER_REVIEW: frozenset({TransactionStatus.APPROVED, TransactionStatus.REJECTED}),
    TransactionStatus.APPROVED: frozenset({TransactionStatus.COMPLETED}),
    TransactionStatus.REJECTED: frozenset(),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}

AMOUNT_QUANTUM = Decimal("0.01")


def can_transition_chat(current: ChatStatus, target: ChatStatus) -> bool:
    return target in CHAT_TRANSITIONS.get(current, frozenset())


def ensure_chat_transition(current: ChatStatus, target: ChatStatus) -> None:
    if not can_transition_chat(current, target):
        raise InvalidNegotiationState(
            message=f"Negotiation cannot move from {current.value} to {target.value}",
            details={"current_status": current.value, "target_status": target.value},
        )


def can_transition_transaction(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in TRANSACTION_TRANSITIONS.get(current, frozenset())


def ensure_transaction_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    if not can_transition_transaction(current, target):
        raise InvalidTransactionState(
            message=f"Transaction cannot move from {current.value} to {target.value}",
            details={"current_status": current.value, "target_status": target.value},
        )


def to_amount(value) -> Decimal:
    """Normalise a money amount; must be positive"""
    try:
        amount = Decimal(str(value)).quantize(AMOUNT_QUANTUM)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(message="Amount must be a number", details={"amount": str(value)})
    if amount <= 0:
        raise ValidationError(message="Amount must be greater than zero", details={"amount": str(value)})
    return amount


def format_amount(amount) -> str:
    return f"₹{Decimal(amount):,.2f}"


@dataclass(frozen=True)
class OfferChange:
    """The next offer state of a chat plus the message recording it"""
    message_type: MessageType
    message: str
    amount: Optional[Decimal]
    offered_by: Optional[int]
    offer_status: Optional[OfferStatus]
    offer_made_at: Optional[datetime]
    message_amount: Optional[Decimal] = None
    # Status under which the current offer is moved into history, if it is
    archive_as: Optional[OfferStatus] = None
    chat_status: Optional[ChatStatus] = None
    agreed_price: Optional[Decimal] = None
    agreed_date: Optional[datetime] = None
    clear_agreement: bool = False


def offer_expired(chat: Chat, now: datetime, expiry_hours: int) -> bool:
    if chat.offer_status != OfferStatus.PENDING or chat.offer_made_at is None:
        return False
    return now - chat.offer_made_at >= timedelta(hours=expiry_hours)


def has_pending_offer(chat: Chat, now: datetime, expiry_hours: int) -> bool:
    return chat.offer_status == OfferStatus.PENDING and not offer_expired(chat, now, expiry_hours)


def _require_active(chat: Chat) -> None:
    if chat.status != ChatStatus.ACTIVE:
        raise InvalidNegotiationState(
            message=f"Negotiation is {chat.status.value}; offers are only possible while it is ACTIVE",
            details={"chat_id": chat.id, "status": chat.status.value},
        )


def _require_pending_from_other(chat: Chat, actor_id: int, now: datetime, expiry_hours: int) -> None:
    if not has_pending_offer(chat, now, expiry_hours):
        raise NoActiveOffer(details={"chat_id": chat.id})
    if chat.offer_by_id == actor_id:
        raise SelfAcceptanceDenied(details={"chat_id": chat.id})


def plan_offer(chat: Chat, actor_id: int, amount, now: datetime, expiry_hours: int) -> OfferChange:
    """A fresh offer: only when nothing is pending; the buyer opens the bidding"""
    _require_active(chat)
    amount = to_amount(amount)

    if has_pending_offer(chat, now, expiry_hours):
        raise InvalidNegotiationState(
            message="A pending offer already exists; counter, accept or reject it instead",
            details={"chat_id": chat.id},
        )

    # No offer on the table, including a negotiation reopened after a rejected transaction
    if chat.offer_status is None and actor_id != chat.buyer_id:
        raise InvalidNegotiationState(
            message="Only the buyer can make the first offer",
            details={"chat_id": chat.id},
        )

    archive_as = None
    if chat.offer_status is not None:
        archive_as = OfferStatus.EXPIRED if chat.offer_status == OfferStatus.PENDING else chat.offer_status

    return OfferChange(
        message_type=MessageType.OFFER,
        message=f"I offer {format_amount(amount)} for this land.",
        amount=amount,
        offered_by=actor_id,
        offer_status=OfferStatus.PENDING,
        offer_made_at=now,
        message_amount=amount,
        archive_as=archive_as,
    )


def plan_counter_offer(chat: Chat, actor_id: int, amount, now: datetime, expiry_hours: int) -> OfferChange:
    _require_active(chat)
    amount = to_amount(amount)

    if not has_pending_offer(chat, now, expiry_hours):
        raise NoActiveOffer(message="There is no pending offer to counter", details={"chat_id": chat.id})
    if chat.offer_by_id == actor_id:
        raise InvalidNegotiationState(
            message="You cannot counter your own offer",
            details={"chat_id": chat.id},
        )

    return OfferChange(
        message_type=MessageType.COUNTER_OFFER,
        message=f"I counter with {format_amount(amount)}.",
        amount=amount,
        offered_by=actor_id,
        offer_status=OfferStatus.PENDING,
        offer_made_at=now,
        message_amount=amount,
        archive_as=OfferStatus.COUNTER_OFFERED,
    )


def plan_accept(chat: Chat, actor_id: int, now: datetime, expiry_hours: int) -> OfferChange:
    _require_active(chat)
    _require_pending_from_other(chat, actor_id, now, expiry_hours)

    return OfferChange(
        message_type=MessageType.ACCEPTANCE,
        message=f"I accept the offer of {format_amount(chat.offer_amount)}.",
        amount=chat.offer_amount,
        offered_by=chat.offer_by_id,
        offer_status=OfferStatus.ACCEPTED,
        offer_made_at=chat.offer_made_at,
        chat_status=ChatStatus.DEAL_AGREED,
        agreed_price=chat.offer_amount,
        agreed_date=now,
    )


def plan_reject(chat: Chat, actor_id: int, reason: Optional[str], now: datetime,
                expiry_hours: int) -> OfferChange:
    _require_active(chat)
    _require_pending_from_other(chat, actor_id, now, expiry_hours)

    message = f"I reject the offer of {format_amount(chat.offer_amount)}."
    if reason:
        message = f"{message} Reason: {reason}"

    return OfferChange(
        message_type=MessageType.REJECTION,
        message=message,
        amount=chat.offer_amount,
        offered_by=chat.offer_by_id,
        offer_status=OfferStatus.REJECTED,
        offer_made_at=chat.offer_made_at,
    )


def plan_expiry(chat: Chat, now: datetime, expiry_hours: int) -> Optional[OfferChange]:
    """None when the chat has no pending offer past its expiry"""
    if chat.status != ChatStatus.ACTIVE or not offer_expired(chat, now, expiry_hours):
        return None

    return OfferChange(
        message_type=MessageType.SYSTEM,
        message=f"The offer of {format_amount(chat.offer_amount)} expired without a response.",
        amount=chat.offer_amount,
        offered_by=chat.offer_by_id,
        offer_status=OfferStatus.EXPIRED,
        offer_made_at=chat.offer_made_at,
    )


def plan_reopen(chat: Chat, reason: str) -> OfferChange:
    """Return a negotiation whose transaction was rejected to ACTIVE with no offer"""
    ensure_chat_transition(chat.status, ChatStatus.ACTIVE)

    return OfferChange(
        message_type=MessageType.SYSTEM,
        message=f"The transaction was rejected ({reason}). Negotiation has been reopened.",
        amount=None,
        offered_by=None,
        offer_status=None,
        offer_made_at=None,
        archive_as=chat.offer_status,
        chat_status=ChatStatus.ACTIVE,
        clear_agreement=True,
    )
