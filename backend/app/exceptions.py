"""Custom exceptions for the application"""
from typing import Optional, Dict, Any


class AppException(Exception):
    """Base exception for the application"""
    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="NOT_FOUND", status_code=404, details=details)


class AuthenticationError(AppException):
    """Authentication failed"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="AUTHENTICATION_FAILED", status_code=401, details=details)


class AuthorizationError(AppException):
    """Authorization failed"""
    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="ACCESS_DENIED", status_code=403, details=details)


class ValidationError(AppException):
    """Validation error"""
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="VALIDATION_ERROR", status_code=422, details=details)


class ConflictError(AppException):
    """Resource conflict"""
    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="CONFLICT", status_code=409, details=details)


class ServiceError(AppException):
    """External service error"""
    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="SERVICE_ERROR", status_code=503, details=details)


# Workflow errors

class InvalidNegotiationState(ConflictError):
    """Offer, accept or reject called out of sequence or by a disallowed actor"""
    error_code = "INVALID_NEGOTIATION_STATE"

    def __init__(self, message: str = "Negotiation is not in a valid state for this action",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
        self.code = self.error_code


class SelfAcceptanceDenied(InvalidNegotiationState):
    """The party who made the pending offer tried to accept or reject it"""
    error_code = "SELF_ACCEPTANCE_DENIED"

    def __init__(self, message: str = "You cannot respond to your own offer",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class NoActiveOffer(InvalidNegotiationState):
    """There is no pending offer to respond to"""
    error_code = "NO_ACTIVE_OFFER"

    def __init__(self, message: str = "No pending offer", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class InvalidTransactionState(ConflictError):
    """Transaction operation not allowed in the current status"""
    def __init__(self, message: str = "Transaction is not in a valid state for this action",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
        self.code = "INVALID_TRANSACTION_STATE"


class ConcurrentTransactionExists(ConflictError):
    """The parcel already has a live transaction"""
    def __init__(self, message: str = "There is already a pending transaction for this land",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
        self.code = "CONCURRENT_TRANSACTION_EXISTS"


class UnauthorizedActor(AuthorizationError):
    """Caller is not a participant or an admin"""
    def __init__(self, message: str = "You are not allowed to act on this resource",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
        self.code = "UNAUTHORIZED_ACTOR"


class IneligibleOwner(AuthorizationError):
    """Target user is not verified to hold land ownership"""
    def __init__(self, message: str = "User must be verified to hold land ownership",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
        self.code = "INELIGIBLE_OWNER"


class TransferPreconditionFailed(AppException):
    """Stored state diverged from what the approval assumed; needs manual reconciliation"""
    def __init__(self, message: str = "Ownership transfer preconditions failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="TRANSFER_PRECONDITION_FAILED", status_code=409, details=details)


class CollaboratorUnavailable(ServiceError):
    """Document, certificate or audit collaborator failed or timed out"""
    def __init__(self, message: str = "External collaborator unavailable",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
        self.code = "COLLABORATOR_UNAVAILABLE"
