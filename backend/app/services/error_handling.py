"""Error Handling Service

Categorizes workflow errors, recommends a recovery action for each and
decides retries for the background certificate jobs.
"""

import re
import logging
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Union
from datetime import datetime
from dataclasses import dataclass

from app.exceptions import (
    AppException,
    AuthenticationError,
    AuthorizationError,
    CollaboratorUnavailable,
    ConcurrentTransactionExists,
    InvalidNegotiationState,
    InvalidTransactionState,
    NotFoundError,
    TransferPreconditionFailed,
    ValidationError,
)

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Categories of errors for better handling"""
    NEGOTIATION_STATE = "negotiation_state"    # Offer protocol out of sequence
    TRANSACTION_STATE = "transaction_state"    # Lifecycle step not allowed now
    CONCURRENCY = "concurrency"                # Lost a race for the parcel
    AUTHORIZATION = "authorization"            # Not a participant, admin or verified owner
    CONSISTENCY = "consistency"                # Stored state diverged from the approval
    COLLABORATOR = "collaborator"              # Document, certificate or audit service down
    NETWORK = "network"                        # Connection issues
    TIMEOUT = "timeout"                        # Operation timeout
    DATABASE = "database"                      # DB connection/query errors
    STORAGE = "storage"                        # File storage issues
    VALIDATION = "validation"                  # Bad input
    NOT_FOUND = "not_found"                    # Unknown resource
    UNKNOWN = "unknown"                        # Unclassified errors


class RecoveryAction(str, Enum):
    """Possible recovery actions"""
    RESUBMIT = "resubmit"                            # Caller corrects intent and tries again
    RETRY = "retry"                                  # Simple retry
    RETRY_WITH_DELAY = "retry_delay"                 # Retry after waiting
    RETRY_OUT_OF_BAND = "retry_out_of_band"          # Queued for a background retry
    MANUAL_RECONCILIATION = "manual_reconciliation"  # Admin must inspect and repair state
    ESCALATE = "escalate"                            # Notify admin
    ABORT = "abort"                                  # Cannot recover


@dataclass
class ErrorDiagnosis:
    """Diagnosis result for an error"""
    category: ErrorCategory
    severity: str  # low, medium, high, critical
    is_transient: bool  # Likely to succeed on retry
    user_message: str
    technical_details: str
    recovery_actions: List[RecoveryAction]
    recommended_action: RecoveryAction
    retry_delay_seconds: int
    max_retries: int


# Most specific classes first
EXCEPTION_CATEGORIES = [
    (TransferPreconditionFailed, ErrorCategory.CONSISTENCY),
    (ConcurrentTransactionExists, ErrorCategory.CONCURRENCY),
    (InvalidNegotiationState, ErrorCategory.NEGOTIATION_STATE),
    (InvalidTransactionState, ErrorCategory.TRANSACTION_STATE),
    (CollaboratorUnavailable, ErrorCategory.COLLABORATOR),
    (AuthorizationError, ErrorCategory.AUTHORIZATION),
    (AuthenticationError, ErrorCategory.AUTHORIZATION),
    (ValidationError, ErrorCategory.VALIDATION),
    (NotFoundError, ErrorCategory.NOT_FOUND),
]


# Error pattern matching for plain messages (task failures, driver errors)
ERROR_PATTERNS = {
    ErrorCategory.TIMEOUT: [
        r"timeout",
        r"timed out",
        r"deadline exceeded",
    ],
    ErrorCategory.COLLABORATOR: [
        r"certificate service",
        r"document store",
        r"audit sink",
        r"collaborator",
    ],
    ErrorCategory.NETWORK: [
        r"connection refused",
        r"connection reset",
        r"network unreachable",
        r"name resolution",
        r"socket",
    ],
    ErrorCategory.DATABASE: [
        r"database",
        r"sql",
        r"database is locked",
        r"deadlock",
        r"integrity error",
        r"constraint",
    ],
    ErrorCategory.STORAGE: [
        r"disk space",
        r"no space left",
        r"file not found",
        r"permission denied",
    ],
    ErrorCategory.VALIDATION: [
        r"validation",
        r"invalid",
        r"required field",
    ],
}


# Severity and recovery configuration per category
ERROR_CONFIG = {
    ErrorCategory.NEGOTIATION_STATE: {
        "severity": "low",
        "is_transient": False,
        "retry_delay": 0,
        "max_retries": 0,
        "recovery_actions": [RecoveryAction.RESUBMIT],
        "user_message": "The negotiation is not in a state that allows this action. Reload and try again.",
    },
    ErrorCategory.TRANSACTION_STATE: {
        "severity": "low",
        "is_transient": False,
        "retry_delay": 0,
        "max_retries": 0,
        "recovery_actions": [RecoveryAction.RESUBMIT],
        "user_message": "The transaction is not in a state that allows this action.",
    },
    ErrorCategory.CONCURRENCY: {
        "severity": "low",
        "is_transient": False,
        "retry_delay": 0,
        "max_retries": 0,
        "recovery_actions": [RecoveryAction.ABORT],
        "user_message": "Another transaction is already in progress for this land.",
    },
    ErrorCategory.AUTHORIZATION: {
        "severity": "medium",
        "is_transient": False,
        "retry_delay": 0,
        "max_retries": 0,
        "recovery_actions": [RecoveryAction.RESUBMIT],
        "user_message": "You are not allowed to perform this action.",
    },
    ErrorCategory.CONSISTENCY: {
        "severity": "critical",
        "is_transient": False,
        "retry_delay": 0,
        "max_retries": 0,
        "recovery_actions": [RecoveryAction.MANUAL_RECONCILIATION, RecoveryAction.ESCALATE],
        "user_message": "Land and transaction records disagree. An administrator must reconcile them.",
    },
    ErrorCategory.COLLABORATOR: {
        "severity": "medium",
        "is_transient": True,
        "retry_delay": 60,
        "max_retries": 5,
        "recovery_actions": [RecoveryAction.RETRY_OUT_OF_BAND, RecoveryAction.RETRY_WITH_DELAY],
        "user_message": "An external service is unavailable. The step will be retried in the background.",
    },
    ErrorCategory.NETWORK: {
        "severity": "medium",
        "is_transient": True,
        "retry_delay": 30,
        "max_retries": 3,
        "recovery_actions": [RecoveryAction.RETRY_WITH_DELAY],
        "user_message": "Network connection issue. The system will automatically retry.",
    },
    ErrorCategory.TIMEOUT: {
        "severity": "medium",
        "is_transient": True,
        "retry_delay": 60,
        "max_retries": 3,
        "recovery_actions": [RecoveryAction.RETRY_WITH_DELAY, RecoveryAction.RETRY_OUT_OF_BAND],
        "user_message": "The operation timed out. It will be retried.",
    },
    ErrorCategory.DATABASE: {
        "severity": "critical",
        "is_transient": True,
        "retry_delay": 5,
        "max_retries": 5,
        "recovery_actions": [RecoveryAction.RETRY, RecoveryAction.ESCALATE],
        "user_message": "Database connection issue. Retrying automatically.",
    },
    ErrorCategory.STORAGE: {
        "severity": "high",
        "is_transient": False,
        "retry_delay": 60,
        "max_retries": 2,
        "recovery_actions": [RecoveryAction.RETRY, RecoveryAction.ESCALATE],
        "user_message": "File storage issue.",
    },
    ErrorCategory.VALIDATION: {
        "severity": "low",
        "is_transient": False,
        "retry_delay": 0,
        "max_retries": 0,
        "recovery_actions": [RecoveryAction.RESUBMIT],
        "user_message": "Some data did not pass validation.",
    },
    ErrorCategory.NOT_FOUND: {
        "severity": "low",
        "is_transient": False,
        "retry_delay": 0,
        "max_retries": 0,
        "recovery_actions": [RecoveryAction.ABORT],
        "user_message": "The requested record does not exist.",
    },
    ErrorCategory.UNKNOWN: {
        "severity": "high",
        "is_transient": False,
        "retry_delay": 60,
        "max_retries": 1,
        "recovery_actions": [RecoveryAction.RETRY, RecoveryAction.ESCALATE],
        "user_message": "An unexpected error occurred. Our team has been notified.",
    },
}


class ErrorHandler:
    """Handles error categorization, diagnosis, and recovery"""

    def categorize_error(self, error: Union[str, BaseException]) -> ErrorCategory:
        """Categorize an error by its type, falling back to its message"""
        if isinstance(error, BaseException):
            for exc_type, category in EXCEPTION_CATEGORIES:
                if isinstance(error, exc_type):
                    return category
            if isinstance(error, TimeoutError):
                return ErrorCategory.TIMEOUT
            error = str(error)

        error_lower = error.lower()

        for category, patterns in ERROR_PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, error_lower, re.IGNORECASE):
                    return category

        return ErrorCategory.UNKNOWN

    def diagnose_error(
        self,
        error: Union[str, BaseException],
        task_name: str = "",
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorDiagnosis:
        """Diagnose an error and provide recovery recommendations"""
        category = self.categorize_error(error)
        config = ERROR_CONFIG[category]

        retry_count = (context or {}).get("retry_count", 0)
        remaining_retries = max(0, config["max_retries"] - retry_count)

        if config["is_transient"] and remaining_retries == 0:
            recovery_actions = [RecoveryAction.ESCALATE, RecoveryAction.ABORT]
            recommended = RecoveryAction.ESCALATE
        else:
            recovery_actions = config["recovery_actions"]
            recommended = recovery_actions[0] if recovery_actions else RecoveryAction.ABORT

        return ErrorDiagnosis(
            category=category,
            severity=config["severity"],
            is_transient=config["is_transient"],
            user_message=config["user_message"],
            technical_details=f"Task: {task_name}, Error: {error}",
            recovery_actions=recovery_actions,
            recommended_action=recommended,
            retry_delay_seconds=config["retry_delay"],
            max_retries=remaining_retries,
        )

    def create_error_entry(
        self,
        error: Union[str, BaseException],
        task_name: str,
        diagnosis: Optional[ErrorDiagnosis] = None
    ) -> Dict[str, Any]:
        """Create an error log entry"""
        if not diagnosis:
            diagnosis = self.diagnose_error(error, task_name)

        return {
            "timestamp": datetime.utcnow().isoformat(),
            "task": task_name,
            "error": str(error),
            "category": diagnosis.category.value,
            "severity": diagnosis.severity,
            "is_transient": diagnosis.is_transient,
            "recommended_action": diagnosis.recommended_action.value,
        }

    def should_retry(
        self,
        error: Union[str, BaseException],
        retry_count: int,
        max_retries: int = 3
    ) -> Tuple[bool, int]:
        """Determine if operation should be retried and delay"""
        diagnosis = self.diagnose_error(error, context={"retry_count": retry_count})

        if not diagnosis.is_transient:
            return False, 0

        if retry_count >= max_retries or diagnosis.max_retries == 0:
            return False, 0

        # Exponential backoff
        delay = diagnosis.retry_delay_seconds * (2 ** retry_count)
        return True, delay

    def recovery_for(self, error: AppException) -> str:
        """Recovery action reported alongside a rejected request"""
        return self.diagnose_error(error).recommended_action.value


# Global instance
error_handler = ErrorHandler()


def diagnose_and_log_error(
    transaction_code: str,
    task_name: str,
    error: BaseException,
    retry_count: int = 0
) -> ErrorDiagnosis:
    """Convenience function to diagnose and log a background task failure"""
    diagnosis = error_handler.diagnose_error(error, task_name, context={"retry_count": retry_count})

    log = logger.warning if diagnosis.is_transient else logger.error
    log(
        f"Transaction {transaction_code} error in {task_name}: {error} "
        f"(category={diagnosis.category.value}, severity={diagnosis.severity})"
    )
    return diagnosis
