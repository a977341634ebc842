"""
Error Recovery Module

Classifies transaction failures and retries the retryable ones with
exponential backoff.
"""

from .errors import (
    BusinessRule,
    ClassifiedError,
    ConfirmationTimeoutError,
    ErrorKind,
    LedgerError,
    LogDecodeError,
    RetryCancelledError,
    RPCError,
    TransactionFlowError,
    TransactionRevertedError,
    classify_error,
    extract_message,
    is_retryable,
    is_user_rejection,
    log_classified_error,
)
from .strategies import CancellationToken, RetryPolicy, retry_with_backoff

__all__ = [
    # Classification
    "ErrorKind",
    "BusinessRule",
    "ClassifiedError",
    "classify_error",
    "extract_message",
    "is_retryable",
    "is_user_rejection",
    "log_classified_error",
    # Errors
    "LedgerError",
    "RPCError",
    "ConfirmationTimeoutError",
    "TransactionRevertedError",
    "LogDecodeError",
    "RetryCancelledError",
    "TransactionFlowError",
    # Retry
    "RetryPolicy",
    "CancellationToken",
    "retry_with_backoff",
]
