"""
Transaction execution module.

Submits reputation card transactions, waits for confirmation, and works
out which card each confirmed transaction produced.
"""

from .events import (
    CARD_ISSUED,
    COLLECTIBLE_CLAIMED,
    TRANSFER,
    DecodedEvent,
    EventInput,
    EventSchema,
    OutcomeLocator,
    decode_log,
    outcome_locator_for,
    transfer_token_id,
)
from .flow import (
    InvalidTransitionError,
    TransactionFlow,
    TransactionFlowOrchestrator,
    get_transaction_orchestrator,
)
from .ledger import JsonRpcLedgerClient, LedgerClient, encode_call
from .models import (
    UNKNOWN_OUTCOME,
    ConfirmationReceipt,
    FlowState,
    IntentKind,
    RawLog,
    ResolutionResult,
    ResolutionSource,
    StateQuery,
    StateSnapshot,
    TransactionIntent,
)
from .resolver import OutcomeResolver
from .submitter import TransactionSubmitter

__all__ = [
    # Models
    "UNKNOWN_OUTCOME",
    "IntentKind",
    "FlowState",
    "ResolutionSource",
    "TransactionIntent",
    "RawLog",
    "ConfirmationReceipt",
    "ResolutionResult",
    "StateQuery",
    "StateSnapshot",
    # Events
    "EventInput",
    "EventSchema",
    "DecodedEvent",
    "OutcomeLocator",
    "CARD_ISSUED",
    "COLLECTIBLE_CLAIMED",
    "TRANSFER",
    "decode_log",
    "transfer_token_id",
    "outcome_locator_for",
    # Ledger
    "LedgerClient",
    "JsonRpcLedgerClient",
    "encode_call",
    # Flow
    "TransactionSubmitter",
    "OutcomeResolver",
    "TransactionFlow",
    "TransactionFlowOrchestrator",
    "InvalidTransitionError",
    "get_transaction_orchestrator",
]
