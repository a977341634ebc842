"""
Transaction Flow Orchestrator

Runs one intent end to end: advisory pre-snapshot, submission with
retries, outcome resolution, and an unawaited write of the outcome to the
off-chain claims log.
"""

import asyncio
import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

import structlog

from ...config import settings
from ...db.claims_log import OutcomeStore, get_claims_log
from ...logging_config import (
    FLOW_FIELDS,
    FLOW_LOGGER,
    bind_flow_context,
    clear_flow_context,
    setup_logging,
)
from ..recovery.errors import (
    ClassifiedError,
    RetryCancelledError,
    TransactionFlowError,
    classify_error,
)
from ..recovery.strategies import CancellationToken, RetryPolicy
from .ledger import JsonRpcLedgerClient, LedgerClient
from .models import (
    ConfirmationReceipt,
    FlowState,
    ResolutionResult,
    StateSnapshot,
    TransactionIntent,
)
from .resolver import OutcomeResolver
from .submitter import TransactionSubmitter

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger(FLOW_LOGGER)

StateObserver = Callable[[FlowState], None]
ErrorNotifier = Callable[[ClassifiedError], Union[None, Awaitable[None]]]


class InvalidTransitionError(Exception):
    """Raised when a flow is asked to move along an edge it does not have."""

    def __init__(self, from_state: FlowState, to_state: FlowState, message: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message or f"Invalid transition from {from_state.value} to {to_state.value}")


@dataclass
class StateTransition:
    from_state: FlowState
    to_state: FlowState
    reason: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TransactionFlow:
    """
    State of a single execute() call.

    Ends in exactly one of `resolved` (with a result, possibly the unknown
    sentinel) or `failed` (with a TransactionFlowError).
    """

    TRANSITIONS: Dict[FlowState, Set[FlowState]] = {
        FlowState.IDLE: {
            FlowState.SUBMITTING,
            FlowState.FAILED,      # cancelled before the first attempt
        },
        FlowState.SUBMITTING: {
            FlowState.CONFIRMING,
            FlowState.FAILED,
        },
        FlowState.CONFIRMING: {
            FlowState.SUBMITTING,  # resend on retry
            FlowState.RESOLVING,
            FlowState.FAILED,
        },
        FlowState.RESOLVING: {
            FlowState.RESOLVED,
            FlowState.FAILED,
        },
        FlowState.RESOLVED: set(),
        FlowState.FAILED: set(),
    }

    def __init__(self, intent: TransactionIntent, observer: Optional[StateObserver] = None):
        self.intent = intent
        self.state = FlowState.IDLE
        self.history: List[StateTransition] = []
        self.transaction_hashes: List[str] = []
        self.result: Optional[ResolutionResult] = None
        self.error: Optional[TransactionFlowError] = None
        self._observer = observer

    @property
    def is_terminal(self) -> bool:
        return not self.TRANSITIONS[self.state]

    def can_transition_to(self, to_state: FlowState) -> bool:
        return to_state in self.TRANSITIONS[self.state]

    def transition_to(self, to_state: FlowState, reason: Optional[str] = None) -> StateTransition:
        from_state = self.state
        if not self.can_transition_to(to_state):
            raise InvalidTransitionError(
                from_state,
                to_state,
                f"Invalid transition from {from_state.value} to {to_state.value}. "
                f"Allowed: {sorted(s.value for s in self.TRANSITIONS[from_state])}",
            )

        transition = StateTransition(from_state, to_state, reason)
        self.state = to_state
        self.history.append(transition)
        logger.debug(f"Flow {self.intent.fingerprint}: {from_state.value} -> {to_state.value}")

        if self._observer is not None:
            try:
                self._observer(to_state)
            except Exception as e:
                logger.error(f"State observer failed on {to_state.value}: {e}")

        return transition

    def record_hash(self, tx_hash: str) -> None:
        self.transaction_hashes.append(tx_hash)

    def resolve(self, result: ResolutionResult) -> None:
        self.transition_to(FlowState.RESOLVED)
        self.result = result

    def fail(self, error: TransactionFlowError) -> None:
        self.transition_to(FlowState.FAILED, reason=error.classified.code)
        self.error = error


class TransactionFlowOrchestrator:
    """
    Executes transaction intents.

    Each execute() call is one serial flow. Outcome records are written by
    background tasks tracked here until they finish; drain() waits for them.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        submitter: Optional[TransactionSubmitter] = None,
        resolver: Optional[OutcomeResolver] = None,
        outcome_store: Optional[OutcomeStore] = None,
        error_notifier: Optional[ErrorNotifier] = None,
    ):
        self.ledger = ledger
        self.submitter = submitter or TransactionSubmitter(ledger)
        self.resolver = resolver or OutcomeResolver(ledger)
        self.outcome_store = outcome_store
        self.error_notifier = error_notifier
        self._pending: Set[asyncio.Task] = set()

    async def execute(
        self,
        intent: TransactionIntent,
        policy: Optional[RetryPolicy] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_state_change: Optional[StateObserver] = None,
    ) -> ResolutionResult:
        """
        Submit `intent`, wait for confirmation, and resolve its outcome.

        Returns a ResolutionResult (possibly the unknown sentinel) or raises
        TransactionFlowError, never both.
        """
        flow = TransactionFlow(intent, observer=on_state_change)
        bind_flow_context(
            intent=intent.fingerprint,
            intent_kind=intent.kind.value,
            signer=intent.signer_account,
        )
        _slog.info("transaction_flow_started", function=intent.signature, contract=intent.target_contract)

        try:
            result = await self._run(flow, policy or RetryPolicy.from_settings(), cancel_token)
        except TransactionFlowError as e:
            await self._fail(flow, e)
            raise
        except Exception as e:
            error = TransactionFlowError(
                classify_error(e),
                attempts=len(flow.transaction_hashes),
                tx_hashes=flow.transaction_hashes,
            )
            await self._fail(flow, error)
            raise error from e
        finally:
            clear_flow_context(*FLOW_FIELDS)

        self._schedule_record(intent, result)
        return result

    async def _run(
        self,
        flow: TransactionFlow,
        policy: RetryPolicy,
        cancel_token: Optional[CancellationToken],
    ) -> ResolutionResult:
        intent = flow.intent

        if cancel_token is not None and cancel_token.cancelled:
            raise TransactionFlowError(classify_error(RetryCancelledError(attempts=0)), attempts=0)

        before = await self._advisory_snapshot(intent)

        flow.transition_to(FlowState.SUBMITTING)

        def on_submitted(tx_hash: str) -> None:
            flow.record_hash(tx_hash)
            flow.transition_to(FlowState.CONFIRMING, reason=tx_hash)

        caller_observer = policy.on_retry

        async def on_retry(attempt: int) -> None:
            if flow.state == FlowState.CONFIRMING:
                flow.transition_to(FlowState.SUBMITTING, reason=f"retry {attempt}")
            if caller_observer is not None:
                outcome = caller_observer(attempt)
                if inspect.isawaitable(outcome):
                    await outcome

        receipt: ConfirmationReceipt = await self.submitter.submit(
            intent,
            dataclasses.replace(policy, on_retry=on_retry),
            cancel_token=cancel_token,
            on_submitted=on_submitted,
        )

        flow.transition_to(FlowState.RESOLVING, reason=receipt.transaction_hash)
        try:
            result = await self.resolver.resolve(intent, receipt, before)
        except Exception as e:
            # Confirmed on the ledger; the outcome is unknown, not failed
            _slog.warning("outcome_resolution_failed", tx_hash=receipt.transaction_hash, error=str(e))
            result = ResolutionResult.unresolved(receipt.transaction_hash)
        flow.resolve(result)

        _slog.info(
            "transaction_flow_resolved",
            tx_hash=result.transaction_hash,
            outcome_id=result.outcome_id,
            source=result.source.value,
            attempts=len(flow.transaction_hashes),
        )
        return result

    async def _advisory_snapshot(self, intent: TransactionIntent) -> Optional[StateSnapshot]:
        try:
            return await self.resolver.snapshot(intent)
        except Exception as e:
            _slog.warning("pre_snapshot_failed", error=str(e))
            return None

    async def _fail(self, flow: TransactionFlow, error: TransactionFlowError) -> None:
        classified = error.classified
        if flow.can_transition_to(FlowState.FAILED):
            flow.fail(error)

        _slog.warning(
            "transaction_flow_failed",
            code=classified.code,
            kind=classified.kind.value,
            attempts=error.attempts,
            tx_hashes=list(error.tx_hashes),
        )

        if self.error_notifier is None or not classified.should_notify:
            return
        try:
            outcome = self.error_notifier(classified)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Error notifier failed: {e}")

    def _schedule_record(self, intent: TransactionIntent, result: ResolutionResult) -> None:
        if self.outcome_store is None:
            return
        task = asyncio.create_task(self._record_outcome(intent, result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_outcome(self, intent: TransactionIntent, result: ResolutionResult) -> None:
        try:
            await self.outcome_store.record_outcome(
                intent.subject,
                intent.kind.value,
                result.outcome_id,
                template_id=intent.template_id,
                transaction_hash=result.transaction_hash,
            )
        except Exception as e:
            _slog.warning(
                "outcome_record_failed",
                intent=intent.fingerprint,
                tx_hash=result.transaction_hash,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for pending outcome records to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# Singleton instance
_orchestrator: Optional[TransactionFlowOrchestrator] = None


def get_transaction_orchestrator() -> TransactionFlowOrchestrator:
    """Get the singleton orchestrator backed by the configured RPC endpoint."""
    global _orchestrator
    if _orchestrator is None:
        setup_logging()
        outcome_store = None
        if settings.has_claims_log:
            outcome_store = get_claims_log()
        _orchestrator = TransactionFlowOrchestrator(
            JsonRpcLedgerClient(),
            outcome_store=outcome_store,
        )
    return _orchestrator
