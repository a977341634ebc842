"""
Transaction submission with retries.

Sending and waiting for the receipt are retried together: a retryable
failure at either step re-sends the intent from scratch.
"""

import logging
from typing import Callable, List, Optional

from ..recovery.errors import TransactionFlowError, log_classified_error
from ..recovery.strategies import CancellationToken, RetryPolicy, retry_with_backoff
from .ledger import LedgerClient
from .models import ConfirmationReceipt, TransactionIntent

logger = logging.getLogger(__name__)


class TransactionSubmitter:
    """Submits an intent and waits for its confirmation receipt."""

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    async def submit(
        self,
        intent: TransactionIntent,
        policy: Optional[RetryPolicy] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> ConfirmationReceipt:
        """
        Submit `intent` and return the receipt of the attempt that confirmed.

        Raises TransactionFlowError (chained from the last failure) when the
        failure is not retryable, attempts run out, or the loop is cancelled.
        """
        policy = policy or RetryPolicy.from_settings()
        tx_hashes: List[str] = []
        attempts = 0

        async def attempt_once() -> ConfirmationReceipt:
            nonlocal attempts
            attempts += 1

            if tx_hashes:
                # The earlier hash may still be mined; nothing here prevents a duplicate
                logger.warning(
                    f"Resending {intent.signature} (intent {intent.fingerprint}) after "
                    f"{len(tx_hashes)} earlier hash(es) {tx_hashes}: possible duplicate submission"
                )

            tx_hash = await self.ledger.send_transaction(intent)
            tx_hashes.append(tx_hash)
            if on_submitted is not None:
                on_submitted(tx_hash)

            return await self.ledger.wait_for_receipt(tx_hash)

        try:
            receipt = await retry_with_backoff(
                attempt_once,
                policy,
                cancel_token=cancel_token,
                operation_name=f"submit {intent.signature}",
            )
        except Exception as e:
            classified = log_classified_error(
                e, f"submit {intent.signature} after {attempts} attempt(s), intent {intent.fingerprint}"
            )
            raise TransactionFlowError(classified, attempts=attempts, tx_hashes=tx_hashes) from e

        if attempts > 1:
            logger.info(
                f"{intent.signature} confirmed on attempt {attempts}: {receipt.transaction_hash}"
            )
        return receipt
