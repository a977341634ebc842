"""
Outcome resolution.

Determines which identifier a confirmed transaction produced, trying
progressively weaker evidence:

1. the expected event emitted by the target contract
2. an ERC-721 Transfer in the same receipt (mints preferred)
3. the difference between ledger state before and after the transaction

When none of them yields exactly one identifier the result carries the
UNKNOWN_OUTCOME sentinel. The transaction is confirmed either way.
"""

import logging
from typing import List, Optional

from ..recovery.errors import LogDecodeError
from .events import OutcomeLocator, outcome_locator_for, transfer_token_id
from .ledger import LedgerClient
from .models import (
    ZERO_ADDRESS,
    ConfirmationReceipt,
    ResolutionResult,
    ResolutionSource,
    StateQuery,
    StateSnapshot,
    TransactionIntent,
)

logger = logging.getLogger(__name__)


class OutcomeResolver:
    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    def snapshot_query(self, intent: TransactionIntent) -> Optional[StateQuery]:
        """State query listing the subject's identifiers, or None without a subject."""
        if intent.subject is None:
            return None
        locator = outcome_locator_for(intent.kind)
        return StateQuery(
            contract=intent.target_contract,
            function_signature=locator.snapshot_signature,
            arguments=(intent.subject,),
        )

    async def snapshot(self, intent: TransactionIntent) -> Optional[StateSnapshot]:
        """Read the subject's current identifiers. Ledger failures propagate."""
        query = self.snapshot_query(intent)
        if query is None:
            return None
        return await self.ledger.read_ledger_state(query)

    async def resolve(
        self,
        intent: TransactionIntent,
        receipt: ConfirmationReceipt,
        before: Optional[StateSnapshot] = None,
    ) -> ResolutionResult:
        locator = outcome_locator_for(intent.kind)
        tx_hash = receipt.transaction_hash

        outcome_id = self._from_primary_event(intent, receipt, locator)
        if outcome_id is not None:
            return ResolutionResult(outcome_id, tx_hash, ResolutionSource.PRIMARY_EVENT)

        outcome_id = self._from_transfer(receipt)
        if outcome_id is not None:
            logger.info(f"Resolved {tx_hash} from Transfer log: {outcome_id}")
            return ResolutionResult(outcome_id, tx_hash, ResolutionSource.TRANSFER_EVENT)

        if before is not None:
            outcome_id = await self._from_state_diff(intent, before)
            if outcome_id is not None:
                logger.info(f"Resolved {tx_hash} from state diff: {outcome_id}")
                return ResolutionResult(outcome_id, tx_hash, ResolutionSource.STATE_DIFF)

        logger.warning(
            f"Could not determine {locator.id_field} for confirmed transaction {tx_hash} "
            f"({intent.signature}); returning unknown outcome"
        )
        return ResolutionResult.unresolved(tx_hash)

    def _from_primary_event(
        self,
        intent: TransactionIntent,
        receipt: ConfirmationReceipt,
        locator: OutcomeLocator,
    ) -> Optional[int]:
        target = intent.target_contract.lower()
        for raw_log in receipt.logs:
            if raw_log.address.lower() != target:
                continue
            try:
                event = self.ledger.decode_log(raw_log, locator.event)
            except LogDecodeError:
                continue
            except Exception as e:
                logger.debug(f"Could not decode {locator.event.name} from {raw_log.address}: {e}")
                continue
            value = event.args.get(locator.id_field)
            if isinstance(value, int) and value > 0:
                return value
        return None

    def _from_transfer(self, receipt: ConfirmationReceipt) -> Optional[int]:
        mints: List[int] = []
        others: List[int] = []
        for raw_log in receipt.logs:
            probe = transfer_token_id(raw_log)
            if probe is None:
                continue
            sender, token_id = probe
            if token_id <= 0:
                continue
            (mints if sender == ZERO_ADDRESS else others).append(token_id)

        candidates = set(mints or others)
        if len(candidates) == 1:
            return candidates.pop()
        if len(candidates) > 1:
            logger.warning(f"Ambiguous Transfer logs in {receipt.transaction_hash}: {sorted(candidates)}")
        return None

    async def _from_state_diff(
        self,
        intent: TransactionIntent,
        before: StateSnapshot,
    ) -> Optional[int]:
        try:
            after = await self.snapshot(intent)
        except Exception as e:
            logger.warning(f"State read after {intent.signature} failed: {e}")
            return None
        if after is None:
            return None

        new_ids = {i for i in after.new_identifiers(before) if i > 0}
        if len(new_ids) == 1:
            return new_ids.pop()
        if new_ids:
            logger.warning(f"Ambiguous state diff for {intent.signature}: {sorted(new_ids)}")
        return None
