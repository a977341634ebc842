"""
Tests for outcome resolution.
"""

import pytest
from eth_abi import encode

from repcard.core.execution.events import CARD_ISSUED, COLLECTIBLE_CLAIMED, TRANSFER
from repcard.core.execution.ledger import LedgerClient
from repcard.core.execution.models import (
    UNKNOWN_OUTCOME,
    ZERO_ADDRESS,
    ConfirmationReceipt,
    IntentKind,
    RawLog,
    ResolutionSource,
    StateSnapshot,
    TransactionIntent,
)
from repcard.core.execution.resolver import OutcomeResolver
from repcard.core.recovery.errors import LedgerError


CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
OTHER_CONTRACT = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
ISSUER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
HOLDER = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
TX_HASH = "0x" + "cd" * 32


def topic(abi_type, value):
    return "0x" + encode([abi_type], [value]).hex()


def card_issued_log(card_id, address=CONTRACT, data=None):
    if data is None:
        data = "0x" + encode(["bytes32", "uint256", "string"], [b"\x00" * 32, 1, "ipfs://card"]).hex()
    return RawLog(
        address=address,
        topics=(CARD_ISSUED.topic, topic("uint256", card_id), topic("uint256", 7), topic("address", ISSUER)),
        data=data,
    )


def transfer_log(sender, token_id):
    return RawLog(
        address=CONTRACT,
        topics=(TRANSFER.topic, topic("address", sender), topic("address", HOLDER), topic("uint256", token_id)),
        data="0x",
    )


def receipt_with(*logs):
    return ConfirmationReceipt(transaction_hash=TX_HASH, block_number=12, logs=tuple(logs))


def make_intent(kind=IntentKind.ISSUE, subject=7):
    return TransactionIntent(
        target_contract=CONTRACT,
        function_name="issueDirect",
        arguments=(HOLDER, 7, "ipfs://card"),
        argument_types=("address", "uint256", "string"),
        signer_account=ISSUER,
        kind=kind,
        subject=subject,
    )


class InstrumentedLedger(LedgerClient):
    """Records every state read; optionally serves a canned snapshot."""

    def __init__(self, after=None, read_error=None):
        self.after = after
        self.read_error = read_error
        self.reads = []

    async def send_transaction(self, intent):
        raise AssertionError("resolver must not send")

    async def wait_for_receipt(self, transaction_hash):
        raise AssertionError("resolver must not wait for receipts")

    async def read_ledger_state(self, query):
        self.reads.append(query)
        if self.read_error is not None:
            raise self.read_error
        if self.after is None:
            raise AssertionError("ledger state was queried")
        return self.after


BEFORE = StateSnapshot.of(7, [1, 2])


# =============================================================================
# Primary Event Tests
# =============================================================================

class TestPrimaryEvent:
    """Tier one: the expected event from the target contract."""

    @pytest.mark.asyncio
    async def test_primary_event_never_reads_state(self):
        ledger = InstrumentedLedger()

        result = await OutcomeResolver(ledger).resolve(make_intent(), receipt_with(card_issued_log(42)), BEFORE)

        assert result.outcome_id == 42
        assert result.transaction_hash == TX_HASH
        assert result.source == ResolutionSource.PRIMARY_EVENT
        assert ledger.reads == []

    @pytest.mark.asyncio
    async def test_collectible_claim(self):
        raw = RawLog(
            address=CONTRACT,
            topics=(
                COLLECTIBLE_CLAIMED.topic,
                topic("uint256", 3),
                topic("uint256", 77),
                topic("address", HOLDER),
            ),
            data="0x" + encode(["uint256"], [1700000000]).hex(),
        )

        result = await OutcomeResolver(InstrumentedLedger()).resolve(
            make_intent(IntentKind.CLAIM_COLLECTIBLE), receipt_with(raw)
        )

        assert result.outcome_id == 77

    @pytest.mark.asyncio
    async def test_event_from_other_contract_ignored(self):
        ledger = InstrumentedLedger()
        receipt = receipt_with(card_issued_log(42, address=OTHER_CONTRACT), transfer_log(ZERO_ADDRESS, 5))

        result = await OutcomeResolver(ledger).resolve(make_intent(), receipt)

        assert result.outcome_id == 5
        assert result.source == ResolutionSource.TRANSFER_EVENT

    @pytest.mark.asyncio
    async def test_zero_identifier_ignored(self):
        receipt = receipt_with(card_issued_log(0), transfer_log(ZERO_ADDRESS, 6))

        result = await OutcomeResolver(InstrumentedLedger()).resolve(make_intent(), receipt)

        assert result.outcome_id == 6

    @pytest.mark.asyncio
    async def test_malformed_primary_log_does_not_raise(self):
        receipt = receipt_with(card_issued_log(42, data="0xdead"))

        result = await OutcomeResolver(InstrumentedLedger()).resolve(make_intent(), receipt)

        assert result.outcome_id == UNKNOWN_OUTCOME
        assert result.is_confirmed is False

    @pytest.mark.asyncio
    async def test_decoder_error_treated_as_no_match(self):
        class MismatchedLedger(InstrumentedLedger):
            def decode_log(self, raw_log, schema):
                raise ValueError("schema mismatch")

        receipt = receipt_with(card_issued_log(42), transfer_log(ZERO_ADDRESS, 42))

        result = await OutcomeResolver(MismatchedLedger()).resolve(make_intent(), receipt)

        assert result.outcome_id == 42
        assert result.source == ResolutionSource.TRANSFER_EVENT


# =============================================================================
# Transfer Tests
# =============================================================================

class TestTransferFallback:
    """Tier two: ERC-721 Transfer logs."""

    @pytest.mark.asyncio
    async def test_transfer_only(self):
        ledger = InstrumentedLedger()

        result = await OutcomeResolver(ledger).resolve(make_intent(), receipt_with(transfer_log(ZERO_ADDRESS, 11)))

        assert result.outcome_id == 11
        assert result.source == ResolutionSource.TRANSFER_EVENT
        assert ledger.reads == []

    @pytest.mark.asyncio
    async def test_mint_preferred(self):
        receipt = receipt_with(transfer_log(ISSUER, 5), transfer_log(ZERO_ADDRESS, 8))

        result = await OutcomeResolver(InstrumentedLedger()).resolve(make_intent(), receipt)

        assert result.outcome_id == 8

    @pytest.mark.asyncio
    async def test_ambiguous_transfers_fall_through(self):
        receipt = receipt_with(transfer_log(ZERO_ADDRESS, 5), transfer_log(ZERO_ADDRESS, 8))

        result = await OutcomeResolver(InstrumentedLedger()).resolve(make_intent(), receipt)

        assert result.outcome_id == UNKNOWN_OUTCOME
        assert result.source == ResolutionSource.UNRESOLVED


# =============================================================================
# State Diff Tests
# =============================================================================

class TestStateDiffFallback:
    """Tier three: before/after snapshot difference."""

    @pytest.mark.asyncio
    async def test_single_new_identifier(self):
        ledger = InstrumentedLedger(after=StateSnapshot.of(7, [1, 2, 3]))

        result = await OutcomeResolver(ledger).resolve(make_intent(), receipt_with(), BEFORE)

        assert result.outcome_id == 3
        assert result.source == ResolutionSource.STATE_DIFF
        query = ledger.reads[0]
        assert query.contract == CONTRACT
        assert query.function_signature == "getCardsByProfile(uint256)"
        assert query.arguments == (7,)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("after", [[1, 2], [1, 2, 3, 4], [2]])
    async def test_ambiguous_diff_is_sentinel(self, after):
        ledger = InstrumentedLedger(after=StateSnapshot.of(7, after))

        result = await OutcomeResolver(ledger).resolve(make_intent(), receipt_with(), BEFORE)

        assert result.outcome_id == UNKNOWN_OUTCOME
        assert result.transaction_hash == TX_HASH
        assert result.is_confirmed is False

    @pytest.mark.asyncio
    async def test_reader_failure_is_sentinel(self):
        ledger = InstrumentedLedger(read_error=LedgerError("node down"))

        result = await OutcomeResolver(ledger).resolve(make_intent(), receipt_with(), BEFORE)

        assert result.outcome_id == UNKNOWN_OUTCOME
        assert len(ledger.reads) == 1

    @pytest.mark.asyncio
    async def test_no_before_snapshot_skips_diff(self):
        ledger = InstrumentedLedger(after=StateSnapshot.of(7, [1, 2, 3]))

        result = await OutcomeResolver(ledger).resolve(make_intent(), receipt_with())

        assert result.outcome_id == UNKNOWN_OUTCOME
        assert ledger.reads == []


class TestSnapshot:
    """Tests for OutcomeResolver.snapshot."""

    @pytest.mark.asyncio
    async def test_without_subject(self):
        ledger = InstrumentedLedger()

        assert await OutcomeResolver(ledger).snapshot(make_intent(subject=None)) is None
        assert ledger.reads == []

    @pytest.mark.asyncio
    async def test_with_subject(self):
        after = StateSnapshot.of(7, [4])
        ledger = InstrumentedLedger(after=after)

        assert await OutcomeResolver(ledger).snapshot(make_intent()) is after
