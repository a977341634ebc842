"""
Transaction flow models and types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from eth_utils import keccak


UNKNOWN_OUTCOME = 0  # sentinel: confirmed on-chain but identifier not determined
ZERO_ADDRESS = "0x" + "0" * 40


class IntentKind(str, Enum):
    """Which contract operation an intent performs."""
    ISSUE = "issue"                          # issuer mints a card directly
    CLAIM = "claim"                          # holder redeems a signed claim link
    CLAIM_COLLECTIBLE = "claim_collectible"  # holder claims from a collectible template


class FlowState(str, Enum):
    """Transaction flow lifecycle."""
    IDLE = "idle"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FAILED = "failed"


class ResolutionSource(str, Enum):
    """Which evidence tier produced an outcome identifier."""
    PRIMARY_EVENT = "primary_event"
    TRANSFER_EVENT = "transfer_event"
    STATE_DIFF = "state_diff"
    UNRESOLVED = "unresolved"


def _as_int(value: Any, default: int = 0) -> int:
    """Read an RPC quantity. Unreadable values fall back to `default`."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    try:
        if isinstance(value, str):
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class TransactionIntent:
    """A contract call to submit on behalf of a signer."""
    target_contract: str
    function_name: str
    arguments: Tuple[Any, ...]
    signer_account: str
    argument_types: Tuple[str, ...] = ()     # ABI types used to encode calldata
    kind: IntentKind = IntentKind.ISSUE
    subject: Optional[int] = None            # profile id the outcome belongs to
    template_id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "arguments", tuple(self.arguments))
        object.__setattr__(self, "argument_types", tuple(self.argument_types))
        if self.argument_types and len(self.argument_types) != len(self.arguments):
            raise ValueError(
                f"{self.function_name}: {len(self.arguments)} arguments "
                f"but {len(self.argument_types)} argument types"
            )

    @property
    def signature(self) -> str:
        return f"{self.function_name}({','.join(self.argument_types)})"

    @property
    def fingerprint(self) -> str:
        """Short stable digest identifying this exact call."""
        material = "|".join([
            self.target_contract.lower(),
            self.signature,
            repr(self.arguments),
            self.signer_account.lower(),
        ])
        return keccak(text=material).hex()[:16]

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.fingerprint,
            "kind": self.kind.value,
            "function": self.signature,
            "contract": self.target_contract,
            "signer": self.signer_account,
        }


@dataclass(frozen=True)
class RawLog:
    """An undecoded event log from a receipt."""
    address: str
    topics: Tuple[str, ...]
    data: str = "0x"

    @classmethod
    def from_rpc(cls, payload: Dict[str, Any]) -> "RawLog":
        """
        Normalise a log object from a receipt.

        A log whose topics are not all hex strings is kept opaque, with no
        topics, so it never matches an event schema.
        """
        address = payload.get("address")
        data = payload.get("data")
        topics = payload.get("topics") or ()
        if isinstance(topics, (list, tuple)) and all(isinstance(t, str) for t in topics):
            topics = tuple(t.lower() for t in topics)
        else:
            topics = ()
        return cls(
            address=address.lower() if isinstance(address, str) else "",
            topics=topics,
            data=data if isinstance(data, str) and data else "0x",
        )


@dataclass(frozen=True)
class ConfirmationReceipt:
    """Proof that a transaction was included in the ledger."""
    transaction_hash: str
    block_number: int
    logs: Tuple[RawLog, ...] = ()
    status: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, payload: Dict[str, Any]) -> "ConfirmationReceipt":
        """Normalise a receipt object. Log entries that are not objects are dropped."""
        tx_hash = payload.get("transactionHash")
        raw_logs = payload.get("logs")
        if not isinstance(raw_logs, (list, tuple)):
            raw_logs = ()
        return cls(
            transaction_hash=tx_hash if isinstance(tx_hash, str) else "",
            block_number=_as_int(payload.get("blockNumber")),
            logs=tuple(RawLog.from_rpc(log) for log in raw_logs if isinstance(log, dict)),
            status=_as_int(payload.get("status"), default=1),
        )


@dataclass(frozen=True)
class ResolutionResult:
    """Final answer of a transaction flow."""
    outcome_id: int
    transaction_hash: str
    source: ResolutionSource = ResolutionSource.UNRESOLVED

    @property
    def is_confirmed(self) -> bool:
        """False when the outcome is the unknown sentinel."""
        return self.outcome_id != UNKNOWN_OUTCOME

    @classmethod
    def unresolved(cls, transaction_hash: str) -> "ResolutionResult":
        return cls(UNKNOWN_OUTCOME, transaction_hash, ResolutionSource.UNRESOLVED)


@dataclass(frozen=True)
class StateQuery:
    """A read-only contract call returning a list of identifiers."""
    contract: str
    function_signature: str                  # e.g. "getCardsByProfile(uint256)"
    arguments: Tuple[Any, ...] = ()
    output_types: Tuple[str, ...] = ("uint256[]",)

    @property
    def argument_types(self) -> Tuple[str, ...]:
        inner = self.function_signature[self.function_signature.index("(") + 1:-1]
        return tuple(t for t in inner.split(",") if t)


@dataclass(frozen=True)
class StateSnapshot:
    """Identifiers owned by a subject at a point in time."""
    subject: Optional[int]
    identifiers: Tuple[int, ...]
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def of(cls, subject: Optional[int], identifiers: Iterable[int]) -> "StateSnapshot":
        return cls(subject=subject, identifiers=tuple(int(i) for i in identifiers))

    def new_identifiers(self, before: "StateSnapshot") -> Tuple[int, ...]:
        """Identifiers present now but absent from `before`, in ledger order."""
        seen = set(before.identifiers)
        return tuple(i for i in self.identifiers if i not in seen)
