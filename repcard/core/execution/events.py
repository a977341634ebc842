"""
Event schemas and log decoding for the reputation card contracts.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_bytes

from ..recovery.errors import LogDecodeError
from .models import IntentKind, RawLog


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSchema:
    """Name and ordered inputs of a contract event."""
    name: str
    inputs: Tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return "0x" + keccak(text=self.signature).hex()

    @property
    def indexed_inputs(self) -> Tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if i.indexed)

    @property
    def data_inputs(self) -> Tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if not i.indexed)


@dataclass(frozen=True)
class DecodedEvent:
    name: str
    address: str
    args: Dict[str, Any]


CARD_ISSUED = EventSchema(
    "CardIssued",
    (
        EventInput("cardId", "uint256", indexed=True),
        EventInput("profileId", "uint256", indexed=True),
        EventInput("issuer", "address", indexed=True),
        EventInput("categoryHash", "bytes32"),
        EventInput("value", "uint256"),
        EventInput("metadataURI", "string"),
    ),
)

COLLECTIBLE_CLAIMED = EventSchema(
    "CollectibleClaimed",
    (
        EventInput("templateId", "uint256", indexed=True),
        EventInput("cardId", "uint256", indexed=True),
        EventInput("claimer", "address", indexed=True),
        EventInput("timestamp", "uint256"),
    ),
)

TRANSFER = EventSchema(
    "Transfer",
    (
        EventInput("from", "address", indexed=True),
        EventInput("to", "address", indexed=True),
        EventInput("tokenId", "uint256", indexed=True),
    ),
)

# Indexed dynamic values are stored as their hash and cannot be decoded
_HASHED_WHEN_INDEXED = ("string", "bytes")


def _decode_topic(abi_type: str, topic: str) -> Any:
    if abi_type in _HASHED_WHEN_INDEXED or abi_type.endswith("]"):
        return topic
    (value,) = decode([abi_type], to_bytes(hexstr=topic))
    return value


def decode_log(raw_log: RawLog, schema: EventSchema) -> DecodedEvent:
    """Decode a raw log against `schema`. Raises LogDecodeError on any mismatch."""
    if not raw_log.topics or raw_log.topics[0].lower() != schema.topic:
        raise LogDecodeError(f"log is not a {schema.name} event")

    indexed = schema.indexed_inputs
    if len(raw_log.topics) - 1 != len(indexed):
        raise LogDecodeError(
            f"{schema.name} expects {len(indexed)} indexed topics, got {len(raw_log.topics) - 1}"
        )

    args: Dict[str, Any] = {}
    try:
        for event_input, topic in zip(indexed, raw_log.topics[1:]):
            args[event_input.name] = _decode_topic(event_input.type, topic)

        data_inputs = schema.data_inputs
        if data_inputs:
            values = decode([i.type for i in data_inputs], to_bytes(hexstr=raw_log.data or "0x"))
            args.update(zip((i.name for i in data_inputs), values))
    except (DecodingError, ValueError, TypeError) as e:
        raise LogDecodeError(f"malformed {schema.name} log: {e}") from e

    return DecodedEvent(name=schema.name, address=raw_log.address, args=args)


def transfer_token_id(raw_log: RawLog) -> Optional[Tuple[str, int]]:
    """
    Read (from, tokenId) from an ERC-721 Transfer log without full decoding.

    Returns None when the log is not a four-topic Transfer.
    """
    topics = raw_log.topics
    if len(topics) != 4 or topics[0].lower() != TRANSFER.topic:
        return None
    try:
        sender = "0x" + topics[1][-40:].lower()
        token_id = int(topics[3], 16)
    except (TypeError, ValueError):
        return None
    return sender, token_id


@dataclass(frozen=True)
class OutcomeLocator:
    """Where a confirmed intent's outcome identifier can be found."""
    event: EventSchema
    id_field: str
    snapshot_signature: str = "getCardsByProfile(uint256)"


OUTCOME_LOCATORS: Dict[IntentKind, OutcomeLocator] = {
    IntentKind.ISSUE: OutcomeLocator(CARD_ISSUED, "cardId"),
    IntentKind.CLAIM: OutcomeLocator(CARD_ISSUED, "cardId"),
    IntentKind.CLAIM_COLLECTIBLE: OutcomeLocator(COLLECTIBLE_CLAIMED, "cardId"),
}


def outcome_locator_for(kind: IntentKind) -> OutcomeLocator:
    return OUTCOME_LOCATORS[IntentKind(kind)]
