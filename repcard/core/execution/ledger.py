"""
Ledger RPC service.

Sends contract calls, waits for their receipts and reads contract state
over EVM JSON-RPC.
"""

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_bytes

from ...config import settings
from ..recovery.errors import (
    ConfirmationTimeoutError,
    LedgerError,
    RPCError,
    TransactionRevertedError,
)
from .events import DecodedEvent, EventSchema
from .events import decode_log as decode_event_log
from .models import ConfirmationReceipt, RawLog, StateQuery, StateSnapshot, TransactionIntent

logger = logging.getLogger(__name__)


def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def encode_call(signature: str, argument_types: List[str], arguments: List[Any]) -> str:
    """Selector plus ABI-encoded arguments, as 0x-prefixed hex."""
    if len(argument_types) != len(arguments):
        raise ValueError(
            f"{signature}: {len(arguments)} arguments but {len(argument_types)} argument types"
        )
    payload = function_selector(signature)
    if argument_types:
        payload += encode(list(argument_types), list(arguments))
    return "0x" + payload.hex()


class LedgerClient(ABC):
    """What the transaction flow needs from the ledger."""

    @abstractmethod
    async def send_transaction(self, intent: TransactionIntent) -> str:
        """Ask the signer to sign and broadcast `intent`. Returns the transaction hash."""

    @abstractmethod
    async def wait_for_receipt(self, transaction_hash: str) -> ConfirmationReceipt:
        """Block until the transaction is mined."""

    @abstractmethod
    async def read_ledger_state(self, query: StateQuery) -> StateSnapshot:
        """Read identifiers from a view function."""

    def decode_log(self, raw_log: RawLog, schema: EventSchema) -> DecodedEvent:
        return decode_event_log(raw_log, schema)


class JsonRpcLedgerClient(LedgerClient):
    """
    LedgerClient over JSON-RPC 2.0.

    Signing is delegated to the endpoint through eth_sendTransaction, so the
    endpoint must hold (or front a wallet holding) the signer account. A
    wallet refusal comes back as an RPC error with code 4001.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        chain_id: Optional[int] = None,
        receipt_timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        self.rpc_url = rpc_url or settings.rpc_url
        self.chain_id = chain_id if chain_id is not None else settings.chain_id
        self.receipt_timeout_seconds = receipt_timeout_seconds or settings.receipt_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds or settings.receipt_poll_interval_seconds
        self._client = client or httpx.AsyncClient(timeout=settings.rpc_timeout_seconds)
        self._request_id = 0

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC call. Raises RPCError for error objects."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        response = await self._client.post(self.rpc_url, json=payload)
        response.raise_for_status()
        result = response.json()

        if result.get("error"):
            error = result["error"]
            if isinstance(error, dict):
                raise RPCError(
                    error.get("message") or f"{method} failed",
                    code=error.get("code"),
                    data=error.get("data"),
                )
            raise RPCError(str(error))

        return result.get("result")

    async def send_transaction(self, intent: TransactionIntent) -> str:
        data = encode_call(intent.signature, list(intent.argument_types), list(intent.arguments))
        tx = {
            "from": intent.signer_account,
            "to": intent.target_contract,
            "data": data,
            "chainId": hex(self.chain_id),
        }
        tx_hash = await self._rpc_call("eth_sendTransaction", [tx])
        if not isinstance(tx_hash, str) or not tx_hash:
            raise LedgerError(f"eth_sendTransaction returned no hash for {intent.signature}")

        logger.info(f"Transaction submitted: {tx_hash} ({intent.signature} on {intent.target_contract})")
        return tx_hash

    async def wait_for_receipt(self, transaction_hash: str) -> ConfirmationReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout_seconds

        while True:
            try:
                payload = await self._rpc_call("eth_getTransactionReceipt", [transaction_hash])
            except (httpx.HTTPError, RPCError, ValueError) as e:
                logger.warning(f"Error checking transaction status: {e}")
                payload = None

            if payload:
                receipt = self._parse_receipt(transaction_hash, payload)
                if not receipt.succeeded:
                    raise TransactionRevertedError(
                        f"Transaction {transaction_hash} reverted in block {receipt.block_number}",
                        tx_hash=transaction_hash,
                    )
                logger.info(
                    f"Transaction confirmed: {transaction_hash} "
                    f"(block {receipt.block_number}, {len(receipt.logs)} logs)"
                )
                return receipt

            if loop.time() >= deadline:
                raise ConfirmationTimeoutError(
                    f"Confirmation timeout after {self.receipt_timeout_seconds}s for {transaction_hash}",
                    tx_hash=transaction_hash,
                )
            await asyncio.sleep(self.poll_interval_seconds)

    def _parse_receipt(self, transaction_hash: str, payload: Any) -> ConfirmationReceipt:
        """
        Build a receipt from a mined transaction's payload.

        The transaction has landed at this point, so an unreadable payload
        yields a receipt without logs rather than an error that would resend.
        """
        try:
            receipt = ConfirmationReceipt.from_rpc(payload)
        except Exception as e:
            logger.warning(f"Unreadable receipt for {transaction_hash}, continuing without logs: {e}")
            return ConfirmationReceipt(transaction_hash=transaction_hash, block_number=0)

        if not receipt.transaction_hash:
            receipt = dataclasses.replace(receipt, transaction_hash=transaction_hash)
        return receipt

    async def read_ledger_state(self, query: StateQuery) -> StateSnapshot:
        data = encode_call(query.function_signature, list(query.argument_types), list(query.arguments))
        result = await self._rpc_call("eth_call", [{"to": query.contract, "data": data}, "latest"])

        try:
            decoded = decode(list(query.output_types), to_bytes(hexstr=result or "0x"))
        except (DecodingError, ValueError, TypeError) as e:
            raise LedgerError(f"Could not decode {query.function_signature} result: {e}") from e

        subject = query.arguments[0] if query.arguments else None
        return StateSnapshot.of(subject, decoded[0])

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "JsonRpcLedgerClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
