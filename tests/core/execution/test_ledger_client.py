"""
Tests for the JSON-RPC ledger client.

RPC traffic is served by httpx.MockTransport; no node is required.
"""

import json

import httpx
import pytest
from eth_abi import encode
from eth_utils import keccak

from repcard.core.execution.ledger import JsonRpcLedgerClient, encode_call
from repcard.core.execution.models import IntentKind, StateQuery, TransactionIntent
from repcard.core.execution.submitter import TransactionSubmitter
from repcard.core.recovery.errors import (
    ConfirmationTimeoutError,
    ErrorKind,
    RPCError,
    TransactionRevertedError,
    classify_error,
)
from repcard.core.recovery.strategies import RetryPolicy


RPC_URL = "http://rpc.test"
CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
ISSUER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
HOLDER = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
TX_HASH = "0x" + "ab" * 32


def make_intent():
    return TransactionIntent(
        target_contract=CONTRACT,
        function_name="issueDirect",
        arguments=(HOLDER, 7, "ipfs://card"),
        argument_types=("address", "uint256", "string"),
        signer_account=ISSUER,
        kind=IntentKind.ISSUE,
        subject=7,
    )


def receipt_payload(status="0x1", logs=None):
    return {
        "transactionHash": TX_HASH,
        "blockNumber": "0x1a",
        "status": status,
        "logs": logs or [],
    }


class RpcStub:
    """Answers JSON-RPC calls from a per-method queue of results or errors."""

    def __init__(self, **responses):
        self.responses = {method: list(values) for method, values in responses.items()}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)

        queue = self.responses[payload["method"]]
        value = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(value, httpx.Response):
            return value
        if isinstance(value, dict) and "error" in value:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": value["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": value})

    def client(self, **kwargs) -> JsonRpcLedgerClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        options = {"receipt_timeout_seconds": 0.5, "poll_interval_seconds": 0.01}
        options.update(kwargs)
        return JsonRpcLedgerClient(rpc_url=RPC_URL, client=http, chain_id=1287, **options)


# =============================================================================
# Calldata Tests
# =============================================================================

class TestEncodeCall:
    """Tests for calldata encoding."""

    def test_selector_and_arguments(self):
        data = encode_call("issueDirect(address,uint256,string)", ["address", "uint256", "string"], [HOLDER, 7, "x"])

        selector = keccak(text="issueDirect(address,uint256,string)")[:4].hex()
        assert data.startswith("0x" + selector)
        assert data[10:] == encode(["address", "uint256", "string"], [HOLDER, 7, "x"]).hex()

    def test_no_arguments(self):
        assert encode_call("totalSupply()", [], []) == "0x" + keccak(text="totalSupply()")[:4].hex()

    def test_mismatched_arguments(self):
        with pytest.raises(ValueError):
            encode_call("f(uint256)", ["uint256"], [])


# =============================================================================
# Send Tests
# =============================================================================

class TestSendTransaction:
    """Tests for send_transaction."""

    @pytest.mark.asyncio
    async def test_sends_from_signer(self):
        stub = RpcStub(eth_sendTransaction=[TX_HASH])
        intent = make_intent()

        async with stub.client() as ledger:
            tx_hash = await ledger.send_transaction(intent)

        assert tx_hash == TX_HASH
        request = stub.requests[0]
        assert request["method"] == "eth_sendTransaction"
        tx = request["params"][0]
        assert tx["from"] == ISSUER
        assert tx["to"] == CONTRACT
        assert tx["chainId"] == hex(1287)
        assert tx["data"] == encode_call(intent.signature, list(intent.argument_types), list(intent.arguments))

    @pytest.mark.asyncio
    async def test_wallet_rejection_is_rpc_error(self):
        stub = RpcStub(eth_sendTransaction=[{"error": {"code": 4001, "message": "User rejected the request."}}])

        async with stub.client() as ledger:
            with pytest.raises(RPCError) as exc_info:
                await ledger.send_transaction(make_intent())

        assert exc_info.value.code == 4001
        assert classify_error(exc_info.value).kind == ErrorKind.USER_CANCELLED

    @pytest.mark.asyncio
    async def test_http_failure_propagates(self):
        stub = RpcStub(eth_sendTransaction=[httpx.Response(502, text="bad gateway")])

        async with stub.client() as ledger:
            with pytest.raises(httpx.HTTPStatusError) as exc_info:
                await ledger.send_transaction(make_intent())

        assert classify_error(exc_info.value).kind == ErrorKind.NETWORK_OR_TIMEOUT


# =============================================================================
# Receipt Tests
# =============================================================================

class TestWaitForReceipt:
    """Tests for receipt polling."""

    @pytest.mark.asyncio
    async def test_polls_until_mined(self):
        log = {
            "address": CONTRACT.upper().replace("0X", "0x"),
            "topics": ["0xAA", "0xBB"],
            "data": "0x",
        }
        stub = RpcStub(eth_getTransactionReceipt=[None, None, receipt_payload(logs=[log])])

        async with stub.client() as ledger:
            receipt = await ledger.wait_for_receipt(TX_HASH)

        assert receipt.transaction_hash == TX_HASH
        assert receipt.block_number == 26
        assert receipt.succeeded
        assert receipt.logs[0].address == CONTRACT
        assert receipt.logs[0].topics == ("0xaa", "0xbb")
        assert len(stub.requests) == 3

    @pytest.mark.asyncio
    async def test_transient_poll_errors_tolerated(self):
        stub = RpcStub(
            eth_getTransactionReceipt=[
                {"error": {"code": -32000, "message": "header not found"}},
                httpx.Response(503),
                receipt_payload(),
            ]
        )

        async with stub.client() as ledger:
            receipt = await ledger.wait_for_receipt(TX_HASH)

        assert receipt.block_number == 26

    @pytest.mark.asyncio
    async def test_malformed_logs_kept_opaque(self):
        logs = [
            {"address": CONTRACT, "topics": [None], "data": None},
            "not-a-log",
            {"address": 42, "topics": "0xaa"},
            {"address": CONTRACT, "topics": ["0xAA"], "data": "0x01"},
        ]
        stub = RpcStub(eth_getTransactionReceipt=[receipt_payload(logs=logs)])

        async with stub.client() as ledger:
            receipt = await ledger.wait_for_receipt(TX_HASH)

        assert receipt.succeeded
        assert len(receipt.logs) == 3
        assert receipt.logs[0].topics == ()
        assert receipt.logs[0].data == "0x"
        assert receipt.logs[1].address == ""
        assert receipt.logs[1].topics == ()
        assert receipt.logs[2].topics == ("0xaa",)

    @pytest.mark.asyncio
    async def test_unreadable_receipt_fields_default(self):
        payload = {"transactionHash": None, "blockNumber": "latest", "status": "0x1", "logs": 7}
        stub = RpcStub(eth_getTransactionReceipt=[payload])

        async with stub.client() as ledger:
            receipt = await ledger.wait_for_receipt(TX_HASH)

        assert receipt.transaction_hash == TX_HASH
        assert receipt.block_number == 0
        assert receipt.logs == ()

    @pytest.mark.asyncio
    async def test_mined_receipt_with_bad_log_is_not_resent(self):
        stub = RpcStub(
            eth_sendTransaction=[TX_HASH],
            eth_getTransactionReceipt=[receipt_payload(logs=[{"topics": [None]}])],
        )
        policy = RetryPolicy(max_retries=2, initial_delay_seconds=0)

        async with stub.client() as ledger:
            receipt = await TransactionSubmitter(ledger).submit(make_intent(), policy)

        assert receipt.transaction_hash == TX_HASH
        sends = [r for r in stub.requests if r["method"] == "eth_sendTransaction"]
        assert len(sends) == 1

    @pytest.mark.asyncio
    async def test_reverted_receipt(self):
        stub = RpcStub(eth_getTransactionReceipt=[receipt_payload(status="0x0")])

        async with stub.client() as ledger:
            with pytest.raises(TransactionRevertedError) as exc_info:
                await ledger.wait_for_receipt(TX_HASH)

        assert exc_info.value.tx_hash == TX_HASH
        assert classify_error(exc_info.value).retryable is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        stub = RpcStub(eth_getTransactionReceipt=[None])

        async with stub.client(receipt_timeout_seconds=0.05) as ledger:
            with pytest.raises(ConfirmationTimeoutError) as exc_info:
                await ledger.wait_for_receipt(TX_HASH)

        assert exc_info.value.tx_hash == TX_HASH
        assert classify_error(exc_info.value).retryable is True


# =============================================================================
# State Read Tests
# =============================================================================

class TestReadLedgerState:
    """Tests for read_ledger_state."""

    @pytest.mark.asyncio
    async def test_reads_identifier_list(self):
        result = "0x" + encode(["uint256[]"], [[3, 9, 12]]).hex()
        stub = RpcStub(eth_call=[result])
        query = StateQuery(contract=CONTRACT, function_signature="getCardsByProfile(uint256)", arguments=(7,))

        async with stub.client() as ledger:
            snapshot = await ledger.read_ledger_state(query)

        assert snapshot.subject == 7
        assert snapshot.identifiers == (3, 9, 12)
        call, block = stub.requests[0]["params"]
        assert call == {"to": CONTRACT, "data": encode_call("getCardsByProfile(uint256)", ["uint256"], [7])}
        assert block == "latest"

    @pytest.mark.asyncio
    async def test_undecodable_result(self):
        from repcard.core.recovery.errors import LedgerError

        stub = RpcStub(eth_call=["0x"])
        query = StateQuery(contract=CONTRACT, function_signature="getCardsByProfile(uint256)", arguments=(7,))

        async with stub.client() as ledger:
            with pytest.raises(LedgerError):
                await ledger.read_ledger_state(query)

    @pytest.mark.asyncio
    async def test_close(self):
        stub = RpcStub(eth_call=["0x"])
        ledger = stub.client()

        await ledger.close()

        assert ledger._client.is_closed
