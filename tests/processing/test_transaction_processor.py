import asyncio
import json
from dataclasses import replace
from typing import Any

import pytest
from eth_abi import encode
from eth_utils.abi import event_signature_to_log_topic
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from nethermind.batchscope.abi.store import AbiStore
from nethermind.batchscope.database.models.indexer import SubTransaction, Transaction, TransactionLog
from nethermind.batchscope.database.writers.row_store import SqlRowStore
from nethermind.batchscope.decoding.log_decoder import TRANSFER_TOPIC
from nethermind.batchscope.exceptions import PersistenceConflict
from nethermind.batchscope.processing.transaction_processor import TransactionProcessor, flatten_sub_calls
from nethermind.batchscope.types.decoding import DecodedCall, Operation, TransactionContext
from nethermind.batchscope.types.network import SupportedChain
from tests.resources.abi import VAULT_ABI
from tests.utils import (
    address_topic,
    encode_call,
    encode_exec_transaction,
    encode_multisend,
    pack_entry,
    uint_word,
)

MULTISEND_CALL_ONLY = "0x40A2aCCbd92BCA938b02010E17A5b8929b49130D"
DEPOSIT_TOPIC = event_signature_to_log_topic("Deposit(address,uint256,uint256)")


def _rpc_log(address: str, topics: list[bytes], data: bytes, log_index: int) -> dict[str, Any]:
    return {
        "address": address.lower(),
        "topics": ["0x" + topic.hex() for topic in topics],
        "data": "0x" + data.hex(),
        "logIndex": hex(log_index),
    }


@pytest.fixture(name="safe_batch")
def fixture_safe_batch(random_address, random_hash, chain_client, abi_source):
    """Safe transaction depositing into a vault and sending a token transfer in one multiSend"""
    safe, vault, token, receiver, owner = (random_address() for _ in range(5))
    abi_source.add(vault, VAULT_ABI)

    deposit = encode_call("deposit(uint256,address)", ["uint256", "address"], [100, safe])
    transfer = encode_call("transfer(address,uint256)", ["address", "uint256"], [receiver, 25])
    inner = encode_multisend(pack_entry(0, vault, 100, deposit), pack_entry(0, token, 0, transfer))

    tx_hash = random_hash()
    chain_client.receipts[tx_hash] = {
        "transactionHash": tx_hash,
        "status": "0x1",
        "logs": [
            _rpc_log(vault, [DEPOSIT_TOPIC, address_topic(safe)], encode(["uint256", "uint256"], [100, 98]), 4),
            _rpc_log(token, [TRANSFER_TOPIC, address_topic(safe), address_topic(receiver)], uint_word(25), 5),
        ],
    }

    context = TransactionContext(
        hash=tx_hash,
        chain=SupportedChain.gnosis,
        block_number=30_000_000,
        from_address=owner,
        to_address=safe,
        value=0,
        input=encode_exec_transaction(MULTISEND_CALL_ONLY, 0, inner, operation=1),
        timestamp=1_700_000_000,
    )
    return context, {"safe": safe, "vault": vault, "token": token, "receiver": receiver}


def _count(db_engine, model) -> int:
    with Session(db_engine) as session:
        return session.scalar(select(func.count()).select_from(model))


async def test_process_safe_batch(safe_batch, chain_client, abi_source, db_engine):
    context, addresses = safe_batch
    processor = TransactionProcessor(chain_client, AbiStore(abi_source, chain_client), SqlRowStore(db_engine))

    result = await processor.process_transaction(context.hash, context)

    assert result.status == "complete"
    assert result.is_multisend
    assert result.decoded_function.function_name == "execTransaction"

    batch = result.multisend_batch
    assert batch.summary.sub_transaction_count == 2
    assert batch.summary.total_value == 100
    assert [call.function_name for call in batch.sub_calls] == ["deposit", "transfer"]
    assert batch.sub_calls[1].token_transfer.to_address == addresses["receiver"]

    assert [event.name for event in result.logs] == ["Deposit", "Transfer"]
    assert result.logs[0].args["shares"] == 98

    with Session(db_engine) as session:
        transaction = session.get(Transaction, context.hash)
        assert transaction.is_multisend
        assert transaction.function_name == "execTransaction"
        assert transaction.multisend_summary["sub_transaction_count"] == "2"
        assert transaction.log_count == 2
        assert transaction.status == "complete"
        assert transaction.to_address == addresses["safe"].lower()

        sub_transactions = session.scalars(select(SubTransaction).order_by(SubTransaction.sub_index)).all()
        assert [sub.function_name for sub in sub_transactions] == ["deposit", "transfer"]
        assert sub_transactions[0].to_address == addresses["vault"].lower()
        assert sub_transactions[0].decoded_args == {"assets": "100", "receiver": addresses["safe"]}
        assert sub_transactions[1].token_transfer["standard"] == "ERC20"

        logs = session.scalars(select(TransactionLog).order_by(TransactionLog.log_index)).all()
        assert [log.log_index for log in logs] == [4, 5]
        assert [log.event_name for log in logs] == ["Deposit", "Transfer"]


async def test_reprocessing_overwrites_rows(safe_batch, chain_client, abi_source, db_engine):
    context, _ = safe_batch
    processor = TransactionProcessor(chain_client, AbiStore(abi_source, chain_client), SqlRowStore(db_engine))

    await processor.process_transaction(context.hash, context)
    await processor.process_transaction(context.hash, context)

    assert _count(db_engine, Transaction) == 1
    assert _count(db_engine, TransactionLog) == 2
    assert _count(db_engine, SubTransaction) == 2


async def test_decode_timeout_is_stored(safe_batch, chain_client, abi_source, db_engine):
    context, _ = safe_batch
    abi_source.delay = 1.0
    processor = TransactionProcessor(
        chain_client, AbiStore(abi_source, chain_client), SqlRowStore(db_engine), timeout=0.05
    )

    result = await processor.process_transaction(context.hash, context)

    assert result.status == "timeout"
    assert result.logs == []
    assert result.decoded_function is None
    assert result.multisend_batch is None

    with Session(db_engine) as session:
        assert session.get(Transaction, context.hash).status == "timeout"
    assert _count(db_engine, TransactionLog) == 0


async def test_receipt_failure_returns_none(safe_batch, chain_client, abi_source, db_engine):
    context, _ = safe_batch
    chain_client.receipt_error = True
    processor = TransactionProcessor(chain_client, AbiStore(abi_source), SqlRowStore(db_engine))

    assert await processor.process_transaction(context.hash, context) is None
    assert _count(db_engine, Transaction) == 0


async def test_missing_receipt_returns_none(chain_client, abi_source, random_address, random_hash):
    context = TransactionContext(
        hash=random_hash(),
        chain=SupportedChain.mainnet,
        block_number=1,
        from_address=random_address(),
        to_address=random_address(),
        value=0,
        input=b"",
    )
    processor = TransactionProcessor(chain_client, AbiStore(abi_source))

    assert await processor.process_transaction(context.hash, context) is None


async def test_plain_transfer_and_contract_creation(chain_client, abi_source, random_address, random_hash):
    transfer = TransactionContext(
        hash=random_hash(),
        chain=SupportedChain.base,
        block_number=1,
        from_address=random_address(),
        to_address=random_address(),
        value=10**18,
        input=b"",
    )
    creation = TransactionContext(
        hash=random_hash(),
        chain=SupportedChain.base,
        block_number=1,
        from_address=random_address(),
        to_address=None,
        value=0,
        input=bytes.fromhex("6080604052"),
    )
    for context in (transfer, creation):
        chain_client.receipts[context.hash] = {"logs": []}

    processor = TransactionProcessor(chain_client, AbiStore(abi_source))
    transfer_result, creation_result = await processor.process_transactions([transfer, creation], max_concurrency=1)

    assert transfer_result.decoded_function.is_value_transfer
    assert not transfer_result.is_multisend
    assert transfer_result.multisend_batch is None

    assert creation_result.decoded_function is None
    assert creation_result.hash == creation.hash
    assert abi_source.fetches == []


async def test_process_transactions_preserves_order(safe_batch, chain_client, abi_source, random_hash):
    context, _ = safe_batch
    contexts = []
    for _ in range(4):
        tx_hash = random_hash()
        chain_client.receipts[tx_hash] = chain_client.receipts[context.hash]
        contexts.append(
            TransactionContext(
                hash=tx_hash,
                chain=context.chain,
                block_number=context.block_number,
                from_address=context.from_address,
                to_address=context.to_address,
                value=context.value,
                input=context.input,
            )
        )

    processor = TransactionProcessor(chain_client, AbiStore(abi_source, chain_client))
    results = await processor.process_transactions(contexts, max_concurrency=2)

    assert [result.hash for result in results] == [ctx.hash for ctx in contexts]
    assert all(result.is_multisend for result in results)


class FailingBatchRowStore:
    """Row store rejecting batch log inserts, accepting everything else"""

    def __init__(self):
        self.rows: dict[str, list[dict[str, Any]]] = {}

    def upsert(self, table: str, key: dict[str, Any], fields: dict[str, Any]) -> None:
        self.rows.setdefault(table, []).append({**key, **fields})

    def upsert_many(self, table: str, rows: list[dict[str, Any]]) -> None:
        if table == "transaction_logs":
            raise PersistenceConflict("batch insert rejected")
        self.rows.setdefault(table, []).extend(rows)


async def test_failed_log_batch_falls_back_to_single_rows(safe_batch, chain_client, abi_source):
    context, _ = safe_batch
    row_store = FailingBatchRowStore()
    processor = TransactionProcessor(chain_client, AbiStore(abi_source, chain_client), row_store)

    result = await processor.process_transaction(context.hash, context)

    assert result is not None
    assert len(row_store.rows["transactions"]) == 1
    assert [row["log_index"] for row in row_store.rows["transaction_logs"]] == [4, 5]
    assert len(row_store.rows["sub_transactions"]) == 2


def test_flatten_sub_calls(random_address):
    def _call(*sub_calls: DecodedCall) -> DecodedCall:
        return DecodedCall(
            to=random_address(), value=0, operation=Operation.Call, raw_data=b"", sub_calls=list(sub_calls)
        )

    tree = [_call(_call(), _call(_call())), _call()]

    flattened = [(index, parent, depth) for index, parent, depth, _ in flatten_sub_calls(tree)]

    assert flattened == [(0, None, 0), (1, 0, 1), (2, 0, 1), (3, 2, 2), (4, None, 0)]


class MalformedVaultSource:
    """AbiSource whose vault lookup fails with a body that is not valid JSON"""

    def __init__(self, vault: str):
        self.vault = vault.lower()

    async def fetch_abi(self, address: str, chain: SupportedChain):
        if address.lower() == self.vault:
            raise json.JSONDecodeError("Expecting value", '{"ok": true, "abi": [', 21)
        return None


async def test_failed_abi_lookup_keeps_batch(safe_batch, chain_client):
    context, addresses = safe_batch
    processor = TransactionProcessor(chain_client, AbiStore(MalformedVaultSource(addresses["vault"]), chain_client))

    result = await processor.process_transaction(context.hash, context)

    assert result.is_multisend
    batch = result.multisend_batch
    assert batch.summary.sub_transaction_count == 2
    assert batch.sub_calls[0].function_name is None
    assert batch.sub_calls[1].function_name == "transfer"
    assert [event.name for event in result.logs] == [None, "Transfer"]


async def test_malformed_receipt_log_is_kept_undecoded(safe_batch, chain_client, abi_source, db_engine):
    context, addresses = safe_batch
    receipt = chain_client.receipts[context.hash]
    receipt["logs"][0]["topics"] = ["0xzz"]
    receipt["logs"][0]["data"] = "0xnothex"

    processor = TransactionProcessor(chain_client, AbiStore(abi_source, chain_client), SqlRowStore(db_engine))
    result = await processor.process_transaction(context.hash, context)

    assert result.status == "complete"
    assert [event.name for event in result.logs] == [None, "Transfer"]
    assert result.logs[0].contract_address == addresses["vault"].lower()
    assert result.logs[0].log_index == 4
    assert result.logs[0].raw.topics == []
    assert result.logs[0].raw.data == b""

    with Session(db_engine) as session:
        logs = session.scalars(select(TransactionLog).order_by(TransactionLog.log_index)).all()
        assert [log.log_index for log in logs] == [4, 5]


async def test_log_fallback_keeps_fixed_layout_decodes(safe_batch, chain_client, abi_source, monkeypatch):
    context, _ = safe_batch
    store = AbiStore(abi_source, chain_client)

    async def _failing_resolve_many(*args, **kwargs):
        raise RuntimeError("cache backend crashed")

    monkeypatch.setattr(store, "resolve_many", _failing_resolve_many)
    result = await TransactionProcessor(chain_client, store).process_transaction(context.hash, context)

    assert [event.name for event in result.logs] == [None, "Transfer"]
    assert result.logs[1].args["value"] == 25


async def test_slow_receipt_returns_none(safe_batch, chain_client, abi_source, db_engine):
    context, _ = safe_batch
    chain_client.receipt_delay = 1.0
    processor = TransactionProcessor(
        chain_client, AbiStore(abi_source, chain_client), SqlRowStore(db_engine), timeout=0.05
    )

    assert await processor.process_transaction(context.hash, context) is None
    assert _count(db_engine, Transaction) == 0


class ConcurrencyTrackingClient:
    """Wraps a chain client, recording how many receipt fetches overlap"""

    def __init__(self, client):
        self.client = client
        self.in_flight = 0
        self.peak = 0

    def __getattr__(self, name):
        return getattr(self.client, name)

    async def get_transaction_receipt(self, transaction_hash: str):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await self.client.get_transaction_receipt(transaction_hash)
        finally:
            self.in_flight -= 1


async def test_processor_concurrency_limit(safe_batch, chain_client, abi_source, random_hash):
    context, _ = safe_batch
    contexts = []
    for _ in range(4):
        tx_hash = random_hash()
        chain_client.receipts[tx_hash] = chain_client.receipts[context.hash]
        contexts.append(replace(context, hash=tx_hash))

    tracking_client = ConcurrencyTrackingClient(chain_client)
    processor = TransactionProcessor(tracking_client, AbiStore(abi_source, chain_client), max_concurrency=1)

    results = await processor.process_transactions(contexts)

    assert all(result is not None for result in results)
    assert tracking_client.peak == 1


async def test_process_transactions_retries_unresolved_contracts(safe_batch, chain_client, abi_source):
    context, addresses = safe_batch
    abi_source.unavailable = True
    processor = TransactionProcessor(chain_client, AbiStore(abi_source, chain_client))

    (first,) = await processor.process_transactions([context])
    abi_source.unavailable = False
    (second,) = await processor.process_transactions([context])

    assert first.multisend_batch.sub_calls[0].function_name is None
    assert second.multisend_batch.sub_calls[0].function_name == "deposit"
    assert addresses["vault"].lower() in abi_source.fetches
