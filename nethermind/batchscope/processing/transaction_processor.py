import asyncio
import logging
import traceback
from dataclasses import asdict
from typing import Any, Iterator, Sequence

from nethermind.batchscope.abi.store import AbiStore
from nethermind.batchscope.database.writers.row_store import RowStore
from nethermind.batchscope.decoding.batch_decoder import DEFAULT_MAX_DEPTH, BatchDecoder
from nethermind.batchscope.decoding.call_decoder import CallDecoder
from nethermind.batchscope.decoding.log_decoder import decode_fast_path, decode_log, decode_logs
from nethermind.batchscope.decoding.summary import build_multisend_batch
from nethermind.batchscope.exceptions import BatchscopeError
from nethermind.batchscope.rpc.client import ChainClient
from nethermind.batchscope.types.decoding import (
    DecodedCall,
    DecodedEvent,
    MultisendBatch,
    RawLog,
    SafeDecodeResult,
    TransactionContext,
    TransactionResult,
)
from nethermind.batchscope.utils import json_safe, to_hex

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("processor")

DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_CONCURRENCY = 4

# pylint: disable=broad-exception-caught


def _log_failure(step: str, transaction_hash: str, exc: Exception):
    if isinstance(exc, BatchscopeError):
        logger.warning(f"{step} failed for {transaction_hash}: {exc}")
    else:
        logger.error(
            f"Unexpected error during {step} for {transaction_hash}: "
            f"{traceback.format_exception(type(exc), exc, exc.__traceback__)}"
        )


def flatten_sub_calls(
    sub_calls: Sequence[DecodedCall],
) -> Iterator[tuple[int, int | None, int, DecodedCall]]:
    """
    Flattens nested sub-calls depth first.  Yields (sub_index, parent_index, depth, call), with sub_index counting
    every call in the order it is visited.
    """
    counter = 0

    def _walk(calls: Sequence[DecodedCall], parent: int | None, depth: int):
        nonlocal counter
        for call in calls:
            index = counter
            counter += 1
            yield index, parent, depth, call
            yield from _walk(call.sub_calls, index, depth + 1)

    yield from _walk(sub_calls, None, 0)


def serialize_call(call: DecodedCall) -> dict[str, Any]:
    """JSON storable view of a decoded call, without its sub-calls"""
    return {
        "to": call.to,
        "value": str(call.value),
        "operation": int(call.operation),
        "function_name": call.function_name,
        "signature": call.signature,
        "args": json_safe(call.args),
        "implementation_address": call.implementation_address,
        "token_transfer": json_safe(asdict(call.token_transfer)) if call.token_transfer else None,
    }


def serialize_batch(batch: MultisendBatch) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Returns the JSON storable summary and error list of a batch"""
    summary = json_safe(asdict(batch.summary))
    errors = [
        {"index": error.index, "to": error.to, "error": error.error, "data": to_hex(error.data)}
        for error in batch.errors
    ]
    return summary, errors


def _lenient_log(log_json: Any, position: int) -> RawLog:
    fields = log_json if isinstance(log_json, dict) else {}

    try:
        topics = [bytes.fromhex(topic[2:]) for topic in fields.get("topics") or []]
    except (ValueError, TypeError):
        topics = []
    try:
        data = bytes.fromhex((fields.get("data") or "0x")[2:])
    except (ValueError, TypeError):
        data = b""

    log_index = fields.get("logIndex")
    try:
        log_index = int(log_index, 16) if isinstance(log_index, str) else int(log_index)
    except (ValueError, TypeError):
        log_index = position

    return RawLog(address=str(fields.get("address") or ""), topics=topics, data=data, log_index=log_index)


def parse_receipt_logs(transaction_hash: str, receipt: dict[str, Any]) -> list[RawLog]:
    """
    Parses the logs of a transaction receipt.  A log with malformed hex fields keeps its address and index, with the
    malformed fields emptied, and is stored as an undecoded event.
    """
    raw_logs = []
    for position, log_json in enumerate(receipt.get("logs") or []):
        try:
            raw_logs.append(RawLog.from_rpc(log_json))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning(f"Malformed log at position {position} in receipt of {transaction_hash}: {exc}")
            raw_logs.append(_lenient_log(log_json, position))
    return raw_logs


class TransactionProcessor:
    """
    Decodes a transaction, its logs and any Safe batch it executes, and persists the result.  Each decoding step
    fails independently, so a transaction is always stored with whatever could be decoded.
    """

    chain_client: ChainClient
    abi_store: AbiStore
    row_store: RowStore | None
    call_decoder: CallDecoder
    batch_decoder: BatchDecoder

    timeout: float
    """
    Seconds allowed for fetching the receipt and decoding a single transaction.  A slow receipt fetch returns None,
    slow decoding is stored with status timeout
    """

    max_concurrency: int
    """ Default bound on transactions processed at once by process_transactions """

    def __init__(
        self,
        chain_client: ChainClient,
        abi_store: AbiStore,
        row_store: RowStore | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_multisend_depth: int = DEFAULT_MAX_DEPTH,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        self.chain_client = chain_client
        self.abi_store = abi_store
        self.row_store = row_store
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.call_decoder = CallDecoder(abi_store)
        self.batch_decoder = BatchDecoder(self.call_decoder, max_depth=max_multisend_depth)

    async def process_transaction(self, transaction_hash: str, context: TransactionContext) -> TransactionResult | None:
        """
        Decodes and persists a single transaction.  The receipt fetch and the decode pipeline share one ``timeout``
        budget.

        :param transaction_hash: Hash of the transaction
        :param context: Raw transaction fields
        :return: The decoded transaction, or None if the receipt could not be fetched in time.  Nothing is persisted
            when the receipt is unavailable, so the transaction can be retried.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        try:
            receipt = await asyncio.wait_for(
                self.chain_client.get_transaction_receipt(transaction_hash), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Fetching receipt for {transaction_hash} exceeded {self.timeout} seconds")
            return None
        except BatchscopeError as exc:
            logger.error(f"Failed to fetch receipt for {transaction_hash}: {exc}")
            return None

        if receipt is None:
            logger.warning(f"No receipt found for transaction {transaction_hash}")
            return None

        raw_logs = parse_receipt_logs(transaction_hash, receipt)

        try:
            result = await asyncio.wait_for(
                self._decode(transaction_hash, context, raw_logs), timeout=max(deadline - loop.time(), 0)
            )
        except asyncio.TimeoutError:
            logger.warning(f"Decoding {transaction_hash} exceeded {self.timeout} seconds.  Storing undecoded")
            result = TransactionResult(
                hash=transaction_hash,
                chain=context.chain,
                block_number=context.block_number,
                from_address=context.from_address,
                to_address=context.to_address,
                value=context.value,
                input=context.input,
                decoded_function=None,
                logs=[],
                is_multisend=False,
                multisend_batch=None,
                timestamp=context.timestamp,
                status="timeout",
            )

        self._persist(result)
        return result

    async def process_transactions(
        self,
        transactions: Sequence[TransactionContext],
        max_concurrency: int | None = None,
    ) -> list[TransactionResult | None]:
        """
        Processes many transactions concurrently, with at most max_concurrency in flight.  Results are returned in
        input order, but transactions are not persisted in any particular order.  A transaction failing unexpectedly
        yields None without affecting the others.  Each call is one processing pass: contracts left unresolved by
        earlier passes are looked up again.

        :param transactions: Transactions to process
        :param max_concurrency: Overrides the processor's ``max_concurrency``
        """
        self.abi_store.clear_unresolved()
        limit = max_concurrency if max_concurrency is not None else self.max_concurrency
        semaphore = asyncio.Semaphore(max(limit, 1))

        async def _bounded(context: TransactionContext) -> TransactionResult | None:
            async with semaphore:
                try:
                    return await self.process_transaction(context.hash, context)
                except Exception as exc:
                    _log_failure("processing", context.hash, exc)
                    return None

        return list(await asyncio.gather(*[_bounded(context) for context in transactions]))

    async def _decode(
        self, transaction_hash: str, context: TransactionContext, raw_logs: list[RawLog]
    ) -> TransactionResult:
        decoded_function = await self._decode_top_level_call(transaction_hash, context)
        logs = await self._decode_logs(transaction_hash, context, raw_logs)
        safe_result = await self._detect_multisend(transaction_hash, context)

        multisend_batch = build_multisend_batch(safe_result) if safe_result is not None else None

        return TransactionResult(
            hash=transaction_hash,
            chain=context.chain,
            block_number=context.block_number,
            from_address=context.from_address,
            to_address=context.to_address,
            value=context.value,
            input=context.input,
            decoded_function=decoded_function,
            logs=logs,
            is_multisend=safe_result.is_multicall if safe_result is not None else False,
            multisend_batch=multisend_batch,
            timestamp=context.timestamp,
        )

    async def _decode_top_level_call(self, transaction_hash: str, context: TransactionContext) -> DecodedCall | None:
        if context.to_address is None:
            logger.debug(f"{transaction_hash} is a contract creation, skipping call decoding")
            return None
        try:
            return await self.call_decoder.decode(
                context.to_address,
                context.input,
                context.chain,
                context.block_number,
                value=context.value,
            )
        except Exception as exc:
            _log_failure("call decoding", transaction_hash, exc)
            return None

    async def _decode_logs(
        self, transaction_hash: str, context: TransactionContext, raw_logs: list[RawLog]
    ) -> list[DecodedEvent]:
        try:
            lookup_addresses = [log.address for log in raw_logs if decode_fast_path(log) is None]
            descriptions = await self.abi_store.resolve_many(context.chain, lookup_addresses, context.block_number)
            return decode_logs(raw_logs, descriptions)
        except Exception as exc:
            _log_failure("log decoding", transaction_hash, exc)
            return [decode_log(log, None) for log in raw_logs]

    async def _detect_multisend(self, transaction_hash: str, context: TransactionContext) -> SafeDecodeResult | None:
        try:
            return await self.batch_decoder.decode_safe_transaction(
                context.input,
                context.chain,
                context.block_number,
                safe_address=context.to_address,
            )
        except Exception as exc:
            _log_failure("multiSend detection", transaction_hash, exc)
            return None

    def _persist(self, result: TransactionResult):
        if self.row_store is None:
            return

        self._upsert("transactions", {"hash": result.hash}, self._transaction_fields(result))

        log_rows = self._log_rows(result)
        if log_rows:
            try:
                self.row_store.upsert_many("transaction_logs", log_rows)
            except BatchscopeError as exc:
                logger.error(f"Batch insert of {len(log_rows)} logs failed for {result.hash}: {exc}")
                logger.info(f"Attempting individual log inserts for {result.hash}")
                for row in log_rows:
                    key = {"transaction_hash": row.pop("transaction_hash"), "log_index": row.pop("log_index")}
                    self._upsert("transaction_logs", key, row)

        sub_rows = self._sub_transaction_rows(result)
        if sub_rows:
            try:
                self.row_store.upsert_many("sub_transactions", sub_rows)
            except BatchscopeError as exc:
                logger.error(f"Failed to store sub-transactions of {result.hash}: {exc}")

    def _upsert(self, table: str, key: dict[str, Any], fields: dict[str, Any]):
        assert self.row_store is not None
        try:
            self.row_store.upsert(table, key, fields)
        except BatchscopeError as exc:
            logger.error(f"Failed to store {table} row {key}: {exc}")

    @staticmethod
    def _transaction_fields(result: TransactionResult) -> dict[str, Any]:
        summary, errors = serialize_batch(result.multisend_batch) if result.multisend_batch else (None, None)
        decoded = result.decoded_function
        return {
            "chain": result.chain.value,
            "block_number": result.block_number,
            "timestamp": result.timestamp,
            "from_address": result.from_address.lower(),
            "to_address": result.to_address.lower() if result.to_address else None,
            "value": result.value,
            "input": to_hex(result.input),
            "function_name": decoded.function_name if decoded else None,
            "decoded_function": serialize_call(decoded) if decoded else None,
            "is_multisend": result.is_multisend,
            "multisend_summary": summary,
            "decode_errors": errors,
            "log_count": len(result.logs),
            "status": result.status,
        }

    @staticmethod
    def _log_rows(result: TransactionResult) -> list[dict[str, Any]]:
        return [
            {
                "transaction_hash": result.hash,
                "log_index": event.log_index if event.log_index is not None else position,
                "chain": result.chain.value,
                "block_number": result.block_number,
                "timestamp": result.timestamp,
                "contract_address": event.contract_address.lower(),
                "event_name": event.name,
                "topic0": to_hex(event.topic0) if event.topic0 else None,
                "topics": [to_hex(topic) for topic in event.raw.topics],
                "data": to_hex(event.raw.data),
                "decoded_args": json_safe(event.args),
            }
            for position, event in enumerate(result.logs)
        ]

    @staticmethod
    def _sub_transaction_rows(result: TransactionResult) -> list[dict[str, Any]]:
        if result.multisend_batch is None:
            return []
        return [
            {
                "transaction_hash": result.hash,
                "sub_index": sub_index,
                "parent_index": parent_index,
                "depth": depth,
                "operation": int(call.operation),
                "to_address": call.to.lower(),
                "value": call.value,
                "data": to_hex(call.raw_data),
                "function_name": call.function_name,
                "signature": call.signature,
                "decoded_args": json_safe(call.args),
                "implementation_address": call.implementation_address,
                "token_transfer": json_safe(asdict(call.token_transfer)) if call.token_transfer else None,
            }
            for sub_index, parent_index, depth, call in flatten_sub_calls(result.multisend_batch.sub_calls)
        ]
