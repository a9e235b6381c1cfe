import logging
import traceback

from eth_utils import to_checksum_address

from nethermind.batchscope.exceptions import BatchscopeError, MalformedBatchEntry
from nethermind.batchscope.types.decoding import (
    DecodedCall,
    DecodingError,
    MultisendEntry,
    Operation,
    SafeDecodeResult,
    TokenTransfer,
)
from nethermind.batchscope.types.network import SupportedChain

from .call_decoder import (
    EXEC_TRANSACTION_SELECTOR,
    EXEC_TRANSACTION_SIGNATURE,
    MULTISEND_SELECTOR,
    CallDecoder,
    decode_call,
)
from .utils import decode_evm_abi_from_types

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("batch")

MULTISEND_HEADER_SIZE = 85
""" operation (1) + to (20) + value (32) + dataLength (32) """

DEFAULT_MAX_DEPTH = 8
MAX_DEPTH_ERROR = "maximum multiSend nesting depth exceeded"

# pylint: disable=broad-exception-caught

EXEC_TRANSACTION_TYPES = [
    "address",
    "uint256",
    "bytes",
    "uint8",
    "uint256",
    "uint256",
    "uint256",
    "address",
    "address",
    "bytes",
]
EXEC_TRANSACTION_NAMES = [
    "to",
    "value",
    "data",
    "operation",
    "safeTxGas",
    "baseGas",
    "gasPrice",
    "gasToken",
    "refundReceiver",
    "signatures",
]

# selector -> (standard, function name, abi types, argument layout)
TOKEN_TRANSFER_SELECTORS: dict[bytes, tuple[str, str, list[str], str]] = {
    bytes.fromhex("a9059cbb"): ("ERC20", "transfer", ["address", "uint256"], "to,amount"),
    # ERC721 transferFrom shares this selector.  Classified as ERC20, the more common case
    bytes.fromhex("23b872dd"): ("ERC20", "transferFrom", ["address", "address", "uint256"], "from,to,amount"),
    bytes.fromhex("42842e0e"): ("ERC721", "safeTransferFrom", ["address", "address", "uint256"], "from,to,id"),
    bytes.fromhex("b88d4fde"): (
        "ERC721",
        "safeTransferFrom",
        ["address", "address", "uint256", "bytes"],
        "from,to,id,data",
    ),
    bytes.fromhex("f242432a"): (
        "ERC1155",
        "safeTransferFrom",
        ["address", "address", "uint256", "uint256", "bytes"],
        "from,to,id,amount,data",
    ),
    bytes.fromhex("2eb2c2d6"): (
        "ERC1155",
        "safeBatchTransferFrom",
        ["address", "address", "uint256[]", "uint256[]", "bytes"],
        "from,to,ids,amounts,data",
    ),
}


def _payload_to_bytes(payload: bytes | str, errors: list[DecodingError]) -> bytes:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)

    hex_str = payload[2:] if payload.startswith(("0x", "0X")) else payload
    if len(hex_str) % 2:
        errors.append(
            DecodingError(
                index=-1,
                to=None,
                error=f"payload has an odd number of hex digits, dropped trailing nibble '{hex_str[-1]}'",
                data=b"",
            )
        )
        hex_str = hex_str[:-1]

    try:
        return bytes.fromhex(hex_str)
    except ValueError as exc:
        errors.append(DecodingError(index=-1, to=None, error=f"payload is not hex encoded: {exc}", data=b""))
        return b""


def _read_entry(payload: bytes, offset: int, index: int) -> tuple[MultisendEntry, int]:
    """
    Reads one packed entry starting at offset.  Returns the entry and the offset of the next entry.

    :raises MalformedBatchEntry: if the entry is truncated, or carries an unknown operation byte
    """
    remaining = len(payload) - offset
    if remaining < MULTISEND_HEADER_SIZE:
        raise MalformedBatchEntry(
            f"entry header truncated: {remaining} bytes remaining, {MULTISEND_HEADER_SIZE} required"
        )

    operation = payload[offset]
    to = to_checksum_address(payload[offset + 1 : offset + 21])
    value = int.from_bytes(payload[offset + 21 : offset + 53], "big")
    data_length = int.from_bytes(payload[offset + 53 : offset + 85], "big")

    data_start = offset + MULTISEND_HEADER_SIZE
    data_end = data_start + data_length

    if data_end > len(payload):
        raise MalformedBatchEntry(
            f"declared data length {data_length} exceeds the {len(payload) - data_start} bytes remaining",
            to=to,
        )

    if operation not in (Operation.Call, Operation.DelegateCall):
        raise MalformedBatchEntry(f"unknown operation {operation}", to=to, next_offset=data_end)

    entry = MultisendEntry(
        index=index,
        operation=Operation(operation),
        to=to,
        value=value,
        data=payload[data_start:data_end],
    )
    return entry, data_end


def parse_multisend_transactions(payload: bytes | str) -> tuple[list[MultisendEntry], list[DecodingError]]:
    """
    Parses a packed multiSend payload into its entries.  Each entry is encoded as
    ``operation (1 byte) | to (20 bytes) | value (32 bytes) | dataLength (32 bytes) | data (dataLength bytes)``,
    repeated until the payload is exhausted.

    Malformed entries never raise.  They are reported as DecodingError records:

    * A truncated header or a data length past the end of the payload ends the scan.  The error carries the
      remaining bytes
    * An unknown operation byte skips the entry using its declared length, and the scan continues
    * Odd length hex strings drop the trailing nibble, recorded with index -1

    :param payload: Packed payload bytes, or a hex string
    :return: (entries, errors)
    """
    errors: list[DecodingError] = []
    raw = _payload_to_bytes(payload, errors)

    entries: list[MultisendEntry] = []
    offset, index = 0, 0
    while offset < len(raw):
        try:
            entry, offset = _read_entry(raw, offset, index)
        except MalformedBatchEntry as exc:
            logger.debug(f"Malformed multiSend entry {index} at offset {offset}: {exc}")
            errors.append(
                DecodingError(
                    index=index,
                    to=exc.to,
                    error=str(exc),
                    data=raw[offset + MULTISEND_HEADER_SIZE : exc.next_offset] if exc.next_offset else raw[offset:],
                )
            )
            if exc.next_offset is None:
                break
            offset, index = exc.next_offset, index + 1
            continue

        entries.append(entry)
        index += 1

    return entries, errors


def recognize_token_transfer(calldata: bytes) -> TokenTransfer | None:
    """
    Recognizes ERC20, ERC721 and ERC1155 transfers from their selectors, independent of ABI availability.
    Returns None for any other calldata, or if the arguments do not decode.
    """
    token_selector = TOKEN_TRANSFER_SELECTORS.get(calldata[:4])
    if token_selector is None:
        return None

    standard, function_name, types, layout = token_selector
    decoded = decode_evm_abi_from_types(types, calldata[4:])
    if decoded is None:
        return None

    args = dict(zip(layout.split(","), decoded))
    match standard:
        case "ERC20":
            return TokenTransfer(
                standard="ERC20",
                function_name=function_name,
                to_address=to_checksum_address(args["to"]),
                from_address=to_checksum_address(args["from"]) if "from" in args else None,
                amounts=[args["amount"]],
            )
        case "ERC721":
            return TokenTransfer(
                standard="ERC721",
                function_name=function_name,
                to_address=to_checksum_address(args["to"]),
                from_address=to_checksum_address(args["from"]),
                token_ids=[args["id"]],
                amounts=[1],
            )
        case _:
            return TokenTransfer(
                standard="ERC1155",
                function_name=function_name,
                to_address=to_checksum_address(args["to"]),
                from_address=to_checksum_address(args["from"]),
                token_ids=list(args["ids"]) if "ids" in args else [args["id"]],
                amounts=list(args["amounts"]) if "amounts" in args else [args["amount"]],
            )


class BatchDecoder:
    """
    Reconstructs the sub-calls of Safe ``execTransaction`` and ``multiSend`` payloads.  Nested payloads are
    expanded recursively up to ``max_depth`` levels.
    """

    call_decoder: CallDecoder | None
    """ Proxy aware call decoder.  If None, sub-calls are only decoded from the selector table """

    max_depth: int

    def __init__(self, call_decoder: CallDecoder | None = None, max_depth: int = DEFAULT_MAX_DEPTH):
        self.call_decoder = call_decoder
        self.max_depth = max_depth

    async def decode_safe_transaction(
        self,
        calldata: bytes | str,
        chain: SupportedChain,
        as_of_block: int,
        safe_address: str | None = None,
    ) -> SafeDecodeResult | None:
        """
        Decodes Safe transaction calldata.

        * ``multiSend(bytes)`` returns every packed sub-call, with ``is_multicall=True``
        * ``execTransaction(...)`` wrapping a multiSend returns its sub-calls.  Any other wrapped call is returned as
          a single sub-call with ``is_multicall=False``, and the operation of the Safe transaction
        * Any other calldata returns None

        :param calldata: Transaction input
        :param chain: Chain the transaction was executed on
        :param as_of_block: Block used when resolving proxy implementations
        :param safe_address: Address of the Safe, reported on the outer execTransaction call
        """
        errors: list[DecodingError] = []
        raw = _payload_to_bytes(calldata, errors)

        result = await self._decode_payload(raw, chain, as_of_block, depth=0, safe_address=safe_address)
        if result is not None and errors:
            result.errors = errors + result.errors
        return result

    async def _decode_payload(
        self,
        calldata: bytes,
        chain: SupportedChain,
        as_of_block: int,
        depth: int,
        safe_address: str | None = None,
    ) -> SafeDecodeResult | None:
        match calldata[:4]:
            case selector if selector == MULTISEND_SELECTOR:
                return await self._decode_multisend(calldata, chain, as_of_block, depth)
            case selector if selector == EXEC_TRANSACTION_SELECTOR:
                return await self._decode_exec_transaction(calldata, chain, as_of_block, depth, safe_address)
            case _:
                return None

    async def _decode_multisend(
        self, calldata: bytes, chain: SupportedChain, as_of_block: int, depth: int
    ) -> SafeDecodeResult:
        decoded = decode_evm_abi_from_types(["bytes"], calldata[4:])
        if decoded is None:
            error = DecodingError(index=-1, to=None, error="multiSend argument is not ABI encoded bytes", data=calldata)
            return SafeDecodeResult(is_multicall=True, sub_calls=[], errors=[error])

        entries, errors = parse_multisend_transactions(decoded[0])
        logger.debug(f"Parsed {len(entries)} multiSend entries at depth {depth} with {len(errors)} errors")

        sub_calls = [await self._decode_entry(entry, chain, as_of_block, depth, errors) for entry in entries]
        return SafeDecodeResult(is_multicall=True, sub_calls=sub_calls, errors=errors)

    async def _decode_exec_transaction(
        self,
        calldata: bytes,
        chain: SupportedChain,
        as_of_block: int,
        depth: int,
        safe_address: str | None,
    ) -> SafeDecodeResult | None:
        decoded = decode_evm_abi_from_types(EXEC_TRANSACTION_TYPES, calldata[4:])
        if decoded is None:
            logger.debug("execTransaction selector matched, but arguments could not be decoded")
            return None

        args = dict(zip(EXEC_TRANSACTION_NAMES, decoded))
        safe_transaction = DecodedCall(
            to=safe_address or "",
            value=0,
            operation=Operation.Call,
            raw_data=calldata,
            function_name="execTransaction",
            signature=EXEC_TRANSACTION_SIGNATURE,
            args=args,
        )

        inner_data: bytes = args["data"]
        inner_to = to_checksum_address(args["to"])

        if inner_data[:4] == MULTISEND_SELECTOR:
            inner = await self._decode_multisend(inner_data, chain, as_of_block, depth)
            inner.safe_transaction = safe_transaction
            return inner

        if args["operation"] not in (Operation.Call, Operation.DelegateCall):
            return SafeDecodeResult(
                is_multicall=False,
                sub_calls=[],
                errors=[
                    DecodingError(index=0, to=inner_to, error=f"unknown operation {args['operation']}", data=inner_data)
                ],
                safe_transaction=safe_transaction,
            )

        errors: list[DecodingError] = []
        entry = MultisendEntry(
            index=0,
            operation=Operation(args["operation"]),
            to=inner_to,
            value=args["value"],
            data=inner_data,
        )
        sub_call = await self._decode_entry(entry, chain, as_of_block, depth, errors)
        return SafeDecodeResult(
            is_multicall=False,
            sub_calls=[sub_call],
            errors=errors,
            safe_transaction=safe_transaction,
        )

    async def _decode_entry(
        self,
        entry: MultisendEntry,
        chain: SupportedChain,
        as_of_block: int,
        depth: int,
        errors: list[DecodingError],
    ) -> DecodedCall:
        token_transfer = recognize_token_transfer(entry.data)

        call = await self._decode_call(entry, chain, as_of_block)
        call.token_transfer = token_transfer

        if entry.data[:4] not in (MULTISEND_SELECTOR, EXEC_TRANSACTION_SELECTOR):
            return call

        if depth >= self.max_depth:
            logger.warning(f"multiSend entry {entry.index} to {entry.to} nested deeper than {self.max_depth} levels")
            errors.append(DecodingError(index=entry.index, to=entry.to, error=MAX_DEPTH_ERROR, data=entry.data))
            return call

        nested = await self._decode_payload(entry.data, chain, as_of_block, depth + 1, safe_address=entry.to)
        if nested is not None:
            call.sub_calls = nested.sub_calls
            errors.extend(nested.errors)
        return call

    async def _decode_call(self, entry: MultisendEntry, chain: SupportedChain, as_of_block: int) -> DecodedCall:
        if self.call_decoder is None:
            return decode_call(entry.to, entry.data, None, value=entry.value, operation=entry.operation)

        try:
            return await self.call_decoder.decode(
                entry.to,
                entry.data,
                chain,
                as_of_block,
                value=entry.value,
                operation=entry.operation,
            )
        except BatchscopeError as exc:
            logger.warning(f"Failed to decode multiSend entry {entry.index} to {entry.to}: {exc}")
            return decode_call(entry.to, entry.data, None, value=entry.value, operation=entry.operation)
        except Exception as exc:
            logger.error(
                f"Unexpected error decoding multiSend entry {entry.index} to {entry.to}: "
                f"{traceback.format_exception(type(exc), exc, exc.__traceback__)}"
            )
            return decode_call(entry.to, entry.data, None, value=entry.value, operation=entry.operation)
