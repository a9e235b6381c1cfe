from eth_abi import encode
from eth_utils.abi import function_signature_to_4byte_selector

from nethermind.batchscope.decoding.batch_decoder import EXEC_TRANSACTION_TYPES
from nethermind.batchscope.decoding.call_decoder import EXEC_TRANSACTION_SELECTOR, MULTISEND_SELECTOR
from nethermind.batchscope.utils import ZERO_ADDRESS, to_bytes


def encode_call(signature: str, types: list[str], args: list) -> bytes:
    return function_signature_to_4byte_selector(signature) + encode(types, args)


def pack_entry(operation: int, to: str, value: int, data: bytes) -> bytes:
    """Packs a single multiSend entry: operation | to | value | dataLength | data"""
    return (
        operation.to_bytes(1, "big")
        + to_bytes(to)
        + value.to_bytes(32, "big")
        + len(data).to_bytes(32, "big")
        + data
    )


def encode_multisend(*packed_entries: bytes) -> bytes:
    return MULTISEND_SELECTOR + encode(["bytes"], [b"".join(packed_entries)])


def encode_exec_transaction(to: str, value: int, data: bytes, operation: int = 0) -> bytes:
    args = [to, value, data, operation, 0, 0, 0, ZERO_ADDRESS, ZERO_ADDRESS, b"\x01" * 65]
    return EXEC_TRANSACTION_SELECTOR + encode(EXEC_TRANSACTION_TYPES, args)


def address_topic(address: str) -> bytes:
    return to_bytes(address, pad=32)


def uint_word(value: int) -> bytes:
    return value.to_bytes(32, "big")
