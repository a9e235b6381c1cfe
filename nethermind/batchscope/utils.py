import random
from typing import Any

from eth_typing import ChecksumAddress
from eth_utils import is_hex_address, to_checksum_address

ZERO_ADDRESS = "0x" + "00" * 20


def random_address() -> ChecksumAddress:
    """
    Generate a random 20 byte ChecksumAddress
    :return: ChecksumAddress
    """
    return to_checksum_address(random.randbytes(20).hex())


def to_bytes(value: str | bytes | bytearray | None, pad: int | None = None) -> bytes:
    """
    Converts a hex string (with or without 0x prefix) to bytes.  If pad is set, the result is left-padded with
    zero bytes to that width.

    >>> to_bytes("0x0a0b")
    b'\\n\\x0b'
    >>> to_bytes("0x01", pad=4)
    b'\\x00\\x00\\x00\\x01'

    Raises ValueError for hex strings with an odd number of digits
    """
    if value is None:
        return b"" if pad is None else b"\x00" * pad

    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        hex_str = value[2:] if value.startswith(("0x", "0X")) else value
        if len(hex_str) % 2:
            raise ValueError(f"Hex string has an odd number of digits: {value}")
        raw = bytes.fromhex(hex_str)

    if pad is not None:
        return raw.rjust(pad, b"\x00")
    return raw


def to_hex(value: bytes | bytearray | int | None) -> str:
    """Converts bytes or an integer to a 0x prefixed hex string"""
    if value is None:
        return "0x"
    if isinstance(value, int):
        return hex(value)
    return "0x" + bytes(value).hex()


def address_from_word(word: bytes) -> ChecksumAddress:
    """Extracts a checksummed address from the low 20 bytes of a 32 byte word"""
    return to_checksum_address(word[-20:].rjust(20, b"\x00"))


def is_valid_address(address: Any) -> bool:
    """True for 20 byte hex addresses that are not the zero address"""
    return isinstance(address, str) and is_hex_address(address) and address.lower() != ZERO_ADDRESS


def json_safe(value: Any) -> Any:
    """
    Converts decoded ABI values into JSON storable values.  Bytes become 0x hex strings, tuples become lists, and
    integers become decimal strings so uint256 values survive JSON consumers that use 64 bit floats.
    """
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def pprint_list(write_array: list[str], term_width: int) -> list[str]:
    """
    Prints an array of strings to the console, wrapping lines with a max width of term_width

    :param write_array:
    :param term_width:
    :return:
    """
    current_line, output = "", []
    for write_val in write_array:
        if len(current_line) + len(write_val) + 1 > term_width:
            output.append(current_line)
            current_line = ""
        current_line += f"'{write_val}', "
    output.append(current_line)
    return output
