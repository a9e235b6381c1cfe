import json
import logging
import traceback
from typing import Any

from eth_abi import decode as eth_abi_decode
from eth_abi.exceptions import DecodingError as AbiDecodingError
from eth_abi.exceptions import InsufficientDataBytes, NonEmptyPaddingBytes
from eth_typing import ABI, ABIEvent, ABIFunction

from nethermind.batchscope.exceptions import UnresolvedAbi

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("decoding")


def abi_to_signature(abi: ABIFunction | ABIEvent) -> str:
    """
    Converts ABI to signature.

    >>> from nethermind.batchscope.decoding.utils import abi_to_signature
    >>> abi_to_signature({"type": "function", "name": "transfer", "inputs": [
    ...     {"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}
    ... ]})
    'transfer(address,uint256)'

    """
    collapsed = [collapse_if_tuple(abi_input) for abi_input in abi.get("inputs", [])]
    return f"{abi['name']}({','.join(collapsed)})"


def collapse_if_tuple(abi_params: dict[str, Any]) -> str:
    """
    Converts a tuple from a dict to a parenthesized list of its types.

    >>> collapse_if_tuple(
    ...     {
    ...         'components': [
    ...             {'name': 'anAddress', 'type': 'address'},
    ...             {'name': 'anInt', 'type': 'uint256'},
    ...             {'name': 'someBytes', 'type': 'bytes'},
    ...         ],
    ...         'type': 'tuple',
    ...     }
    ... )
    '(address,uint256,bytes)'
    """

    typ = abi_params["type"]
    if not isinstance(typ, str):
        raise TypeError(f"The 'type' must be a string, but got {typ} of type {type(typ)}")

    if not typ.startswith("tuple"):
        return typ

    delimited = ",".join(collapse_if_tuple(c) for c in abi_params["components"])
    # Whatever comes after "tuple" is the array dims.  The Solidity ABI states that
    # this will have the form "", "[]", or "[k]".
    array_dim = typ[5:]
    collapsed = f"({delimited}){array_dim}"

    return collapsed


def normalize_abi(abi_data: Any) -> ABI:
    """
    Normalizes the shapes ABIs arrive in from explorers, caches and config files into a list of ABI entries.
    Accepts lists of entries, JSON strings of either, and ``{"abi": [...]}`` wrappers.

    Raises UnresolvedAbi if the data cannot be interpreted as an ABI
    """
    if isinstance(abi_data, (str, bytes)):
        try:
            abi_data = json.loads(abi_data)
        except json.JSONDecodeError as exc:
            raise UnresolvedAbi(f"ABI is not valid JSON: {exc}") from exc

    if isinstance(abi_data, dict):
        if "abi" in abi_data:
            return normalize_abi(abi_data["abi"])
        # A single fragment
        abi_data = [abi_data]

    if not isinstance(abi_data, list):
        raise UnresolvedAbi(f"Unsupported ABI shape: {type(abi_data)}")

    entries = [entry for entry in abi_data if isinstance(entry, dict) and "type" in entry]
    if len(entries) != len(abi_data):
        logger.debug(f"Dropped {len(abi_data) - len(entries)} malformed ABI entries")

    return entries  # type: ignore


def filter_functions(contract_abi: ABI) -> list[ABIFunction]:
    """Filters out all non-function ABIs"""
    return [abi for abi in contract_abi if abi["type"] == "function" and "name" in abi]  # type: ignore


def filter_events(contract_abi: ABI) -> list[ABIEvent]:
    """Filters out all non-event ABIs"""
    return [abi for abi in contract_abi if abi["type"] == "event" and "name" in abi]  # type: ignore


def signature_to_name(function_sig: str) -> str:
    """
    Removes types from function signature

    >>> signature_to_name("swap(address,address,uint256,uint256,int128)")
    'swap'
    """
    index = function_sig.find("(")
    if index != -1:
        return function_sig[:index]
    return function_sig


def decode_evm_abi_from_types(types: list[str], data: bytes | bytearray) -> tuple[Any, ...] | None:
    """
    Decodes ABI data from types and data bytes.  Properly Handles various decoding errors by logging and
    returning none.

    :param types:
    :param data:
    :return:
    """
    try:
        return eth_abi_decode(types, data)
    except InsufficientDataBytes:
        logger.debug(f"Insufficient data bytes while decoding {data.hex()} for types {types}")
        return None
    except NonEmptyPaddingBytes:
        logger.debug(f"Non-empty padding bytes while decoding {data.hex()} for types {types}")
        return None
    except OverflowError:
        logger.debug(f"Overflow error while decoding {data.hex()} for types {types}")
        return None
    except AbiDecodingError as e:
        logger.debug(f"{e.__class__.__name__} while decoding {data.hex()} for types {types}: {e}")
        return None
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error(
            f"Unknown error while decoding {data.hex()} for types {types}: "
            f"{traceback.format_exception(type(e), e, e.__traceback__)}"
        )
        return None
