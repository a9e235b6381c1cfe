import logging
from typing import Any, Callable, Sequence

from eth_typing import ABIFunction  # Dict containing all params in Function Definition
from eth_utils import to_checksum_address
from eth_utils.abi import function_signature_to_4byte_selector

from nethermind.batchscope.types.decoding import Fragment

from .utils import abi_to_signature, collapse_if_tuple, decode_evm_abi_from_types

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("decoding")


class EVMFunctionDecoder:
    """
    Represents a single EVM function selector.  Parses input types to efficiently decode
    transaction calldata with its selector
    """

    name: str
    abi_name: str
    function_signature: str
    signature: bytes

    _input_types: list[str]
    _input_names: list[str]

    _formatters: dict[str, Callable[[Any], Any]] = {}

    def __init__(self, abi_function: ABIFunction, abi_name: str):
        self.abi_name = abi_name
        self.name = abi_function["name"]

        inputs = abi_function.get("inputs", [])
        self._input_types = [collapse_if_tuple(param) for param in inputs]  # type: ignore
        self._input_names = [param.get("name") or f"arg{idx}" for idx, param in enumerate(inputs)]

        self.function_signature = abi_to_signature(abi_function)
        self.signature = function_signature_to_4byte_selector(self.function_signature)

        self._formatters = {"address": to_checksum_address}

    @property
    def fragment(self) -> Fragment:
        """Fragment view of this decoder"""
        return Fragment(
            kind="function",
            name=self.name,
            input_types=tuple(self._input_types),
            input_names=tuple(self._input_names),
            signature=self.function_signature,
            selector=self.signature,
        )

    def decode(self, calldata: bytes) -> dict[str, Any] | None:
        """
        Decodes function arguments.  Accepts the full calldata, including the 4 byte selector.

        :param calldata: Calldata bytes starting with the function selector
        :return: Mapping of argument name to decoded value, or None if the calldata does not fit the signature
        """
        if calldata[:4] != self.signature:
            logger.debug(f"Selector 0x{calldata[:4].hex()} does not match {self.function_signature}")
            return None

        decoded_input = decode_evm_abi_from_types(self._input_types, calldata[4:])
        if decoded_input is None:
            logger.debug(f"Error Decoding {self.function_signature} For Input 0x{calldata.hex()}")
            return None

        formatted_input = self.apply_formatters(decoded_input, self._input_types)
        return dict(zip(self._input_names, formatted_input, strict=True))

    def apply_formatters(self, decoding_result: Sequence[Any], types: list[str]) -> list[Any]:
        """
        Applies currently loaded formatted to decoding result.

        :param decoding_result: List of values returned from ABI Decoding
        :param types: List of types for each entry in decoding_result
        """
        formatted_values = []
        for value, typ in zip(decoding_result, types, strict=True):
            formatter = self._formatters.get(typ)
            if formatter is not None:
                formatted_values.append(formatter(value))
            else:
                formatted_values.append(value)

        return formatted_values

    def id_str(self, full_signature: bool = True) -> str:
        """
        Returns ID string for function.  If full_signature is True, returns the function name & parameter types.
        If full_signature is false, returns function name
        """
        if full_signature:
            return self.function_signature
        return self.name
