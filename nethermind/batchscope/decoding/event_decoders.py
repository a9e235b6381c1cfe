import itertools
import logging
from typing import Any, Callable, Sequence

from eth_typing import ABIEvent  # Dict containing all params in Event Definition
from eth_utils import to_checksum_address
from eth_utils.abi import event_signature_to_log_topic

from nethermind.batchscope.exceptions import DecodeMismatch
from nethermind.batchscope.types.decoding import Fragment

from .utils import abi_to_signature, collapse_if_tuple, decode_evm_abi_from_types

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("decoding")


def _topic_type(abi_type: str) -> str:
    """
    Indexed values of dynamic types are stored as the keccak hash of their encoding, so they are decoded as
    bytes32 from the topic
    """
    if abi_type in ("string", "bytes") or abi_type.endswith("]") or abi_type.startswith("("):
        return "bytes32"
    return abi_type


class EVMEventDecoder:
    """
    Stores precomputed data for Efficiently Decoding EVM Events
    """

    event_signature: str
    signature: bytes
    abi_name: str
    name: str
    anonymous: bool
    indexed_params: int

    _data_types: list[str]
    _data_names: list[str]
    _topic_types: list[str]
    _topic_names: list[str]

    formatters: dict[str, Callable[[Any], Any]] = {}

    def __init__(self, abi_event: ABIEvent, abi_name: str):
        event_signature = abi_to_signature(abi_event)
        selector = event_signature_to_log_topic(event_signature)

        inputs = list(abi_event.get("inputs", []))
        names = [param.get("name") or f"arg{idx}" for idx, param in enumerate(inputs)]

        log_topics_abi = [(name, param) for name, param in zip(names, inputs) if param.get("indexed")]
        log_topic_types = [_topic_type(collapse_if_tuple(param)) for _, param in log_topics_abi]  # type: ignore
        log_topic_names = [name for name, _ in log_topics_abi]

        log_data_abi = [(name, param) for name, param in zip(names, inputs) if not param.get("indexed")]
        log_data_types = [collapse_if_tuple(param) for _, param in log_data_abi]  # type: ignore
        log_data_names = [name for name, _ in log_data_abi]

        duplicate_names = set(log_topic_names).intersection(log_data_names)
        if duplicate_names:
            raise DecodeMismatch(
                f"Cannot have overlapping names between topics and data.  {abi_name} -> {abi_event['name']}"
                f"Has duplicate names: {list(duplicate_names)}"
            )

        self._data_names = log_data_names
        self._data_types = log_data_types
        self._topic_names = log_topic_names
        self._topic_types = log_topic_types
        self._input_names = names
        self.abi_name = abi_name
        self.event_signature = event_signature
        self.signature = selector
        self.name = abi_event["name"]
        self.anonymous = bool(abi_event.get("anonymous", False))
        self.formatters = {"address": to_checksum_address}

        self.indexed_params = len(log_topic_names)

        if self.indexed_params > (4 if self.anonymous else 3):
            raise DecodeMismatch(f"Event {event_signature} emits too many indexed parameters")

    @property
    def fragment(self) -> Fragment:
        """Fragment view of this decoder"""
        return Fragment(
            kind="event",
            name=self.name,
            input_types=tuple(self._topic_types + self._data_types),
            input_names=tuple(self._topic_names + self._data_names),
            signature=self.event_signature,
            selector=self.signature,
        )

    @property
    def topic_count(self) -> int:
        """Number of topics a log emitted by this event carries"""
        return self.indexed_params if self.anonymous else self.indexed_params + 1

    def decode(self, topics: list[bytes], data: bytes) -> dict[str, Any] | None:
        """
        Decodes Event data and topics.

        :param topics: List of full Topic Bytes, including the signature at index 0 for non-anonymous events
        :param data: Log data bytes
        :return: Mapping of parameter name to decoded value in declaration order, or None on mismatch
        """
        if len(topics) != self.topic_count:
            logger.debug(f"{self.event_signature} expects {self.topic_count} topics, log has {len(topics)}")
            return None

        if not self.anonymous and topics[0] != self.signature:
            return None

        indexed_topics = topics if self.anonymous else topics[1:]
        decoded_data = decode_evm_abi_from_types(self._data_types, data)
        decoded_topics = decode_evm_abi_from_types(self._topic_types, b"".join(indexed_topics))

        if decoded_data is None or decoded_topics is None:
            logger.debug(
                f"Error Decoding Event {self.event_signature} for topics {[t.hex() for t in topics]} "
                f"and data {data.hex()}"
            )
            return None

        formatted_data = self.apply_formatters(decoded_data, self._data_types)
        formatted_topics = self.apply_formatters(decoded_topics, self._topic_types)

        values = dict(itertools.chain(zip(self._topic_names, formatted_topics), zip(self._data_names, formatted_data)))
        return {name: values[name] for name in self._input_names}

    def apply_formatters(self, decoding_result: Sequence[Any], types: list[str]) -> list[Any]:
        """
        Applies currently loaded formatted to decoding result.

        :param decoding_result: List of values returned from ABI Decoding
        :param types: List of types for each entry in decoding_result
        """
        formatted_values = []
        for value, typ in zip(decoding_result, types, strict=True):
            formatter = self.formatters.get(typ)
            if formatter is not None:
                formatted_values.append(formatter(value))
            else:
                formatted_values.append(value)

        return formatted_values

    def id_str(self, full_signature: bool = True) -> str:
        """If full_signature is True, returns EventName(types,...) Otherwise, returns event name"""
        if full_signature:
            return self.event_signature
        return self.name
