from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Literal

from nethermind.batchscope.types.network import SupportedChain

if TYPE_CHECKING:
    from nethermind.batchscope.decoding.interface import InterfaceDescription

# pylint: disable=invalid-name

FragmentKind = Literal["function", "event", "constructor"]
TransactionStatus = Literal["complete", "timeout"]


class Operation(IntEnum):
    """Safe operation type.  Encoded as the first byte of every packed multiSend entry"""

    Call = 0
    DelegateCall = 1


@dataclass(frozen=True, slots=True)
class Fragment:
    """Single entry of a contract ABI, reduced to what is needed for decoding"""

    kind: FragmentKind
    name: str
    input_types: tuple[str, ...]
    input_names: tuple[str, ...]

    signature: str
    """ Canonical signature, ie ``transfer(address,uint256)`` """

    selector: bytes | None
    """ 4 byte selector for functions, 32 byte topic for events, None for constructors """


@dataclass(slots=True)
class AbiCacheEntry:
    """Resolved ABI for a contract on a chain.  Cached by (chain, address)"""

    chain: SupportedChain
    address: str
    as_of_block: int
    description: "InterfaceDescription | None"

    is_proxy: bool = False
    implementation: str | None = None

    raw_abi: list[dict[str, Any]] | None = None
    """ Raw ABI JSON the description was built from.  Stored by durable caches """

    @property
    def resolved(self) -> bool:
        """False if the ABI could not be fetched for this contract"""
        return self.description is not None

    @property
    def cache_key(self) -> tuple[str, str]:
        """Key used by AbiCache implementations"""
        return abi_cache_key(self.chain, self.address)


def abi_cache_key(chain: SupportedChain, address: str) -> tuple[str, str]:
    """Normalized (chain, address) cache key"""
    return chain.value, address.lower()


@dataclass(slots=True)
class RawLog:
    """Undecoded event log as returned in a transaction receipt"""

    address: str
    topics: list[bytes]
    data: bytes
    log_index: int | None = None

    @property
    def topic0(self) -> bytes | None:
        """Event signature topic.  None for anonymous events without topics"""
        return self.topics[0] if self.topics else None

    @classmethod
    def from_rpc(cls, log_json: dict[str, Any]) -> "RawLog":
        """Parses a log object from an eth_getTransactionReceipt response"""
        log_index = log_json.get("logIndex")
        return cls(
            address=log_json.get("address") or "",
            topics=[bytes.fromhex(topic[2:]) for topic in log_json.get("topics") or []],
            data=bytes.fromhex((log_json.get("data") or "0x")[2:]),
            log_index=int(log_index, 16) if isinstance(log_index, str) else log_index,
        )


@dataclass(slots=True)
class DecodedEvent:
    """
    Event Decoding Result.  ``name`` is None when every decoding stage failed, in which case ``raw`` still
    carries the original topics and data
    """

    contract_address: str
    topic0: bytes | None
    raw: RawLog

    name: str | None = None
    args: dict[str, Any] | None = None
    signature: str | None = None

    @property
    def log_index(self) -> int | None:
        """Position of the log within the block"""
        return self.raw.log_index

    @property
    def decoded(self) -> bool:
        """True if the event was matched to a signature"""
        return self.name is not None


@dataclass(slots=True)
class TokenTransfer:
    """Token movement recognized directly from a transfer selector"""

    standard: Literal["ERC20", "ERC721", "ERC1155"]
    function_name: str
    to_address: str
    from_address: str | None = None
    token_ids: list[int] = field(default_factory=list)
    amounts: list[int] = field(default_factory=list)


@dataclass(slots=True)
class DecodedCall:
    """Function Decoding Result for a transaction or a single sub-call of a Safe batch"""

    to: str
    value: int
    operation: Operation
    raw_data: bytes

    function_name: str | None = None
    args: dict[str, Any] | None = None
    signature: str | None = None
    implementation_address: str | None = None

    token_transfer: TokenTransfer | None = None
    sub_calls: list["DecodedCall"] = field(default_factory=list)
    """ Expansion of a nested multiSend / execTransaction payload """

    @property
    def selector(self) -> bytes | None:
        """4 byte function selector, or None for plain value transfers"""
        return self.raw_data[:4] if len(self.raw_data) >= 4 else None

    @property
    def is_value_transfer(self) -> bool:
        """True for calls without calldata"""
        return len(self.raw_data) == 0


@dataclass(slots=True)
class MultisendEntry:
    """Single entry of a packed multiSend payload, before calldata decoding"""

    index: int
    operation: Operation
    to: str
    value: int
    data: bytes


@dataclass(slots=True)
class DecodingError:
    """Malformed multiSend entry.  Recorded instead of aborting the whole batch"""

    index: int
    to: str | None
    error: str
    data: bytes


@dataclass(slots=True)
class BatchSummary:
    """Aggregate statistics over the sub-calls of a batch"""

    sub_transaction_count: int
    total_value: int
    unique_recipient_count: int
    failed_decode_count: int
    estimated_gas: int


@dataclass(slots=True)
class SafeDecodeResult:
    """Result of unpacking a Safe execTransaction and/or multiSend payload"""

    is_multicall: bool
    sub_calls: list[DecodedCall]
    errors: list[DecodingError] = field(default_factory=list)

    safe_transaction: DecodedCall | None = None
    """ Outer execTransaction call, when the payload was wrapped in one """


@dataclass(slots=True)
class MultisendBatch:
    """Ordered sub-calls of a batch, with summary statistics"""

    sub_calls: list[DecodedCall]
    summary: BatchSummary
    errors: list[DecodingError] = field(default_factory=list)


@dataclass(slots=True)
class TransactionContext:
    """Raw transaction fields handed over by the indexing layer"""

    hash: str
    chain: SupportedChain
    block_number: int
    from_address: str
    to_address: str | None
    value: int
    input: bytes
    timestamp: int | None = None

    @classmethod
    def from_rpc(cls, tx_json: dict[str, Any], chain: SupportedChain, timestamp: int | None = None):
        """Parses a transaction object from an eth_getTransactionByHash response"""
        return cls(
            hash=tx_json["hash"],
            chain=chain,
            block_number=int(tx_json["blockNumber"], 16),
            from_address=tx_json["from"],
            to_address=tx_json.get("to"),
            value=int(tx_json.get("value") or "0x0", 16),
            input=bytes.fromhex((tx_json.get("input") or "0x")[2:]),
            timestamp=timestamp,
        )


@dataclass(frozen=True, slots=True)
class TransactionResult:
    """Decoded view of one transaction.  Persisted exactly once, keyed by hash"""

    hash: str
    chain: SupportedChain
    block_number: int
    from_address: str
    to_address: str | None
    value: int
    input: bytes

    decoded_function: DecodedCall | None
    logs: list[DecodedEvent]
    is_multisend: bool
    multisend_batch: MultisendBatch | None

    timestamp: int | None = None
    status: TransactionStatus = "complete"
