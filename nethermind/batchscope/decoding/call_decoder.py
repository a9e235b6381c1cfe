import logging
from typing import TYPE_CHECKING

from eth_utils.abi import function_signature_to_4byte_selector

from nethermind.batchscope.exceptions import BatchscopeError
from nethermind.batchscope.types.decoding import DecodedCall, Operation
from nethermind.batchscope.types.network import SupportedChain
from nethermind.batchscope.utils import to_bytes

from .interface import InterfaceDescription
from .utils import signature_to_name

if TYPE_CHECKING:
    from nethermind.batchscope.abi.store import AbiStore

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("decoding")

MULTISEND_SIGNATURE = "multiSend(bytes)"
EXEC_TRANSACTION_SIGNATURE = (
    "execTransaction(address,uint256,bytes,uint8,uint256,uint256,uint256,address,address,bytes)"
)

KNOWN_SIGNATURES = [
    # ERC20
    "transfer(address,uint256)",
    "transferFrom(address,address,uint256)",
    "approve(address,uint256)",
    # ERC721
    "safeTransferFrom(address,address,uint256)",
    "safeTransferFrom(address,address,uint256,bytes)",
    # ERC1155
    "safeTransferFrom(address,address,uint256,uint256,bytes)",
    "safeBatchTransferFrom(address,address,uint256[],uint256[],bytes)",
    # Safe
    MULTISEND_SIGNATURE,
    EXEC_TRANSACTION_SIGNATURE,
    # Proxies
    "upgradeTo(address)",
    "upgradeToAndCall(address,bytes)",
    "implementation()",
    # Generic routers and smart accounts
    "execute(address,uint256,bytes)",
    "multicall(bytes[])",
    "multicall(uint256,bytes[])",
]

SELECTOR_TABLE: dict[bytes, str] = {
    function_signature_to_4byte_selector(signature): signature for signature in KNOWN_SIGNATURES
}
""" Mapping from 4byte selector to the signature of widely deployed functions.  Used when no ABI is available """

MULTISEND_SELECTOR = function_signature_to_4byte_selector(MULTISEND_SIGNATURE)
EXEC_TRANSACTION_SELECTOR = function_signature_to_4byte_selector(EXEC_TRANSACTION_SIGNATURE)


def decode_call(
    to: str,
    calldata: bytes,
    description: InterfaceDescription | None,
    value: int = 0,
    operation: Operation = Operation.Call,
    implementation_address: str | None = None,
) -> DecodedCall:
    """
    Decodes calldata against an optional interface description.  Never raises.

    * Empty calldata is a plain value transfer
    * Calldata matching a function of the description is decoded into ``args``
    * Otherwise, selectors of widely deployed functions are named, with ``args=None``
    * Unknown selectors leave ``function_name=None``, with the raw calldata preserved

    :param to: Address the call is sent to
    :param calldata: Full calldata, including the 4 byte selector
    :param description: Resolved interface of the ``to`` contract, or None if unavailable
    :param value: Native token value sent with the call
    :param operation: Call or DelegateCall
    :param implementation_address: Implementation the description was resolved from, for proxies
    """
    call = DecodedCall(
        to=to,
        value=value,
        operation=operation,
        raw_data=calldata,
        implementation_address=implementation_address,
    )

    if len(calldata) == 0:
        return call

    if description is not None:
        function_decoder = description.get_function(calldata)
        if function_decoder is not None:
            args = function_decoder.decode(calldata)
            if args is not None:
                call.function_name = function_decoder.name
                call.signature = function_decoder.function_signature
                call.args = args
                return call
            logger.debug(f"Calldata for {to} does not fit {function_decoder.function_signature}")

    known_signature = SELECTOR_TABLE.get(calldata[:4])
    if known_signature is not None:
        call.function_name = signature_to_name(known_signature)
        call.signature = known_signature
        return call

    logger.debug(f"Unknown selector 0x{calldata[:4].hex()} for call to {to}")
    return call


class CallDecoder:
    """
    Proxy aware function call decoder.  Resolves the ABI of the called contract through the AbiStore, and decodes
    against the implementation ABI when the contract is a proxy.
    """

    abi_store: "AbiStore"

    def __init__(self, abi_store: "AbiStore"):
        self.abi_store = abi_store

    async def decode(
        self,
        to: str,
        calldata: bytes | str,
        chain: SupportedChain,
        as_of_block: int,
        value: int = 0,
        operation: Operation = Operation.Call,
    ) -> DecodedCall:
        """
        Decodes a call to a contract.  Plain value transfers return without an ABI lookup.

        :param to: Address the call is sent to
        :param calldata: Calldata bytes or hex string.  Empty input or ``"0x"`` is a plain value transfer
        :param chain: Chain the call was executed on
        :param as_of_block: Block used when reading proxy implementation slots
        :param value: Native token value sent with the call
        :param operation: Call or DelegateCall
        """
        calldata = _coerce_calldata(calldata)
        if len(calldata) == 0:
            return DecodedCall(to=to, value=value, operation=operation, raw_data=calldata)

        try:
            entry = await self.abi_store.resolve(chain, to, as_of_block)
        except BatchscopeError as exc:
            logger.warning(f"ABI resolution failed for {to} on {chain.pretty()}: {exc}")
            return decode_call(to, calldata, None, value, operation)

        return decode_call(
            to,
            calldata,
            entry.description,
            value=value,
            operation=operation,
            implementation_address=entry.implementation,
        )


def _coerce_calldata(calldata: bytes | str) -> bytes:
    if isinstance(calldata, (bytes, bytearray)):
        return bytes(calldata)
    try:
        return to_bytes(calldata)
    except ValueError:
        logger.warning(f"Calldata has an odd number of hex digits, dropping trailing nibble: {calldata[:12]}...")
        return to_bytes(calldata[:-1])
