import logging
from typing import Any

from eth_utils.abi import function_signature_to_4byte_selector

from nethermind.batchscope.exceptions import BatchscopeError
from nethermind.batchscope.rpc.client import ChainClient
from nethermind.batchscope.utils import address_from_word, is_valid_address

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("proxy")

EIP1967_IMPLEMENTATION_SLOT = bytes.fromhex("360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc")
""" bytes32(uint256(keccak256('eip1967.proxy.implementation')) - 1) """

EIP1822_PROXIABLE_SLOT = bytes.fromhex("c5f16f0fcc639fa48a6947836d9850f504798523bf8c9a3a87d5876cf622bcf7")
""" keccak256('PROXIABLE') """

OPENZEPPELIN_IMPLEMENTATION_SLOT = bytes.fromhex("7050c9e0f4ca769c69bd3a8ef740bc37934f8e2c036e5a723fd8ee048ed3f8c3")
""" keccak256('org.zeppelinos.proxy.implementation') """

SAFE_SINGLETON_SLOT = b"\x00" * 32
""" Safe proxies store the singleton (masterCopy) address in the first storage slot """

STANDARD_PROXY_SLOTS: list[tuple[str, bytes]] = [
    ("EIP-1967", EIP1967_IMPLEMENTATION_SLOT),
    ("EIP-1822", EIP1822_PROXIABLE_SLOT),
    ("OpenZeppelin", OPENZEPPELIN_IMPLEMENTATION_SLOT),
]

IMPLEMENTATION_GETTERS = ["implementation", "getImplementation"]


def is_basic_proxy(raw_abi: list[dict[str, Any]]) -> bool:
    """
    Safe proxies are verified with an ABI containing only a constructor taking the singleton address, and a
    fallback function.
    """
    if len(raw_abi) > 2:
        return False

    has_singleton_constructor = any(
        entry.get("type") == "constructor"
        and len(entry.get("inputs", [])) == 1
        and entry["inputs"][0].get("type") == "address"
        and entry["inputs"][0].get("name") in ("_singleton", "singleton")
        for entry in raw_abi
    )
    return has_singleton_constructor and any(entry.get("type") == "fallback" for entry in raw_abi)


def find_custom_proxy_functions(raw_abi: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Returns view functions named ``*_PROXY`` that return a bytes32 storage slot.  Some proxies expose the slot holding
    their implementation through such a constant.
    """
    return [
        entry
        for entry in raw_abi
        if entry.get("type") == "function"
        and str(entry.get("name", "")).endswith("_PROXY")
        and len(entry.get("inputs", [])) == 0
        and len(entry.get("outputs", [])) == 1
        and entry["outputs"][0].get("type") == "bytes32"
        and entry.get("stateMutability") == "view"
    ]


def find_implementation_getters(raw_abi: list[dict[str, Any]]) -> list[str]:
    """Returns the names of argumentless functions in the ABI that return the implementation address"""
    return [
        entry["name"]
        for entry in raw_abi
        if entry.get("type") == "function"
        and entry.get("name") in IMPLEMENTATION_GETTERS
        and len(entry.get("inputs", [])) == 0
        and len(entry.get("outputs", [])) == 1
        and entry["outputs"][0].get("type") == "address"
    ]


async def read_implementation_slot(
    client: ChainClient, address: str, slot: bytes, block: int | None = None
) -> str | None:
    """
    Reads an implementation address from a storage slot.  Returns None for empty slots, zero addresses and RPC
    failures.
    """
    try:
        word = await client.get_storage_at(address, slot, block)
    except BatchscopeError as exc:
        logger.debug(f"Could not read slot 0x{slot.hex()} of {address}: {exc}")
        return None

    if len(word) < 20:
        return None
    implementation = address_from_word(word)
    return implementation if is_valid_address(implementation) else None


async def _call_for_word(client: ChainClient, address: str, function_name: str, block: int | None) -> bytes | None:
    selector = function_signature_to_4byte_selector(f"{function_name}()")
    try:
        result = await client.call(address, selector, block)
    except BatchscopeError as exc:
        logger.debug(f"{function_name}() call to {address} failed: {exc}")
        return None
    return result[:32] if len(result) >= 32 else None


async def find_implementation(
    client: ChainClient,
    address: str,
    raw_abi: list[dict[str, Any]],
    block: int | None = None,
) -> tuple[str, str] | None:
    """
    Finds the implementation behind a proxy at ``block``.  Checked in order:

    1. Safe singleton in slot 0, only for bare Safe proxy ABIs
    2. Slots returned by ``*_PROXY`` constant functions
    3. EIP-1967, EIP-1822 and OpenZeppelin implementation slots
    4. ``implementation()`` and ``getImplementation()`` calls, if present in the ABI

    :return: (implementation address, proxy pattern), or None if the contract is not a proxy
    """
    candidates: list[tuple[str, bytes]] = []

    if is_basic_proxy(raw_abi):
        candidates.append(("Safe", SAFE_SINGLETON_SLOT))

    for proxy_function in find_custom_proxy_functions(raw_abi):
        slot = await _call_for_word(client, address, proxy_function["name"], block)
        if slot is not None and any(slot):
            candidates.append((proxy_function["name"], slot))

    candidates.extend(STANDARD_PROXY_SLOTS)

    for pattern, slot in candidates:
        implementation = await read_implementation_slot(client, address, slot, block)
        if implementation is not None and implementation.lower() != address.lower():
            logger.debug(f"Found {pattern} implementation {implementation} for {address}")
            return implementation, pattern

    for getter in find_implementation_getters(raw_abi):
        word = await _call_for_word(client, address, getter, block)
        if word is None:
            continue
        implementation = address_from_word(word)
        if is_valid_address(implementation) and implementation.lower() != address.lower():
            logger.debug(f"Found implementation {implementation} for {address} through {getter}()")
            return implementation, getter

    return None
