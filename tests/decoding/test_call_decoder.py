from eth_utils.abi import function_signature_to_4byte_selector

from nethermind.batchscope.abi.proxy import EIP1967_IMPLEMENTATION_SLOT
from nethermind.batchscope.abi.store import AbiStore
from nethermind.batchscope.decoding.call_decoder import (
    EXEC_TRANSACTION_SELECTOR,
    MULTISEND_SELECTOR,
    SELECTOR_TABLE,
    CallDecoder,
    decode_call,
)
from nethermind.batchscope.decoding.interface import InterfaceDescription
from nethermind.batchscope.types.decoding import Operation
from nethermind.batchscope.types.network import SupportedChain
from tests.resources.abi import EIP1967_PROXY_ABI, ERC20_ABI, VAULT_ABI
from tests.utils import encode_call


def test_safe_selectors():
    assert MULTISEND_SELECTOR == bytes.fromhex("8d80ff0a")
    assert EXEC_TRANSACTION_SELECTOR == bytes.fromhex("6a761202")
    assert SELECTOR_TABLE[bytes.fromhex("a9059cbb")] == "transfer(address,uint256)"


def test_value_transfer(random_address):
    to = random_address()
    call = decode_call(to, b"", InterfaceDescription(ERC20_ABI), value=10**18)

    assert call.is_value_transfer
    assert call.function_name is None
    assert call.selector is None
    assert call.value == 10**18


def test_decode_against_description(random_address):
    receiver = random_address()
    calldata = encode_call("deposit(uint256,address)", ["uint256", "address"], [5, receiver])

    call = decode_call(random_address(), calldata, InterfaceDescription(VAULT_ABI, "Vault"), value=5)

    assert call.function_name == "deposit"
    assert call.signature == "deposit(uint256,address)"
    assert call.args == {"assets": 5, "receiver": receiver}
    assert call.raw_data == calldata


def test_selector_table_fallback(random_address):
    calldata = encode_call("approve(address,uint256)", ["address", "uint256"], [random_address(), 1])

    call = decode_call(random_address(), calldata, None)

    assert call.function_name == "approve"
    assert call.signature == "approve(address,uint256)"
    assert call.args is None


def test_unknown_selector_keeps_raw_calldata(random_address):
    calldata = bytes.fromhex("deadbeef") + b"\x00" * 32

    call = decode_call(random_address(), calldata, InterfaceDescription(VAULT_ABI), operation=Operation.DelegateCall)

    assert call.function_name is None
    assert call.args is None
    assert call.raw_data == calldata
    assert call.selector == bytes.fromhex("deadbeef")
    assert call.operation == Operation.DelegateCall


def test_mismatched_arguments_fall_back_to_selector_table(random_address):
    truncated = function_signature_to_4byte_selector("transfer(address,uint256)") + b"\x00" * 10

    call = decode_call(random_address(), truncated, InterfaceDescription(ERC20_ABI))

    assert call.function_name == "transfer"
    assert call.args is None


async def test_call_decoder_resolves_abi(abi_source, random_address):
    vault, receiver = random_address(), random_address()
    abi_source.add(vault, VAULT_ABI)
    decoder = CallDecoder(AbiStore(abi_source))

    calldata = encode_call("deposit(uint256,address)", ["uint256", "address"], [7, receiver])
    call = await decoder.decode(vault, "0x" + calldata.hex(), SupportedChain.gnosis, 100)

    assert call.function_name == "deposit"
    assert call.args == {"assets": 7, "receiver": receiver}
    assert abi_source.fetches == [vault.lower()]


async def test_call_decoder_skips_lookup_for_value_transfers(abi_source, random_address):
    decoder = CallDecoder(AbiStore(abi_source))

    call = await decoder.decode(random_address(), "0x", SupportedChain.mainnet, 1, value=3)

    assert call.is_value_transfer
    assert call.value == 3
    assert abi_source.fetches == []


async def test_call_decoder_degrades_when_source_is_unavailable(abi_source, random_address):
    abi_source.unavailable = True
    decoder = CallDecoder(AbiStore(abi_source))
    calldata = encode_call("transfer(address,uint256)", ["address", "uint256"], [random_address(), 9])

    call = await decoder.decode(random_address(), calldata, SupportedChain.base, 1)

    assert call.function_name == "transfer"
    assert call.args is None


async def test_call_decoder_drops_odd_nibble(abi_source, random_address):
    decoder = CallDecoder(AbiStore(abi_source))
    calldata = encode_call("transfer(address,uint256)", ["address", "uint256"], [random_address(), 9])

    call = await decoder.decode(random_address(), "0x" + calldata.hex() + "f", SupportedChain.mainnet, 1)

    assert call.raw_data == calldata
    assert call.function_name == "transfer"


async def test_call_to_proxy_uses_implementation_abi(abi_source, chain_client, random_address):
    proxy, implementation, receiver = random_address(), random_address(), random_address()
    abi_source.add(proxy, EIP1967_PROXY_ABI)
    abi_source.add(implementation, VAULT_ABI)
    chain_client.set_implementation(proxy, EIP1967_IMPLEMENTATION_SLOT, implementation)
    decoder = CallDecoder(AbiStore(abi_source, chain_client))

    calldata = encode_call("deposit(uint256,address)", ["uint256", "address"], [3, receiver])
    call = await decoder.decode(proxy, calldata, SupportedChain.mainnet, 18_000_000)

    assert call.to == proxy
    assert call.function_name == "deposit"
    assert call.args == {"assets": 3, "receiver": receiver}
    assert call.implementation_address == implementation


async def test_unknown_selector_without_abi(abi_source, random_address):
    calldata = bytes.fromhex("12345678") + b"\x00" * 32

    call = await CallDecoder(AbiStore(abi_source)).decode(random_address(), calldata, SupportedChain.mainnet, 1)

    assert call.function_name is None
    assert call.args is None
    assert call.raw_data == calldata
