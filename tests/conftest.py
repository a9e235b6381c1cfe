import asyncio
import random
from typing import Any

import pytest
from eth_utils import to_checksum_address
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from nethermind.batchscope.database.migrations import migrate_up
from nethermind.batchscope.exceptions import RpcResponseError, UpstreamUnavailable
from nethermind.batchscope.types.network import SupportedChain


class FakeAbiSource:
    """AbiSource serving ABIs from a dict, counting every fetch"""

    def __init__(self, abis: dict[str, Any] | None = None, unavailable: bool = False):
        self.abis = {address.lower(): abi for address, abi in (abis or {}).items()}
        self.unavailable = unavailable
        self.delay = 0.0
        self.fetches: list[str] = []

    def add(self, address: str, abi: Any):
        self.abis[address.lower()] = abi

    async def fetch_abi(self, address: str, chain: SupportedChain):
        self.fetches.append(address.lower())
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable:
            raise UpstreamUnavailable(f"ABI source offline while fetching {address}")
        return self.abis.get(address.lower())

    async def close(self):
        pass


class FakeChainClient:
    """ChainClient backed by dicts of storage words, eth_call results and receipts"""

    def __init__(self):
        self.storage: dict[tuple[str, bytes], bytes] = {}
        self.block_storage: dict[tuple[str, bytes, int], bytes] = {}
        self.calls: dict[tuple[str, bytes], bytes] = {}
        self.receipts: dict[str, dict[str, Any] | None] = {}
        self.receipt_error = False
        self.receipt_delay = 0.0
        self.storage_reads: list[tuple[str, bytes, int | None]] = []

    def set_implementation(self, proxy: str, slot: bytes, implementation: str, from_block: int | None = None):
        word = bytes.fromhex(implementation[2:]).rjust(32, b"\x00")
        if from_block is None:
            self.storage[(proxy.lower(), slot)] = word
        else:
            self.block_storage[(proxy.lower(), slot, from_block)] = word

    async def get_storage_at(self, address: str, slot: bytes, block: int | None = None) -> bytes:
        self.storage_reads.append((address.lower(), slot, block))
        matching_blocks = [
            start
            for (addr, stored_slot, start) in self.block_storage
            if addr == address.lower() and stored_slot == slot and (block is None or start <= block)
        ]
        if matching_blocks:
            return self.block_storage[(address.lower(), slot, max(matching_blocks))]
        return self.storage.get((address.lower(), slot), b"\x00" * 32)

    async def call(self, to: str, data: bytes, block: int | None = None) -> bytes:
        result = self.calls.get((to.lower(), data[:4]))
        if result is None:
            raise RpcResponseError(f"execution reverted for call to {to}")
        return result

    async def get_transaction_receipt(self, transaction_hash: str) -> dict[str, Any] | None:
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        if self.receipt_error:
            raise UpstreamUnavailable(f"Node unavailable while fetching {transaction_hash}")
        return self.receipts.get(transaction_hash)


@pytest.fixture(name="random_address")
def fixture_random_address():
    def _generate_random_address():
        return to_checksum_address(random.randbytes(20).hex())

    return _generate_random_address


@pytest.fixture(name="random_hash")
def fixture_random_hash():
    def _generate_random_hash():
        return "0x" + random.randbytes(32).hex()

    return _generate_random_hash


@pytest.fixture(name="abi_source")
def fixture_abi_source():
    return FakeAbiSource()


@pytest.fixture(name="chain_client")
def fixture_chain_client():
    return FakeChainClient()


@pytest.fixture(name="db_engine")
def fixture_db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    migrate_up(engine)
    yield engine
    engine.dispose()

