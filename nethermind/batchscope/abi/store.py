import asyncio
import logging
import time
import traceback
from dataclasses import replace

from eth_utils import to_checksum_address

from nethermind.batchscope.decoding.interface import InterfaceDescription
from nethermind.batchscope.decoding.utils import normalize_abi
from nethermind.batchscope.exceptions import BatchscopeError, UnresolvedAbi, UpstreamUnavailable
from nethermind.batchscope.rpc.client import ChainClient
from nethermind.batchscope.types.decoding import AbiCacheEntry, abi_cache_key
from nethermind.batchscope.types.network import SupportedChain
from nethermind.batchscope.utils import is_valid_address

from .cache import AbiCache, CacheKey, InMemoryAbiCache
from .proxy import find_implementation
from .sources import AbiSource

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("abi")

DEFAULT_MAX_PROXY_DEPTH = 3
DEFAULT_NEGATIVE_TTL = 600.0

# pylint: disable=broad-exception-caught


class AbiStore:
    """
    Resolves the ABI that applies to a contract, following proxies to their implementation.  Resolved entries are
    cached by (chain, address).  Contracts that could not be resolved are remembered in a process local negative
    cache until :meth:`clear_unresolved` starts a new processing pass, or until ``negative_ttl`` seconds elapse.
    They are never written to the durable cache.
    """

    source: AbiSource
    chain_client: ChainClient | None
    cache: AbiCache

    track_upgrades: bool
    """
    If True, a cache hit on a proxy at a later block than the cached entry re-reads the implementation slot, and
    replaces the entry if the proxy was upgraded.  Otherwise, the first observed implementation is used for every
    block.
    """

    max_proxy_depth: int
    """ Maximum number of proxy hops followed when resolving implementations """

    negative_ttl: float
    """ Seconds an unresolved contract is short-circuited before the source is asked again """

    def __init__(
        self,
        source: AbiSource,
        chain_client: ChainClient | None = None,
        cache: AbiCache | None = None,
        track_upgrades: bool = False,
        max_proxy_depth: int = DEFAULT_MAX_PROXY_DEPTH,
        negative_ttl: float = DEFAULT_NEGATIVE_TTL,
    ):
        self.source = source
        self.chain_client = chain_client
        self.cache = cache if cache is not None else InMemoryAbiCache()
        self.track_upgrades = track_upgrades
        self.max_proxy_depth = max_proxy_depth
        self.negative_ttl = negative_ttl
        self._unresolved: dict[CacheKey, tuple[AbiCacheEntry, float]] = {}

    def clear_unresolved(self):
        """Forgets every unresolved contract, so the next lookup asks the ABI source again"""
        self._unresolved.clear()

    async def resolve(self, chain: SupportedChain, address: str, as_of_block: int) -> AbiCacheEntry:
        """
        Returns the ABI entry for a contract.  Never raises: contracts that cannot be resolved return an entry with
        ``description=None``.

        :param chain: Chain the contract is deployed on
        :param address: Contract address
        :param as_of_block: Block used when reading proxy implementation slots
        """
        try:
            return await self._resolve(chain, address, as_of_block, depth=0)
        except Exception as exc:
            logger.error(
                f"Unexpected error resolving {address} on {chain.pretty()}: "
                f"{traceback.format_exception(type(exc), exc, exc.__traceback__)}"
            )
            return AbiCacheEntry(chain=chain, address=address, as_of_block=as_of_block, description=None)

    async def resolve_many(
        self, chain: SupportedChain, addresses: list[str], as_of_block: int
    ) -> dict[str, InterfaceDescription | None]:
        """
        Resolves several contracts concurrently.

        :return: Mapping of lower-cased address to resolved description
        """
        unique_addresses = list(dict.fromkeys(address.lower() for address in addresses))
        entries = await asyncio.gather(
            *[self.resolve(chain, address, as_of_block) for address in unique_addresses],
            return_exceptions=True,
        )

        descriptions: dict[str, InterfaceDescription | None] = {}
        for address, entry in zip(unique_addresses, entries):
            if isinstance(entry, asyncio.CancelledError):
                raise entry
            if isinstance(entry, BaseException):
                logger.error(f"Resolving {address} on {chain.pretty()} failed: {entry!r}")
                descriptions[address] = None
            else:
                descriptions[address] = entry.description
        return descriptions

    def _lookup(self, key: CacheKey) -> AbiCacheEntry | None:
        if (held := self._unresolved.get(key)) is not None:
            entry, expires_at = held
            if time.monotonic() < expires_at:
                return entry
            del self._unresolved[key]
        return self.cache.get(key)

    def _store(self, key: CacheKey, entry: AbiCacheEntry):
        if not entry.resolved:
            self._unresolved[key] = (entry, time.monotonic() + self.negative_ttl)
            return

        try:
            self.cache.put(key, entry)
        except BatchscopeError as exc:
            logger.error(f"Failed to cache ABI for {entry.address} on {entry.chain.pretty()}: {exc}")

    async def _resolve(self, chain: SupportedChain, address: str, as_of_block: int, depth: int) -> AbiCacheEntry:
        if not is_valid_address(address):
            logger.debug(f"Invalid contract address: {address}")
            return AbiCacheEntry(chain=chain, address=address, as_of_block=as_of_block, description=None)

        key = abi_cache_key(chain, address)
        cached = self._lookup(key)
        if cached is not None:
            if self.track_upgrades and cached.is_proxy and as_of_block > cached.as_of_block:
                return await self._refresh_proxy(key, cached, as_of_block, depth)
            return cached

        entry = await self._fetch_entry(chain, to_checksum_address(address), as_of_block, depth)
        self._store(key, entry)
        return entry

    async def _fetch_entry(self, chain: SupportedChain, address: str, as_of_block: int, depth: int) -> AbiCacheEntry:
        unresolved = AbiCacheEntry(chain=chain, address=address, as_of_block=as_of_block, description=None)

        try:
            raw_abi = await self.source.fetch_abi(address, chain)
        except UpstreamUnavailable as exc:
            logger.warning(f"ABI source unavailable for {address} on {chain.pretty()}: {exc}")
            return unresolved
        except Exception as exc:
            logger.error(
                f"Unexpected error fetching ABI for {address} on {chain.pretty()}: "
                f"{traceback.format_exception(type(exc), exc, exc.__traceback__)}"
            )
            return unresolved

        if not raw_abi:
            logger.info(f"No ABI found for contract {address} on {chain.pretty()}")
            return unresolved

        try:
            abi_entries = normalize_abi(raw_abi)
            description = InterfaceDescription(abi_entries, address)
        except UnresolvedAbi as exc:
            logger.warning(f"Could not parse ABI for {address}: {exc}")
            return unresolved

        entry = AbiCacheEntry(
            chain=chain,
            address=address,
            as_of_block=as_of_block,
            description=description,
            raw_abi=list(abi_entries),
        )

        if self.chain_client is None or depth >= self.max_proxy_depth:
            return entry

        implementation = await find_implementation(self.chain_client, address, entry.raw_abi or [], as_of_block)
        if implementation is None:
            return entry

        return await self._with_implementation(entry, implementation[0], as_of_block, depth)

    async def _with_implementation(
        self, entry: AbiCacheEntry, implementation: str, as_of_block: int, depth: int
    ) -> AbiCacheEntry:
        logger.info(f"Resolving implementation {implementation} for proxy {entry.address}")
        implementation_entry = await self._resolve(entry.chain, implementation, as_of_block, depth + 1)

        entry.is_proxy = True
        entry.implementation = implementation
        if implementation_entry.resolved:
            entry.description = implementation_entry.description
            entry.raw_abi = implementation_entry.raw_abi
        else:
            logger.warning(f"Implementation {implementation} has no ABI, decoding {entry.address} with the proxy ABI")

        return entry

    async def _refresh_proxy(
        self, key: CacheKey, cached: AbiCacheEntry, as_of_block: int, depth: int
    ) -> AbiCacheEntry:
        if self.chain_client is None:
            return cached

        implementation = await find_implementation(self.chain_client, cached.address, cached.raw_abi or [], as_of_block)
        if implementation is None or (cached.implementation or "").lower() == implementation[0].lower():
            return cached

        logger.info(
            f"Proxy {cached.address} upgraded from {cached.implementation} to {implementation[0]} "
            f"by block {as_of_block}"
        )
        refreshed = replace(cached, as_of_block=as_of_block)
        refreshed = await self._with_implementation(refreshed, implementation[0], as_of_block, depth)
        self._store(key, refreshed)
        return refreshed
