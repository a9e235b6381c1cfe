import logging
import threading
from typing import Protocol

from sqlalchemy import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from nethermind.batchscope.database.models.indexer import ContractAbi
from nethermind.batchscope.database.writers.row_store import SqlRowStore
from nethermind.batchscope.decoding.interface import InterfaceDescription
from nethermind.batchscope.exceptions import BatchscopeError
from nethermind.batchscope.types.decoding import AbiCacheEntry
from nethermind.batchscope.types.network import SupportedChain

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("abi")

CacheKey = tuple[str, str]
""" (chain name, lower-cased address) """


class AbiCache(Protocol):
    """Store of resolved ABIs keyed by (chain, address)"""

    def get(self, key: CacheKey) -> AbiCacheEntry | None:
        """Returns the cached entry, or None on a miss"""

    def put(self, key: CacheKey, entry: AbiCacheEntry) -> None:
        """Stores an entry, replacing any existing entry for the key"""


class InMemoryAbiCache:
    """Process local ABI cache.  Safe for use from multiple threads"""

    def __init__(self):
        self._entries: dict[CacheKey, AbiCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> AbiCacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: CacheKey, entry: AbiCacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry

    def clear(self):
        """Drops every cached entry"""
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey):
        with self._lock:
            return key in self._entries


class SqlAbiCache:
    """
    Durable ABI cache backed by the ``contract_abis`` table.  Only resolved entries are written, unresolved lookups
    stay in the store's process local negative cache.  Rows read from the database are kept in memory so each
    InterfaceDescription is only built once per process.
    """

    def __init__(self, db_engine: Engine | Connection):
        self.db_engine = db_engine
        self.row_store = SqlRowStore(db_engine)
        self._session_factory = sessionmaker(db_engine)
        self._memory = InMemoryAbiCache()

    def get(self, key: CacheKey) -> AbiCacheEntry | None:
        if (entry := self._memory.get(key)) is not None:
            return entry

        chain, address = key
        try:
            with self._session_factory() as session:
                row = session.get(ContractAbi, {"chain": chain, "address": address})
        except SQLAlchemyError as exc:
            logger.error(f"Error reading cached ABI for {address} on {chain}: {exc}")
            return None

        if row is None:
            return None

        try:
            description = InterfaceDescription.from_abi(row.abi_json, row.address)
        except BatchscopeError as exc:
            logger.error(f"Invalid ABI format in database for {address} on {chain}: {exc}")
            return None

        entry = AbiCacheEntry(
            chain=SupportedChain(row.chain),
            address=row.address,
            as_of_block=row.as_of_block,
            description=description,
            is_proxy=row.is_proxy,
            implementation=row.implementation_address,
            raw_abi=row.abi_json,
        )
        self._memory.put(key, entry)
        return entry

    def put(self, key: CacheKey, entry: AbiCacheEntry) -> None:
        if not entry.resolved or entry.raw_abi is None:
            logger.debug(f"Not persisting unresolved ABI for {entry.address}")
            return

        chain, address = key
        self.row_store.upsert(
            ContractAbi.__tablename__,
            key={"chain": chain, "address": address},
            fields={
                "abi_json": entry.raw_abi,
                "as_of_block": entry.as_of_block,
                "is_proxy": entry.is_proxy,
                "implementation_address": entry.implementation,
                "location": entry.chain.explorer_url(address),
            },
        )
        self._memory.put(key, entry)
