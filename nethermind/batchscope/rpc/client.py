import itertools
import logging
from typing import Any, Protocol

import aiohttp
from aiohttp.client_exceptions import ContentTypeError

from nethermind.batchscope.exceptions import (
    RpcResponseError,
    UpstreamHostError,
    UpstreamRateLimitError,
)
from nethermind.batchscope.utils import to_bytes, to_hex

from .retry import RetryPolicy

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("rpc")

DEFAULT_HEADERS = {"Content-Type": "application/json"}

# pylint: disable=raise-missing-from


class ChainClient(Protocol):
    """Chain access required for proxy resolution and receipt fetching"""

    async def get_storage_at(self, address: str, slot: bytes, block: int | None = None) -> bytes:
        """Returns the 32 byte storage word at slot"""

    async def call(self, to: str, data: bytes, block: int | None = None) -> bytes:
        """Executes an eth_call and returns the return data"""

    async def get_transaction_receipt(self, transaction_hash: str) -> dict[str, Any] | None:
        """Returns the receipt JSON, or None if the transaction is unknown"""


def parse_retry_after(value: str | None) -> float | None:
    """
    Parses a Retry-After header given in seconds.  HTTP dates are not supported, and return None

    >>> parse_retry_after("12")
    12.0
    """
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _block_tag(block: int | None) -> str:
    return "latest" if block is None else hex(block)


class JsonRpcClient:
    """
    Async JSON-RPC client over aiohttp.  Every request is retried through the RetryPolicy.  Can be used as an async
    context manager to close the underlying session.
    """

    json_rpc: str
    retry_policy: RetryPolicy

    def __init__(
        self,
        json_rpc: str,
        retry_policy: RetryPolicy | None = None,
        request_headers: dict[str, str] | None = None,
        timeout: float = 30,
    ):
        self.json_rpc = json_rpc
        self.retry_policy = retry_policy or RetryPolicy()
        self._headers = request_headers or DEFAULT_HEADERS
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._request_ids = itertools.count(1)

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers, timeout=self._timeout)
        return self._session

    async def close(self):
        """Closes the HTTP session"""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post(self, method: str, params: list[Any]) -> Any:
        request = {"jsonrpc": "2.0", "id": next(self._request_ids), "method": method, "params": params}
        session = self._get_session()

        async with session.post(self.json_rpc, json=request) as response:
            if response.status == 429:
                raise UpstreamRateLimitError(
                    f"JSON RPC Server Initializing Rate Limits for {method}",
                    retry_after=parse_retry_after(response.headers.get("Retry-After")),
                )
            try:
                response_json = await response.json()
            except ContentTypeError:
                match response.status:
                    case 1015:
                        raise UpstreamRateLimitError("JSON RPC Server Initializing Rate Limits")
                    case 500 | 502 | 503 | 504:
                        raise UpstreamHostError(f"Internal Server Error ({response.status}) for {method}")
                    case _:
                        logger.error(f"Unexpected response for {method}.  Error Code: {response.status}")
                        logger.error(await response.text())
                        raise UpstreamHostError(f"Unexpected Content Type in response for {method}")

        if "error" in response_json:
            logger.debug(f"Error in RPC response: {response_json}")
            raise RpcResponseError(f"Error in RPC response for {method}: {response_json['error'].get('message')}")

        return response_json.get("result")

    async def request(self, method: str, params: list[Any]) -> Any:
        """
        Sends a JSON-RPC request, retrying rate limits and host errors

        :raises UpstreamUnavailable: if the node cannot be reached after all retries
        :raises RpcResponseError: if the node answers with an error object
        """
        return await self.retry_policy.run(self._post, method, params)

    async def get_storage_at(self, address: str, slot: bytes, block: int | None = None) -> bytes:
        """Returns the 32 byte storage word at slot for address"""
        result = await self.request("eth_getStorageAt", [address, to_hex(slot), _block_tag(block)])
        return to_bytes(result or "0x", pad=32)

    async def call(self, to: str, data: bytes, block: int | None = None) -> bytes:
        """Executes an eth_call against to, returning the raw return data"""
        result = await self.request("eth_call", [{"to": to, "data": to_hex(data)}, _block_tag(block)])
        return to_bytes(result or "0x")

    async def get_transaction_receipt(self, transaction_hash: str) -> dict[str, Any] | None:
        """Returns the receipt of a transaction, or None if it is not yet mined"""
        return await self.request("eth_getTransactionReceipt", [transaction_hash])

    async def get_transaction(self, transaction_hash: str) -> dict[str, Any] | None:
        """Returns a transaction by hash, or None if the node does not know it"""
        return await self.request("eth_getTransactionByHash", [transaction_hash])

    async def get_block_timestamp(self, block: int) -> int | None:
        """Returns the timestamp of a block"""
        block_json = await self.request("eth_getBlockByNumber", [hex(block), False])
        if block_json is None:
            return None
        return int(block_json["timestamp"], 16)

    async def get_chain_id(self) -> int:
        """Returns the chain id reported by the node"""
        return int(await self.request("eth_chainId", []), 16)
