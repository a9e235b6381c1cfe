import json
import logging
from typing import Any, Protocol

import aiohttp
from aiohttp.client_exceptions import ContentTypeError

from nethermind.batchscope.exceptions import UpstreamHostError, UpstreamRateLimitError
from nethermind.batchscope.rpc.client import parse_retry_after
from nethermind.batchscope.rpc.retry import RetryPolicy
from nethermind.batchscope.types.network import SupportedChain

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("abi")

RawAbi = list[dict[str, Any]]

# pylint: disable=raise-missing-from


class AbiSource(Protocol):
    """Remote registry of verified contract ABIs"""

    async def fetch_abi(self, address: str, chain: SupportedChain) -> RawAbi | None:
        """
        Returns the verified ABI of a contract, or None if the contract is not verified

        :raises UpstreamUnavailable: if the registry cannot be reached after all retries
        """


class _HttpAbiSource:
    """Session handling shared by HTTP ABI registries"""

    retry_policy: RetryPolicy

    def __init__(self, retry_policy: RetryPolicy | None = None, timeout: float = 30):
        self.retry_policy = retry_policy or RetryPolicy()
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"}, timeout=self._timeout)
        return self._session

    async def close(self):
        """Closes the HTTP session"""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any | None:
        """
        GET request returning the decoded JSON body.  Returns None for 400 and 404 responses, which registries use for
        unknown or invalid contracts.
        """
        async with self._get_session().get(url, params=params) as response:
            match response.status:
                case 400 | 404:
                    logger.debug(f"{url} responded {response.status}: contract is invalid or unverified")
                    return None
                case 429 | 1015:
                    raise UpstreamRateLimitError(
                        f"Rate limit exceeded for {url}",
                        retry_after=parse_retry_after(response.headers.get("Retry-After")),
                    )
                case 500 | 502 | 503 | 504:
                    raise UpstreamHostError(f"Internal Server Error ({response.status}) for {url}")

            try:
                return await response.json()
            except ContentTypeError:
                logger.error(f"Unexpected response from {url}.  Error Code: {response.status}")
                raise UpstreamHostError(f"Unexpected Content Type in response from {url}")
            except ValueError as exc:
                logger.error(f"Malformed JSON body from {url}: {exc}")
                raise UpstreamHostError(f"Malformed JSON in response from {url}")


class AbidataSource(_HttpAbiSource):
    """
    Fetches verified ABIs from abidata.net.  Responses have the shape ``{"ok": true, "abi": [...]}``
    """

    base_url: str

    def __init__(self, base_url: str = "https://abidata.net", retry_policy: RetryPolicy | None = None):
        super().__init__(retry_policy)
        self.base_url = base_url.rstrip("/")

    async def _fetch(self, address: str, chain: SupportedChain) -> RawAbi | None:
        response_json = await self._get_json(f"{self.base_url}/{address}", params={"network": chain.value})
        if not response_json or not response_json.get("ok") or not response_json.get("abi"):
            return None
        return response_json["abi"]

    async def fetch_abi(self, address: str, chain: SupportedChain) -> RawAbi | None:
        """
        Fetches the ABI for address on chain

        :raises UpstreamUnavailable: if abidata.net cannot be reached after all retries
        """
        logger.debug(f"Fetching ABI for {address} on {chain.pretty()} from {self.base_url}")
        return await self.retry_policy.run(self._fetch, address, chain)


class EtherscanSource(_HttpAbiSource):
    """
    Fetches verified ABIs from the Etherscan V2 multichain API, which serves every supported chain from a single
    endpoint selected by ``chainid``
    """

    api_key: str
    base_url: str

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.etherscan.io/v2/api",
        retry_policy: RetryPolicy | None = None,
    ):
        super().__init__(retry_policy)
        self.api_key = api_key
        self.base_url = base_url

    async def _fetch(self, address: str, chain: SupportedChain) -> RawAbi | None:
        params = {
            "chainid": chain.chain_id,
            "module": "contract",
            "action": "getabi",
            "address": address,
            "apikey": self.api_key,
        }
        response_json = await self._get_json(self.base_url, params=params)
        if not response_json:
            return None

        result = response_json.get("result")
        if response_json.get("status") != "1":
            if isinstance(result, str) and "rate limit" in result.lower():
                raise UpstreamRateLimitError(f"Etherscan rate limit: {result}")
            logger.debug(f"Etherscan has no ABI for {address}: {result}")
            return None

        try:
            return json.loads(result)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Etherscan returned an unparseable ABI for {address}")
            return None

    async def fetch_abi(self, address: str, chain: SupportedChain) -> RawAbi | None:
        """
        Fetches the ABI for address on chain

        :raises UpstreamUnavailable: if Etherscan cannot be reached after all retries
        """
        logger.debug(f"Fetching ABI for {address} on {chain.pretty()} from Etherscan")
        return await self.retry_policy.run(self._fetch, address, chain)
