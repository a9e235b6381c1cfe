import logging
import os
from dataclasses import dataclass
from typing import Literal, Mapping

from nethermind.batchscope.abi.sources import AbidataSource, AbiSource, EtherscanSource
from nethermind.batchscope.rpc.retry import RetryPolicy

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("config")

AbiSourceName = Literal["abidata", "etherscan"]


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}") from None


@dataclass
class BatchscopeConfig:
    """Runtime configuration.  Every field can be set from the environment variable of the same name in upper case"""

    json_rpc: str | None = None
    db_url: str | None = None

    abi_source: AbiSourceName = "abidata"
    etherscan_api_key: str | None = None

    max_concurrency: int = 4
    transaction_timeout: int = 60
    max_multisend_depth: int = 8
    retry_max_attempts: int = 5

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BatchscopeConfig":
        """
        Loads configuration from environment variables

        :param environ: Mapping to read from.  Defaults to os.environ
        :raises ValueError: for malformed integers or unknown ABI sources
        """
        environ = os.environ if environ is None else environ

        abi_source = environ.get("ABI_SOURCE", "abidata").lower()
        if abi_source not in ("abidata", "etherscan"):
            raise ValueError(f"Unknown ABI_SOURCE {abi_source!r}.  Expected 'abidata' or 'etherscan'")

        return cls(
            json_rpc=environ.get("JSON_RPC"),
            db_url=environ.get("DB_URL"),
            abi_source=abi_source,  # type: ignore[arg-type]
            etherscan_api_key=environ.get("ETHERSCAN_API_KEY"),
            max_concurrency=_env_int(environ, "MAX_CONCURRENCY", 4),
            transaction_timeout=_env_int(environ, "TRANSACTION_TIMEOUT", 60),
            max_multisend_depth=_env_int(environ, "MAX_MULTISEND_DEPTH", 8),
            retry_max_attempts=_env_int(environ, "RETRY_MAX_ATTEMPTS", 5),
        )

    def retry_policy(self) -> RetryPolicy:
        """Retry policy shared by the RPC client and the ABI source"""
        return RetryPolicy(max_attempts=self.retry_max_attempts)

    def build_abi_source(self) -> AbiSource:
        """
        Returns the configured ABI source

        :raises ValueError: if Etherscan is selected without an API key
        """
        match self.abi_source:
            case "etherscan":
                if not self.etherscan_api_key:
                    raise ValueError("ETHERSCAN_API_KEY is required when ABI_SOURCE is etherscan")
                return EtherscanSource(self.etherscan_api_key, retry_policy=self.retry_policy())
            case _:
                return AbidataSource(retry_policy=self.retry_policy())
