from enum import Enum

# Disabling stupid naming check that wants enums to use UPPER_CASE
# pylint: disable=invalid-name


class SupportedChain(Enum):
    """EVM chains that transactions can be decoded for"""

    mainnet = "mainnet"
    gnosis = "gnosis"
    base = "base"

    @property
    def chain_id(self) -> int:
        """EIP-155 chain id"""
        match self:
            case SupportedChain.gnosis:
                return 100
            case SupportedChain.base:
                return 8453
            case _:
                return 1

    @classmethod
    def from_chain_id(cls, chain_id: int) -> "SupportedChain":
        """
        Returns the chain for an EIP-155 chain id

        >>> SupportedChain.from_chain_id(100)
        <SupportedChain.gnosis: 'gnosis'>

        :param chain_id:
        :return:
        """
        for chain in cls:
            if chain.chain_id == chain_id:
                return chain
        raise ValueError(f"Unsupported chain id: {chain_id}")

    @classmethod
    def parse(cls, value: "str | int | SupportedChain") -> "SupportedChain":
        """Accepts a chain name, a chain id, or a SupportedChain"""
        if isinstance(value, SupportedChain):
            return value
        if isinstance(value, int):
            return cls.from_chain_id(value)
        if value.isdigit():
            return cls.from_chain_id(int(value))
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Unsupported chain: {value}") from None

    def explorer_url(self, address: str) -> str:
        """Returns a block explorer link for an address"""
        match self:
            case SupportedChain.base:
                return f"https://basescan.org/address/{address}"
            case SupportedChain.gnosis:
                return f"https://gnosisscan.io/address/{address}"
            case _:
                return f"https://etherscan.io/address/{address}"

    def pretty(self):
        """Returns a pretty version of the chain name"""
        match self:
            case SupportedChain.mainnet:
                return "Ethereum Mainnet"
            case _:
                return self.value.capitalize()
