from typing import Annotated

from sqlalchemy import BigInteger, Numeric, Text
from sqlalchemy.orm import DeclarativeBase, mapped_column

# Binary Data is Represented as a String of Hex Digits
# -- Addresses are stored lower-cased so joins do not depend on checksum casing.

Hash32PK = Annotated[str, mapped_column(Text, primary_key=True)]

IndexedAddress = Annotated[str, mapped_column(Text, index=True, nullable=False)]
IndexedNullableAddress = Annotated[str, mapped_column(Text, index=True, nullable=True)]
IndexedBlockNumber = Annotated[int, mapped_column(BigInteger, nullable=False, index=True)]
IndexedChain = Annotated[str, mapped_column(Text, index=True, nullable=False)]

UInt256 = Annotated[int, mapped_column(Numeric(78, 0))]

CalldataBytes = Annotated[str, mapped_column(Text, nullable=True)]


class Base(DeclarativeBase):
    """Base class for batchscope tables"""
