from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, PrimaryKeyConstraint, SmallInteger, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import (
    Base,
    CalldataBytes,
    Hash32PK,
    IndexedAddress,
    IndexedBlockNumber,
    IndexedChain,
    IndexedNullableAddress,
    UInt256,
)


class Transaction(Base):
    """
    Decoded transaction.  Written once per transaction hash, and overwritten when a transaction is reprocessed
    """

    __tablename__ = "transactions"

    hash: Mapped[Hash32PK]
    chain: Mapped[IndexedChain]
    block_number: Mapped[IndexedBlockNumber]
    timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    from_address: Mapped[IndexedAddress]
    to_address: Mapped[IndexedNullableAddress]
    value: Mapped[UInt256]
    input: Mapped[CalldataBytes]

    function_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    decoded_function: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    is_multisend: Mapped[bool] = mapped_column(Boolean, default=False)
    multisend_summary: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    decode_errors: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    log_count: Mapped[int] = mapped_column(SmallInteger, default=0)
    status: Mapped[str] = mapped_column(Text, default="complete")


class TransactionLog(Base):
    """Event log emitted by a transaction, with its decoded arguments when decoding succeeded"""

    __tablename__ = "transaction_logs"

    transaction_hash: Mapped[str] = mapped_column(Text)
    log_index: Mapped[int] = mapped_column(BigInteger)

    chain: Mapped[IndexedChain]
    block_number: Mapped[IndexedBlockNumber]
    timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    contract_address: Mapped[IndexedAddress]

    event_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    topic0: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    topics: Mapped[list[str]] = mapped_column(JSON)
    data: Mapped[CalldataBytes]
    decoded_args: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (PrimaryKeyConstraint("transaction_hash", "log_index"),)


class SubTransaction(Base):
    """
    Sub-call of a Safe multiSend or execTransaction.  Nested batches are flattened depth first, with ``parent_index``
    pointing at the sub_index of the enclosing sub-call
    """

    __tablename__ = "sub_transactions"

    transaction_hash: Mapped[str] = mapped_column(Text)
    sub_index: Mapped[int] = mapped_column(BigInteger)

    parent_index: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    depth: Mapped[int] = mapped_column(SmallInteger, default=0)

    operation: Mapped[int] = mapped_column(SmallInteger)
    to_address: Mapped[IndexedAddress]
    value: Mapped[UInt256]
    data: Mapped[CalldataBytes]

    function_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    decoded_args: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    implementation_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_transfer: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (PrimaryKeyConstraint("transaction_hash", "sub_index"),)


class ContractAbi(Base):
    """Durable ABI cache.  One row per contract and chain, overwritten when a proxy upgrade is observed"""

    __tablename__ = "contract_abis"

    chain: Mapped[str] = mapped_column(Text)
    address: Mapped[str] = mapped_column(Text)

    abi_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    as_of_block: Mapped[int] = mapped_column(BigInteger)
    is_proxy: Mapped[bool] = mapped_column(Boolean, default=False)
    implementation_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (PrimaryKeyConstraint("chain", "address"),)
