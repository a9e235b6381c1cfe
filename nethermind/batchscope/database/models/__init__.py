from typing import Type

from .base import Base
from .indexer import ContractAbi, SubTransaction, Transaction, TransactionLog

ROW_MODELS: dict[str, Type[Base]] = {
    Transaction.__tablename__: Transaction,
    TransactionLog.__tablename__: TransactionLog,
    SubTransaction.__tablename__: SubTransaction,
    ContractAbi.__tablename__: ContractAbi,
}


def model_for_table(table_name: str) -> Type[Base]:
    """
    Returns the ORM model for a table name

    :param table_name:
    :return:
    """
    try:
        return ROW_MODELS[table_name]
    except KeyError:
        raise ValueError(f"Unknown table: {table_name}") from None
