import logging
from typing import Any, Protocol

from sqlalchemy import Connection, Engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from nethermind.batchscope.database.models import model_for_table
from nethermind.batchscope.exceptions import DatabaseError, PersistenceConflict

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("db").getChild("row_store")


class RowStore(Protocol):
    """Keyed relational store.  Writes are upserts, so reprocessing a transaction overwrites its rows"""

    def upsert(self, table: str, key: dict[str, Any], fields: dict[str, Any]) -> None:
        """Inserts a row, or updates fields of the row matching key"""

    def upsert_many(self, table: str, rows: list[dict[str, Any]]) -> None:
        """Upserts a batch of rows in a single statement.  Each row holds its key columns and fields"""


class SqlRowStore:
    """
    RowStore over SQLAlchemy.  PostgreSQL and SQLite use ``INSERT ... ON CONFLICT DO UPDATE``, other dialects fall back
    to merging rows through the ORM session.
    """

    db_engine: Engine | Connection
    db_session: Session
    db_dialect: str

    def __init__(self, db_engine: Engine | Connection):
        self.db_engine = db_engine
        self.create_session()

    def create_session(self):
        """Creates a new db_session"""
        self.db_session = sessionmaker(self.db_engine)()
        self.db_dialect = self.db_engine.dialect.name

    def upsert(self, table: str, key: dict[str, Any], fields: dict[str, Any]) -> None:
        """
        Inserts a row, or updates the row with the same primary key

        :raises PersistenceConflict: if the database rejects the write
        """
        self.upsert_many(table, [{**fields, **key}])

    def upsert_many(self, table: str, rows: list[dict[str, Any]]) -> None:
        """
        Upserts rows in a single statement

        :raises PersistenceConflict: if the database rejects the write
        :raises DatabaseError: if the table is unknown
        """
        if len(rows) == 0:
            return

        try:
            model = model_for_table(table)
        except ValueError as exc:
            raise DatabaseError(str(exc)) from exc

        insert_table = model.__table__
        primary_keys = [col.name for col in insert_table.primary_key.columns]  # type: ignore[attr-defined]

        try:
            match self.db_dialect:
                case "postgresql" | "sqlite":
                    dialect_insert = postgresql.insert if self.db_dialect == "postgresql" else sqlite.insert
                    statement = dialect_insert(insert_table).values(rows)
                    update_columns = {
                        col: statement.excluded[col] for col in rows[0].keys() if col not in primary_keys
                    }
                    if update_columns:
                        statement = statement.on_conflict_do_update(index_elements=primary_keys, set_=update_columns)
                    else:
                        statement = statement.on_conflict_do_nothing(index_elements=primary_keys)
                    self.db_session.execute(statement)
                case _:
                    for row in rows:
                        self.db_session.merge(model(**row))

            self.db_session.commit()

        except SQLAlchemyError as exc:
            logger.error(f"Error upserting {len(rows)} rows into {table}: {exc}")
            self.db_session.rollback()
            raise PersistenceConflict(f"Could not upsert rows into {table}") from exc

    def close(self):
        """Closes the database session"""
        self.db_session.close()
