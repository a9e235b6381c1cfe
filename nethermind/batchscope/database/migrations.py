import logging

from sqlalchemy import Engine
from sqlalchemy.schema import CreateSchema

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("db")


def migrate_up(db_engine: Engine):
    """Create Sqlalchemy DB Tables"""
    # pylint: disable=import-outside-toplevel,unused-import
    import nethermind.batchscope.database.models.indexer

    from .models.base import Base

    # pylint: enable=import-outside-toplevel,unused-import

    schemas = {table.schema for table in Base.metadata.tables.values() if table.schema is not None}
    if schemas:
        with db_engine.connect() as conn:
            for schema_name in schemas:
                conn.execute(CreateSchema(schema_name, if_not_exists=True))

            conn.commit()

    Base.metadata.create_all(bind=db_engine)
    logger.info(f"Created tables: {', '.join(sorted(Base.metadata.tables.keys()))}")
