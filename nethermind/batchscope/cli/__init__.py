import click
from sqlalchemy import create_engine

from nethermind.batchscope.cli.decode import decode_group
from nethermind.batchscope.cli.utils import db_url_option, group_options
from nethermind.batchscope.database.migrations import migrate_up


@click.group()
def batchscope_cli():
    """Command Line Interface for Nethermind Batchscope"""


@batchscope_cli.command(name="migrate-up")
@group_options(db_url_option)
def cli_migrate_up(db_url):
    """
    Migrate DB Tables to Latest Version
    """
    if db_url is None:
        raise click.UsageError("--db-url or the DB_URL environment variable is required")

    db_engine = create_engine(db_url)
    click.echo("Starting Database Migrations")

    migrate_up(db_engine)

    click.echo("Database Migration Complete")


# Adding Command Groups
batchscope_cli.add_command(decode_group, name="decode")
