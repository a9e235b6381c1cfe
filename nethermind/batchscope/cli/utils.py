import json
import logging
import os
from logging import Logger
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from nethermind.batchscope.types.decoding import DecodedCall, MultisendBatch
from nethermind.batchscope.types.network import SupportedChain
from nethermind.batchscope.utils import json_safe, to_hex

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("cli")


def rich_json(value: Any) -> str:
    """Dumps decoded values to JSON, converting bytes and large ints to strings"""
    return json.dumps(json_safe(value))


def cli_logger_config(instrument_logger: Logger) -> Console:
    rich_console = Console()
    instrument_logger.handlers.clear()

    instrument_logger.addHandler(RichHandler(show_path=False, console=rich_console))
    instrument_logger.setLevel(logging.INFO)
    return rich_console


def group_options(*options):
    """Decorator to group multiple click options together"""

    def wrapper(function):
        for option in reversed(options):
            function = option(function)
        return function

    return wrapper


# -------------------------------------------------------
#    CLI Secrets, Connections, and Configurations
# -------------------------------------------------------
json_rpc_option = click.option(
    "--json-rpc",
    "-rpc",
    "json_rpc",
    default=os.environ.get("JSON_RPC"),
    help="RPC url used for receipts and proxy slot reads.  If not provided, will use the JSON_RPC environment variable",
)
db_url_option = click.option(
    "--db-url",
    "-db",
    "db_url",
    default=os.environ.get("DB_URL"),
    help="SQLAlchemy DB URL to store decoded transactions in.  If not provided, will use the DB_URL environment variable",
)
abi_source_option = click.option(
    "--abi-source",
    "abi_source",
    type=click.Choice(["abidata", "etherscan"]),
    default=os.environ.get("ABI_SOURCE", "abidata"),
    help="Service used to fetch verified contract ABIs",
)
etherscan_api_key_option = click.option(
    "--etherscan-api-key",
    "etherscan_api_key",
    default=os.environ.get("ETHERSCAN_API_KEY"),
    help="Etherscan API key.  Required when --abi-source is etherscan",
)

# -------------------------------------------------------
#    Required Parameters as Option Flag
# -------------------------------------------------------
chain_option = click.option(
    "--chain",
    "-c",
    "chain",
    type=click.Choice(list(SupportedChain.__members__.keys())),
    default="mainnet",
    help="Chain the transaction was executed on",
)
max_depth_option = click.option(
    "--max-depth",
    "max_depth",
    type=int,
    default=None,
    help="Maximum multiSend nesting depth to expand.  Defaults to the MAX_MULTISEND_DEPTH environment variable or 8",
)


def sub_call_table(sub_calls: list[DecodedCall], title: str = "Sub Calls") -> Table:
    """Renders the sub-calls of a batch, indenting nested expansions"""
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Op")
    table.add_column("To")
    table.add_column("Value", justify="right")
    table.add_column("Function")
    table.add_column("Args")

    def _add_rows(calls: list[DecodedCall], prefix: str, depth: int):
        for index, call in enumerate(calls):
            label = f"{prefix}{index}"
            function = call.function_name or ("transfer" if call.is_value_transfer else to_hex(call.selector or b""))
            if call.token_transfer:
                function = f"{function} [{call.token_transfer.standard}]"
            table.add_row(
                ("  " * depth) + label,
                call.operation.name,
                call.to,
                str(call.value),
                function,
                rich_json(call.args) if call.args else "",
            )
            _add_rows(call.sub_calls, f"{label}.", depth + 1)

    _add_rows(sub_calls, "", 0)
    return table


def print_batch(console: Console, batch: MultisendBatch):
    """Prints sub-calls, summary and decoding errors of a batch"""
    console.print(sub_call_table(batch.sub_calls))

    summary = batch.summary
    console.print(
        f"[bold]Sub Transactions:[/bold] {summary.sub_transaction_count}  "
        f"[bold]Total Value:[/bold] {summary.total_value}  "
        f"[bold]Unique Recipients:[/bold] {summary.unique_recipient_count}  "
        f"[bold]Failed Decodes:[/bold] {summary.failed_decode_count}  "
        f"[bold]Estimated Gas:[/bold] {summary.estimated_gas}"
    )

    for error in batch.errors:
        console.print(f"[red]Entry {error.index} ({error.to or 'unknown'}): {error.error}")
