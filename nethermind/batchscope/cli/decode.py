import logging

import click

from nethermind.batchscope.cli.utils import (
    abi_source_option,
    chain_option,
    db_url_option,
    etherscan_api_key_option,
    group_options,
    json_rpc_option,
    max_depth_option,
)

# isort: skip_file
# pylint: disable=too-many-arguments,import-outside-toplevel,too-many-locals

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("cli")


@click.group("decode", short_help="Decode Safe batches, transactions and contract ABIs")
def decode_group():
    """Decode Safe batches, transactions and contract ABIs"""


@decode_group.command("multisend")
@group_options(chain_option, max_depth_option)
@click.argument("calldata")
def decode_multisend(chain: str, max_depth: int | None, calldata: str):
    """
    Decodes Safe multiSend or execTransaction calldata offline.  Sub-calls are labeled from the built in selector
    table only, no ABIs are fetched.
    """
    import asyncio

    from nethermind.batchscope.cli.utils import cli_logger_config, print_batch
    from nethermind.batchscope.config import BatchscopeConfig
    from nethermind.batchscope.decoding.batch_decoder import BatchDecoder
    from nethermind.batchscope.decoding.summary import build_multisend_batch
    from nethermind.batchscope.types.network import SupportedChain

    console = cli_logger_config(root_logger)
    root_logger.setLevel(logging.WARNING)

    config = BatchscopeConfig.from_env()
    decoder = BatchDecoder(None, max_depth=max_depth if max_depth is not None else config.max_multisend_depth)

    result = asyncio.run(decoder.decode_safe_transaction(calldata, SupportedChain(chain), 0))
    if result is None:
        console.print("[yellow]Calldata is not a Safe multiSend or execTransaction call")
        return

    if result.safe_transaction is not None:
        console.print(f"[bold]Safe Transaction:[/bold] {result.safe_transaction.signature}")

    console.print(f"[bold]Multicall:[/bold] {result.is_multicall}")
    print_batch(console, build_multisend_batch(result))


@decode_group.command("transaction")
@group_options(json_rpc_option, db_url_option, abi_source_option, etherscan_api_key_option, chain_option)
@click.argument("transaction_hashes", nargs=-1, required=True)
@click.option("--timeout", type=float, default=None, help="Seconds allowed for fetching and decoding a transaction")
@click.option(
    "--max-concurrency",
    type=int,
    default=None,
    help="Transactions processed at once.  Defaults to the MAX_CONCURRENCY environment variable, or 4",
)
def decode_transaction(
    json_rpc: str | None,
    db_url: str | None,
    abi_source: str,
    etherscan_api_key: str | None,
    chain: str,
    transaction_hashes: tuple[str, ...],
    timeout: float | None,
    max_concurrency: int | None,
):
    """
    Fetches transactions, decodes their calls, logs and Safe batches, and stores the results if a database is
    configured
    """
    import asyncio
    from dataclasses import replace

    from sqlalchemy import create_engine

    from nethermind.batchscope.abi.cache import SqlAbiCache
    from nethermind.batchscope.abi.store import AbiStore
    from nethermind.batchscope.cli.utils import cli_logger_config, print_batch, rich_json
    from nethermind.batchscope.config import BatchscopeConfig
    from nethermind.batchscope.database.writers.row_store import SqlRowStore
    from nethermind.batchscope.processing.transaction_processor import TransactionProcessor, serialize_call
    from nethermind.batchscope.rpc.client import JsonRpcClient
    from nethermind.batchscope.types.decoding import TransactionContext
    from nethermind.batchscope.types.network import SupportedChain

    console = cli_logger_config(root_logger)

    if json_rpc is None:
        raise click.UsageError("--json-rpc or the JSON_RPC environment variable is required")

    config = replace(
        BatchscopeConfig.from_env(),
        json_rpc=json_rpc,
        db_url=db_url,
        abi_source=abi_source,
        etherscan_api_key=etherscan_api_key,
    )
    if max_concurrency is not None:
        config.max_concurrency = max_concurrency
    if timeout is not None:
        config.transaction_timeout = timeout

    try:
        source = config.build_abi_source()
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    db_engine = create_engine(db_url) if db_url else None

    async def _process():
        async with JsonRpcClient(json_rpc, retry_policy=config.retry_policy()) as client:
            contexts = []
            for transaction_hash in transaction_hashes:
                tx_json = await client.get_transaction(transaction_hash)
                if tx_json is None:
                    logger.error(f"Transaction {transaction_hash} not found")
                    continue
                context = TransactionContext.from_rpc(tx_json, SupportedChain(chain))
                context.timestamp = await client.get_block_timestamp(context.block_number)
                contexts.append(context)

            store = AbiStore(source, chain_client=client, cache=SqlAbiCache(db_engine) if db_engine else None)
            processor = TransactionProcessor(
                client,
                store,
                row_store=SqlRowStore(db_engine) if db_engine else None,
                timeout=config.transaction_timeout,
                max_multisend_depth=config.max_multisend_depth,
                max_concurrency=config.max_concurrency,
            )
            try:
                return await processor.process_transactions(contexts)
            finally:
                await source.close()  # type: ignore[attr-defined]

    for result in asyncio.run(_process()):
        if result is None:
            continue

        console.print(f"[bold]Transaction:[/bold] {result.hash}  [bold]Status:[/bold] {result.status}")
        if result.decoded_function:
            console.print(f"[bold]Function:[/bold] {result.decoded_function.signature or result.decoded_function.to}")
            console.print(rich_json(serialize_call(result.decoded_function)))

        console.print(f"[bold]Logs:[/bold] {len(result.logs)}")
        for event in result.logs:
            name = event.name or "[red]undecoded"
            console.print(f"  {event.log_index}  {event.contract_address}  {name}  {rich_json(event.args or {})}")

        if result.multisend_batch:
            print_batch(console, result.multisend_batch)

        if db_url:
            console.print(f"[green]Stored {result.hash} in database")


@decode_group.command("abi")
@group_options(json_rpc_option, abi_source_option, etherscan_api_key_option, chain_option)
@click.argument("contract_address")
@click.option("--block", type=int, default=None, help="Block used when reading proxy implementation slots")
@click.option("--full-signatures", is_flag=True, default=False, help="Print full decoder signatures")
def decode_abi(
    json_rpc: str | None,
    abi_source: str,
    etherscan_api_key: str | None,
    chain: str,
    contract_address: str,
    block: int | None,
    full_signatures: bool,
):
    """Resolves the ABI of a contract, following proxies, and prints its functions and events"""
    import asyncio
    from dataclasses import replace

    from nethermind.batchscope.abi.store import AbiStore
    from nethermind.batchscope.cli.utils import cli_logger_config
    from nethermind.batchscope.config import BatchscopeConfig
    from nethermind.batchscope.rpc.client import JsonRpcClient
    from nethermind.batchscope.types.network import SupportedChain

    console = cli_logger_config(root_logger)

    config = replace(BatchscopeConfig.from_env(), abi_source=abi_source, etherscan_api_key=etherscan_api_key)
    try:
        source = config.build_abi_source()
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    async def _resolve():
        client = JsonRpcClient(json_rpc, retry_policy=config.retry_policy()) if json_rpc else None
        try:
            as_of_block = block
            if as_of_block is None:
                as_of_block = int(await client.request("eth_blockNumber", []), 16) if client else 0
            return await AbiStore(source, chain_client=client).resolve(
                SupportedChain(chain), contract_address, as_of_block
            )
        finally:
            await source.close()  # type: ignore[attr-defined]
            if client:
                await client.close()

    entry = asyncio.run(_resolve())
    if not entry.resolved or entry.description is None:
        console.print(f"[red]No verified ABI found for {contract_address}")
        return

    if entry.is_proxy:
        console.print(f"[bold]Proxy[/bold] for implementation {entry.implementation}")

    console.print(entry.description.decoder_table(full_signatures))
