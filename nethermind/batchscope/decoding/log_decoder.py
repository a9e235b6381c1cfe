import logging

from nethermind.batchscope.types.decoding import DecodedEvent, RawLog

from .event_decoders import EVMEventDecoder
from .interface import InterfaceDescription

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("decoding")

TRANSFER_TOPIC = bytes.fromhex("ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef")
FPMM_BUY_TOPIC = bytes.fromhex("4f62630f51608fc8a7603a9391a5101e58bd7c276139366fc107dc3b67c3dcf8")

FAST_PATH_ABI = [
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "tokenId", "type": "uint256", "indexed": True},
        ],
    },
    {
        "type": "event",
        "name": "FPMMBuy",
        "anonymous": False,
        "inputs": [
            {"name": "buyer", "type": "address", "indexed": True},
            {"name": "investmentAmount", "type": "uint256", "indexed": False},
            {"name": "feeAmount", "type": "uint256", "indexed": False},
            {"name": "outcomeIndex", "type": "uint256", "indexed": True},
            {"name": "outcomeTokensBought", "type": "uint256", "indexed": False},
        ],
    },
]

FAST_PATH_EVENTS = InterfaceDescription(FAST_PATH_ABI, "fast-path")  # type: ignore
""" Events decoded without an ABI lookup.  Keyed by topic, then by indexed parameter count """


def _decoded_event(log: RawLog, decoder: EVMEventDecoder, args: dict) -> DecodedEvent:
    return DecodedEvent(
        contract_address=log.address,
        topic0=log.topic0,
        raw=log,
        name=decoder.name,
        args=args,
        signature=decoder.event_signature,
    )


def _try_decoder(log: RawLog, decoder: EVMEventDecoder | None) -> DecodedEvent | None:
    if decoder is None:
        return None
    args = decoder.decode(log.topics, log.data)
    if args is None:
        return None
    return _decoded_event(log, decoder, args)


def decode_fast_path(log: RawLog) -> DecodedEvent | None:
    """
    Decodes ERC20/ERC721 Transfer and FPMMBuy events from their fixed layouts.  Returns None for any other log, or
    if the log does not fit the fixed layout.
    """
    if log.topic0 is None:
        return None
    return _try_decoder(log, FAST_PATH_EVENTS.get_event(log.topic0, indexed_params=len(log.topics) - 1))


def decode_log(log: RawLog, description: InterfaceDescription | None) -> DecodedEvent:
    """
    Decodes a single event log.  Never raises: when every decoding stage fails, the returned event has
    ``name=None`` and carries the raw topics and data.

    Decoding order:
        1. Fixed decoders for common token events, independent of the contract ABI
        2. Event from the ABI whose topic matches topic0, selected by indexed parameter count
        3. Trial decode against every event in the ABI
    """
    undecoded = DecodedEvent(contract_address=log.address, topic0=log.topic0, raw=log)

    fast_result = decode_fast_path(log)
    if fast_result is not None:
        return fast_result

    if description is None:
        return undecoded

    if log.topic0 is not None:
        strict_result = _try_decoder(log, description.get_event(log.topic0, indexed_params=len(log.topics) - 1))
        if strict_result is not None:
            return strict_result

    for decoder in description.iter_events():
        # Anonymous events are the only way a log without a matching topic0 can still be decoded
        if not decoder.anonymous and decoder.signature != log.topic0:
            continue
        trial_result = _try_decoder(log, decoder)
        if trial_result is not None:
            logger.debug(f"Trial decoded log {log.log_index} from {log.address} as {decoder.event_signature}")
            return trial_result

    logger.debug(
        f"Could not decode log {log.log_index} from {log.address} with topic "
        f"{log.topic0.hex() if log.topic0 else None}"
    )
    return undecoded


def decode_logs(logs: list[RawLog], description_map: dict[str, InterfaceDescription | None]) -> list[DecodedEvent]:
    """
    Decodes logs in receipt order.

    :param logs: Logs from a transaction receipt
    :param description_map: Mapping of lower-cased contract address to the resolved description of that contract
    """
    return [decode_log(log, description_map.get(log.address.lower())) for log in logs]
