import logging
import shutil
from typing import Any, Iterator

from eth_typing import ABI, ABIEvent, ABIFunction
from rich.table import Table

from nethermind.batchscope.exceptions import DecodeMismatch
from nethermind.batchscope.types.decoding import Fragment
from nethermind.batchscope.utils import pprint_list

from .event_decoders import EVMEventDecoder
from .function_decoders import EVMFunctionDecoder
from .utils import collapse_if_tuple, filter_events, filter_functions, normalize_abi

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("decoding")


class InterfaceDescription:
    """
    Decoders for a single contract ABI.  Built once per resolved ABI through ``InterfaceDescription.from_abi`` and
    never mutated afterwards.
    """

    abi_name: str
    """ Name used in log messages.  Usually the contract address """

    function_decoders: dict[bytes, EVMFunctionDecoder]
    """ Mapping from 4byte selectors to function decoders """

    event_decoders: dict[bytes, EVMEventDecoder | dict[int, EVMEventDecoder]]
    """
    Mapping from 32 byte topics to event decoders.  If an event has the same signature, but a different number of
    indexed parameters, the decoders are stored as a dict keyed by indexed parameter count.  Ie, ERC20 and ERC721
    Transfer events share a topic, but the ERC721 version stores the tokenId in the topics.
    """

    fragments: tuple[Fragment, ...]
    """ All fragments of the ABI in declaration order, including the constructor """

    has_fallback: bool
    """ True if the ABI declares a fallback function """

    def __init__(self, abi_data: ABI, abi_name: str = ""):
        self.abi_name = abi_name
        self.function_decoders = {}
        self.event_decoders = {}

        fragments: list[Fragment] = []
        self.has_fallback = False

        for entry in abi_data:
            match entry.get("type"):
                case "constructor":
                    inputs = entry.get("inputs", [])
                    fragments.append(
                        Fragment(
                            kind="constructor",
                            name="constructor",
                            input_types=tuple(collapse_if_tuple(i) for i in inputs),  # type: ignore
                            input_names=tuple(i.get("name", "") for i in inputs),  # type: ignore
                            signature=f"constructor({','.join(collapse_if_tuple(i) for i in inputs)})",  # type: ignore
                            selector=None,
                        )
                    )
                case "fallback" | "receive":
                    self.has_fallback = True

        for abi_function in filter_functions(abi_data):
            self._add_function(abi_function, fragments)

        for abi_event in filter_events(abi_data):
            self._add_event(abi_event, fragments)

        self.fragments = tuple(fragments)
        self._entry_count = len(abi_data)

    @classmethod
    def from_abi(cls, abi_data: Any, abi_name: str = "") -> "InterfaceDescription":
        """
        Builds an InterfaceDescription from any of the shapes ABIs are delivered in: JSON strings, lists of ABI
        entries, or ``{"abi": [...]}`` wrappers.

        :param abi_data: Raw ABI
        :param abi_name: Name used in log messages
        :raises UnresolvedAbi: if abi_data is not an ABI
        """
        return cls(normalize_abi(abi_data), abi_name)

    @property
    def entry_count(self) -> int:
        """Number of well-formed entries in the source ABI"""
        return self._entry_count

    def _add_function(self, abi_function: ABIFunction, fragments: list[Fragment]):
        try:
            decoder = EVMFunctionDecoder(abi_function, self.abi_name)
        except (TypeError, KeyError) as exc:
            logger.debug(f"Skipping malformed function {abi_function.get('name')} in ABI {self.abi_name}: {exc}")
            return

        if decoder.signature in self.function_decoders:
            logger.debug(f"Duplicate function selector 0x{decoder.signature.hex()} in ABI {self.abi_name}")
            return

        self.function_decoders[decoder.signature] = decoder
        fragments.append(decoder.fragment)

    def _add_event(self, abi_event: ABIEvent, fragments: list[Fragment]):
        try:
            decoder = EVMEventDecoder(abi_event, self.abi_name)
        except (TypeError, KeyError, DecodeMismatch) as exc:
            logger.debug(f"Skipping malformed event {abi_event.get('name')} in ABI {self.abi_name}: {exc}")
            return

        existing = self.event_decoders.get(decoder.signature)
        match existing:
            case None:
                self.event_decoders[decoder.signature] = decoder
            case dict():
                if decoder.indexed_params in existing:
                    logger.debug(f"Event {decoder.event_signature} already loaded at this index level")
                    return
                existing[decoder.indexed_params] = decoder
            case EVMEventDecoder():
                if existing.indexed_params == decoder.indexed_params:
                    logger.debug(f"Duplicate event topic 0x{decoder.signature.hex()} in ABI {self.abi_name}")
                    return
                logger.debug(f"Loading Event {decoder.event_signature} at multiple index levels")
                self.event_decoders[decoder.signature] = {
                    existing.indexed_params: existing,
                    decoder.indexed_params: decoder,
                }

        fragments.append(decoder.fragment)

    def get_function(self, selector: bytes) -> EVMFunctionDecoder | None:
        """Returns the function decoder for a 4 byte selector"""
        return self.function_decoders.get(selector[:4])

    def get_event(self, topic: bytes, indexed_params: int | None = None) -> EVMEventDecoder | None:
        """
        Returns the event decoder for a topic.  When the topic is loaded at multiple index levels, indexed_params
        selects the level.  Without indexed_params, the level with the fewest indexed parameters is returned.
        """
        decoder = self.event_decoders.get(topic)
        if not isinstance(decoder, dict):
            return decoder

        if indexed_params is not None:
            return decoder.get(indexed_params)
        return decoder[min(decoder.keys())]

    def iter_events(self) -> Iterator[EVMEventDecoder]:
        """Iterates over every event decoder, including every index level"""
        for decoder in self.event_decoders.values():
            if isinstance(decoder, dict):
                yield from decoder.values()
            else:
                yield decoder

    def function_names(self) -> set[str]:
        """Names of every function in the ABI"""
        return {decoder.name for decoder in self.function_decoders.values()}

    def constructor(self) -> Fragment | None:
        """Constructor fragment, if the ABI declares one"""
        for fragment in self.fragments:
            if fragment.kind == "constructor":
                return fragment
        return None

    def decoder_table(self, full_signatures: bool = False) -> Table:
        """
        Returns a rich table listing the functions and events of this ABI.  Used for printing ABI information in
        the CLI
        """
        term_width = shutil.get_terminal_size().columns
        abi_table = Table(title=f"[bold magenta]{self.abi_name or 'Contract'} ABI", min_width=80, show_lines=True)

        abi_table.add_column("Functions")
        abi_table.add_column("Events")

        functions = sorted(f.id_str(full_signatures) for f in self.function_decoders.values())
        events = sorted(e.id_str(full_signatures) for e in self.iter_events())
        abi_table.add_row(
            "\n".join(pprint_list(functions, int(term_width * 0.5))),
            "\n".join(pprint_list(events, int(term_width * 0.4))),
        )
        return abi_table

    def __repr__(self):
        return (
            f"InterfaceDescription({self.abi_name}, functions={len(self.function_decoders)}, "
            f"events={len(list(self.iter_events()))})"
        )
