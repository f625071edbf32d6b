"""
Contract descriptor: static event metadata for one tracked contract.

Parses a raw ABI (or a build-artifact envelope holding one) into an
event table keyed by topic0, and decodes raw logs into named arguments.

Usage:
    from chain.contract_descriptor import ContractDescriptor

    descriptor = ContractDescriptor.from_artifact("KWHToken", get_config().get_abi("KWHToken"))
    decoded = descriptor.decode(raw_log)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi.abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils.abi import collapse_if_tuple
from web3 import Web3

from indexer_logging.logger_manager import setup_module_logger
from shared.serialization_utils import to_bytes, to_hex
from shared.types import DecodedEvent, RawLog

logger = setup_module_logger(
    "contract_descriptor", "contract_descriptor.log", module_folder="Contract_Logs"
)

# Indexed values of these types are stored as keccak hashes in topics
_HASHED_WHEN_INDEXED = ("string", "bytes")


@dataclass(frozen=True)
class EventFragment:
    name: str
    signature: str
    topic: str
    inputs: tuple[dict[str, Any], ...]

    @property
    def indexed_inputs(self) -> list[dict[str, Any]]:
        return [i for i in self.inputs if i.get("indexed")]

    @property
    def data_inputs(self) -> list[dict[str, Any]]:
        return [i for i in self.inputs if not i.get("indexed")]


def is_valid_address(address: str | None) -> bool:
    """True for a well-formed 20-byte hex address (checksum enforced when mixed case)."""
    if not address or not isinstance(address, str):
        return False
    return Web3.is_address(address.strip())


def _is_hashed_topic(abi_type: str) -> bool:
    return abi_type in _HASHED_WHEN_INDEXED or abi_type.startswith("tuple") or abi_type.endswith("]")


def _arg_name(abi_input: dict[str, Any], position: int) -> str:
    return abi_input.get("name") or f"arg{position}"


def _label(value: Any, abi_input: dict[str, Any]) -> Any:
    """Attach component names to decoded tuple values (recursively)."""
    abi_type = abi_input.get("type", "")
    if not abi_type.startswith("tuple"):
        return value
    components = abi_input.get("components", [])
    if abi_type.endswith("]"):
        inner = dict(abi_input, type=abi_type[: abi_type.rindex("[")])
        return [_label(item, inner) for item in value]
    return {
        _arg_name(component, i): _label(item, component)
        for i, (component, item) in enumerate(zip(components, value))
    }


class ContractDescriptor:
    """Event table for one contract interface."""

    def __init__(self, name: str, abi: list[dict[str, Any]]):
        self.name = name
        self._by_topic: dict[str, EventFragment] = {}
        self._names: list[str] = []

        for entry in abi:
            if entry.get("type") != "event" or entry.get("anonymous"):
                continue
            inputs = tuple(entry.get("inputs", []))
            signature = f"{entry['name']}({','.join(collapse_if_tuple(i) for i in inputs)})"
            fragment = EventFragment(
                name=entry["name"],
                signature=signature,
                topic=to_hex(Web3.keccak(text=signature)),
                inputs=inputs,
            )
            self._by_topic[fragment.topic] = fragment
            if fragment.name in self._names:
                logger.warning(
                    f"[ABI] {name}: event {fragment.name} is overloaded; {signature} indexed under the same name"
                )
            else:
                self._names.append(fragment.name)

    @classmethod
    def from_artifact(cls, name: str, artifact: Any) -> ContractDescriptor:
        """Build from a raw ABI list or a build artifact {"abi": [...]}."""
        if isinstance(artifact, dict):
            artifact = artifact.get("abi", [])
        if not isinstance(artifact, list):
            raise ValueError(f"{name}: ABI must be a list or an artifact with an 'abi' key")
        return cls(name, artifact)

    def event_names(self) -> list[str]:
        return list(self._names)

    def topic_for(self, event_name: str) -> str | None:
        for fragment in self._by_topic.values():
            if fragment.name == event_name:
                return fragment.topic
        return None

    def topics(self) -> list[str]:
        return list(self._by_topic)

    def fragments(self) -> list[EventFragment]:
        """Every event signature, overloads included, in ABI order."""
        return list(self._by_topic.values())

    def decode(self, raw_log: RawLog) -> DecodedEvent | None:
        """
        Decode a raw log into a named event.

        Returns None (with a warning) when topic0 matches no known event or
        the payload does not fit the declared types.
        """
        fragment = self._by_topic.get(raw_log.topic0 or "")
        if fragment is None:
            logger.warning(
                f"[DECODE] {self.name}: unknown topic {raw_log.topic0} "
                f"tx={raw_log.transaction_hash} logIndex={raw_log.log_index}",
                extra={"contract": raw_log.address, "tx_hash": raw_log.transaction_hash},
            )
            return None

        indexed = fragment.indexed_inputs
        if len(raw_log.topics) - 1 != len(indexed):
            logger.warning(
                f"[DECODE] {self.name}.{fragment.name}: expected {len(indexed)} indexed topics, "
                f"got {len(raw_log.topics) - 1} (tx={raw_log.transaction_hash})",
                extra={"event_name": fragment.name, "tx_hash": raw_log.transaction_hash},
            )
            return None

        data_inputs = fragment.data_inputs
        topic_iter = iter(raw_log.topics[1:])
        args: dict[str, Any] = {}
        try:
            data_iter = iter(
                abi_decode([collapse_if_tuple(i) for i in data_inputs], to_bytes(raw_log.data))
            )
            for position, abi_input in enumerate(fragment.inputs):
                if not abi_input.get("indexed"):
                    value = next(data_iter)
                elif _is_hashed_topic(abi_input["type"]):
                    value = next(topic_iter)
                else:
                    value = abi_decode([abi_input["type"]], to_bytes(next(topic_iter)))[0]
                args[_arg_name(abi_input, position)] = _label(value, abi_input)
        except (DecodingError, ValueError) as e:
            logger.warning(
                f"[DECODE] {self.name}.{fragment.name}: payload decode failed: {e}",
                extra={"event_name": fragment.name, "tx_hash": raw_log.transaction_hash, "error": str(e)},
            )
            return None

        return DecodedEvent(name=fragment.name, args=args, log=raw_log)
