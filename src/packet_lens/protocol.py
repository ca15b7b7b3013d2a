"""
Protocol definition registry.

Loads a versioned packet id <-> packet name table from a YAML definition file
and answers lookups in both directions. A registry is immutable once loaded
and can be shared freely between readers.
"""

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

import yaml

from .models import Direction

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "1.21.111"
DEFAULT_PROTOCOL_DIR = "data/protocol"

_PACKET_PREFIX = "packet_"
_BOUND_DIRECTIONS = {
    "client": (Direction.CLIENTBOUND,),
    "server": (Direction.SERVERBOUND,),
    "both": (Direction.CLIENTBOUND, Direction.SERVERBOUND),
}


class DefinitionLoadError(Exception):
    """Raised when a protocol definition source cannot be read at all."""


def definition_path(version: str, protocol_dir: Union[str, Path] = DEFAULT_PROTOCOL_DIR) -> Path:
    """Path of the definition file for a protocol version."""
    return Path(protocol_dir) / f"proto-{version}.yml"


def _parse_id(raw: Any) -> Optional[int]:
    """Parse an id given as an int or a (hex) string; None if unparseable."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if 0 <= raw <= 0xFFFFFFFF else None
    if isinstance(raw, str):
        text = raw.strip().lower()
        try:
            value = int(text[2:], 16) if text.startswith("0x") else int(text, 10)
        except ValueError:
            return None
        return value if 0 <= value <= 0xFFFFFFFF else None
    return None


class _DirectionTable:
    """Ordered bijection between packet ids and names for one direction."""

    def __init__(self):
        self.by_id: Dict[int, str] = {}
        self.by_name: Dict[str, int] = {}

    def add(self, packet_id: int, name: str, direction: Direction) -> bool:
        if packet_id in self.by_id:
            logger.warning(f"Skipping {direction.value} packet {name!r}: "
                           f"id 0x{packet_id:02x} already maps to {self.by_id[packet_id]!r}")
            return False
        if name in self.by_name:
            logger.warning(f"Skipping {direction.value} packet {name!r}: "
                           f"name already maps to id 0x{self.by_name[name]:02x}")
            return False
        self.by_id[packet_id] = name
        self.by_name[name] = packet_id
        return True


class ProtocolRegistry:
    """
    Immutable per-direction packet id <-> name mapping for one protocol version.

    Instances are built with :meth:`from_mapping` or :func:`load_registry`
    and never mutated afterwards.
    """

    def __init__(self, version: str, packets_by_direction: Mapping[Direction, Mapping[int, str]]):
        self._version = version
        by_id = {}
        by_name = {}
        for direction in Direction:
            ids = dict(packets_by_direction.get(direction, {}))
            by_id[direction] = MappingProxyType(ids)
            by_name[direction] = MappingProxyType({name: packet_id for packet_id, name in ids.items()})
        self._by_id = MappingProxyType(by_id)
        self._by_name = MappingProxyType(by_name)

    @property
    def version(self) -> str:
        return self._version

    def lookup_name(self, direction: Direction, packet_id: int) -> Optional[str]:
        """Name of ``packet_id`` in ``direction``, or None if unknown."""
        return self._by_id[direction].get(packet_id)

    def lookup_id(self, direction: Direction, name: str) -> Optional[int]:
        """Id of packet ``name`` in ``direction``, or None if unknown."""
        return self._by_name[direction].get(name)

    def packet_count(self, direction: Optional[Direction] = None) -> int:
        """Number of packets known for a direction, or for all directions."""
        if direction is not None:
            return len(self._by_id[direction])
        return sum(len(table) for table in self._by_id.values())

    def entries(self, direction: Direction) -> Iterator[Tuple[int, str]]:
        """Iterate (id, name) pairs for a direction in definition order."""
        return iter(self._by_id[direction].items())

    def __repr__(self) -> str:
        return (f"ProtocolRegistry(version={self._version!r}, "
                f"clientbound={self.packet_count(Direction.CLIENTBOUND)}, "
                f"serverbound={self.packet_count(Direction.SERVERBOUND)})")

    @classmethod
    def from_mapping(cls, document: Mapping[str, Any], version: str) -> "ProtocolRegistry":
        """
        Build a registry from a parsed definition document.

        Accepts ``packet_<name>`` blocks carrying ``!id`` / ``!bound`` keys and
        ``clientbound`` / ``serverbound`` id -> name tables. Entries that
        cannot be parsed are skipped.
        """
        tables = {direction: _DirectionTable() for direction in Direction}
        skipped = 0

        declared = document.get("version")
        if declared is not None and str(declared) != version:
            logger.warning(f"Definition declares version {declared!r}, requested {version!r}")

        for key, value in document.items():
            if not isinstance(key, str):
                skipped += 1
                continue

            if key.startswith(_PACKET_PREFIX):
                if not isinstance(value, dict):
                    skipped += 1
                    continue
                packet_id = _parse_id(value.get("!id"))
                name = key[len(_PACKET_PREFIX):]
                if packet_id is None or not name:
                    logger.debug(f"Skipping unparseable packet definition {key!r}")
                    skipped += 1
                    continue
                bound = str(value.get("!bound", "both")).strip().lower()
                for direction in _BOUND_DIRECTIONS.get(bound, _BOUND_DIRECTIONS["both"]):
                    if not tables[direction].add(packet_id, name, direction):
                        skipped += 1

            elif key in ("clientbound", "serverbound"):
                direction = Direction(key)
                if not isinstance(value, dict):
                    skipped += 1
                    continue
                for raw_id, name in value.items():
                    packet_id = _parse_id(raw_id)
                    if packet_id is None or not isinstance(name, str) or not name:
                        logger.debug(f"Skipping unparseable {key} entry {raw_id!r}: {name!r}")
                        skipped += 1
                        continue
                    if not tables[direction].add(packet_id, name, direction):
                        skipped += 1

        if skipped:
            logger.info(f"Skipped {skipped} unparseable or conflicting protocol entries")

        return cls(version, {direction: table.by_id for direction, table in tables.items()})


def load_registry(
    version: str = DEFAULT_PROTOCOL_VERSION,
    protocol_dir: Union[str, Path] = DEFAULT_PROTOCOL_DIR,
) -> ProtocolRegistry:
    """
    Load the protocol definition for ``version``.

    Args:
        version: Protocol version string, e.g. ``"1.21.111"``
        protocol_dir: Directory holding ``proto-<version>.yml`` files

    Returns:
        Loaded ProtocolRegistry

    Raises:
        DefinitionLoadError: If the source is missing, unreadable or not a mapping
    """
    path = definition_path(version, protocol_dir)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise DefinitionLoadError(f"Failed to read protocol file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise DefinitionLoadError(f"Failed to parse YAML from {path}: {e}") from e

    if not isinstance(document, dict):
        raise DefinitionLoadError(f"Protocol file {path} does not contain a mapping")

    registry = ProtocolRegistry.from_mapping(document, version)
    logger.info(f"Loaded protocol {version}: {registry.packet_count()} packet entries from {path}")
    return registry


def try_load_registry(
    version: str = DEFAULT_PROTOCOL_VERSION,
    protocol_dir: Union[str, Path] = DEFAULT_PROTOCOL_DIR,
) -> Optional[ProtocolRegistry]:
    """Load a registry, returning None (raw-display mode) on failure."""
    try:
        return load_registry(version, protocol_dir)
    except DefinitionLoadError as e:
        logger.warning(f"Protocol definitions unavailable, showing raw packet ids: {e}")
        return None
