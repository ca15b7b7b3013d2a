"""
Data models for the packet inspection engine.

This module contains the core data structures used throughout the application
for representing recorded packets, sessions, structured values and differences.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple, Union
from enum import Enum
from datetime import datetime


class Direction(Enum):
    """Packet direction relative to the observing proxy."""
    CLIENTBOUND = "clientbound"
    SERVERBOUND = "serverbound"

    @classmethod
    def from_str(cls, value: str) -> "Direction":
        """Parse a stored direction string (case-insensitive)."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid direction: {value!r}")


class ValueKind(Enum):
    """Closed set of node kinds in a structured packet value."""
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def classify(value: Any) -> ValueKind:
    """
    Classify a JSON-shaped value.

    bool is checked before numbers since bool is an int subclass.
    """
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, dict):
        return ValueKind.OBJECT
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


SCALAR_KINDS = frozenset({ValueKind.NULL, ValueKind.BOOL, ValueKind.NUMBER, ValueKind.STRING})


class DiffType(Enum):
    """Types of differences between two structured values."""
    UNCHANGED = "unchanged"
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


# A path accessor is an object key (str) or an array index (int)
PathElement = Union[str, int]
Path = Tuple[PathElement, ...]


def format_path(path: Path) -> str:
    """Render a path as ``a.b[2].c``; the root path renders as an empty string."""
    parts: List[str] = []
    for element in path:
        if isinstance(element, int):
            parts.append(f"[{element}]")
        elif parts:
            parts.append(f".{element}")
        else:
            parts.append(element)
    return "".join(parts)


@dataclass(frozen=True)
class PacketRecord:
    """
    A single recorded packet as held by the packet store.

    The engine only reads records; ``decoded_value`` is the structured
    representation written by the relay and ``raw_bytes`` the optional
    original payload used for identification and hex display.
    """
    session_id: int
    packet_number: int
    timestamp_offset_ms: int
    direction: Direction
    decoded_value: Any = None
    raw_bytes: Optional[bytes] = None
    server_version: Optional[str] = None

    @property
    def name(self) -> Optional[str]:
        """Packet name as stored by the relay, if any."""
        if isinstance(self.decoded_value, dict):
            name = self.decoded_value.get("name")
            if isinstance(name, str):
                return name
        return None

    def get_summary(self) -> str:
        """Generate a brief one-line summary of this packet."""
        arrow = "<-" if self.direction is Direction.CLIENTBOUND else "->"
        return (f"#{self.packet_number} +{self.timestamp_offset_ms}ms "
                f"{arrow} {self.name or '<unnamed>'}")


@dataclass(frozen=True)
class SessionSummary:
    """Summary of a recorded relay session."""
    session_id: int
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    packet_count: int = 0

    def get_duration(self) -> Optional[float]:
        """Session duration in seconds, if it has ended."""
        if self.started_at is not None and self.ended_at is not None:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def get_duration_str(self) -> str:
        """Get human-readable duration string."""
        duration = self.get_duration()
        if duration is None:
            return "open"

        if duration < 60:
            return f"{duration:.2f}s"
        elif duration < 3600:
            return f"{duration/60:.1f}m"
        else:
            return f"{duration/3600:.1f}h"

    def get_summary(self) -> str:
        """Generate a summary string for this session."""
        started = self.started_at.strftime("%Y-%m-%d %H:%M:%S") if self.started_at else "unknown"
        return (f"Session {self.session_id}: {self.packet_count} packets, "
                f"started {started}, {self.get_duration_str()}")


@dataclass(frozen=True)
class PacketIdentity:
    """Numeric packet id plus the protocol name it resolved to, if any."""
    id: int
    name: Optional[str] = None

    @property
    def label(self) -> str:
        if self.name:
            return f"{self.name} (0x{self.id:02x})"
        return f"0x{self.id:02x}"


@dataclass(frozen=True)
class DiffEntry:
    """One node-level difference between a baseline value and a current value."""
    path: Path
    kind: DiffType
    old_value: Any = None
    new_value: Any = None

    @property
    def path_str(self) -> str:
        return format_path(self.path)


@dataclass
class DiffResult:
    """
    Result of comparing a packet against the baseline.

    Entries are ordered lexicographically by path. The two scalar deltas are
    measured as current minus baseline.
    """
    entries: List[DiffEntry] = field(default_factory=list)
    time_delta_ms: int = 0
    packet_number_delta: int = 0

    def changes(self) -> List[DiffEntry]:
        """Entries excluding UNCHANGED ones."""
        return [entry for entry in self.entries if entry.kind != DiffType.UNCHANGED]

    def has_differences(self) -> bool:
        """Check if this diff contains any actual differences."""
        return bool(self.changes())

    def get_counts(self) -> Dict[DiffType, int]:
        """Get counts of each type of difference."""
        counts = {diff_type: 0 for diff_type in DiffType}
        for entry in self.entries:
            counts[entry.kind] += 1
        return counts

    def get_summary(self) -> str:
        """Generate a summary string describing the differences."""
        if not self.has_differences():
            return "No differences from baseline packet"
        counts = self.get_counts()
        return (f"{counts[DiffType.MODIFIED]} modified, "
                f"{counts[DiffType.ADDED]} added, "
                f"{counts[DiffType.REMOVED]} removed")


# Color scheme constants for diff highlighting
DIFF_COLORS = {
    DiffType.UNCHANGED: ("white", None),      # White text, no background
    DiffType.ADDED: ("green", None),
    DiffType.REMOVED: ("red", None),
    DiffType.MODIFIED: ("black", "yellow"),   # Black on yellow
}

DIRECTION_COLORS = {
    Direction.CLIENTBOUND: "cyan",
    Direction.SERVERBOUND: "magenta",
}
