"""
Packet Lens - forensic inspection of recorded game-protocol packets.

Identifies packets against a versioned protocol definition, filters recorded
sessions by direction and name, and diffs any packet against a baseline.
"""

__version__ = "0.1.0"

from . import models
from .filters import compile_filter, parse_filter, to_display_string
from .identifier import decode_varint, encode_varint, identify
from .packet_differ import compare_records, diff_values
from .protocol import DefinitionLoadError, ProtocolRegistry, load_registry
from .session import SessionController, transition

__all__ = [
    "models",
    "compile_filter",
    "parse_filter",
    "to_display_string",
    "decode_varint",
    "encode_varint",
    "identify",
    "compare_records",
    "diff_values",
    "DefinitionLoadError",
    "ProtocolRegistry",
    "load_registry",
    "SessionController",
    "transition",
    "__version__",
]
