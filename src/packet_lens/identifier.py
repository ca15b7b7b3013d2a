"""
Packet identification.

Decodes the varint packet id at the start of a raw packet and resolves it to a
protocol name through a ProtocolRegistry.
"""

import logging
from typing import Optional, Tuple

from .models import Direction, PacketIdentity, PacketRecord
from .protocol import ProtocolRegistry

logger = logging.getLogger(__name__)

MAX_VARINT_BYTES = 5
_UINT32_MASK = 0xFFFFFFFF


class DecodeError(ValueError):
    """Raised when a packet id cannot be decoded from raw bytes."""


class TruncatedVarintError(DecodeError):
    """The buffer ended while the varint still signalled continuation."""


class VarintOverflowError(DecodeError):
    """The varint did not terminate within 5 bytes."""


def decode_varint(data: bytes) -> Tuple[int, int]:
    """
    Decode a little-endian base-128 varint from the start of ``data``.

    Returns:
        Tuple of (value, bytes consumed)

    Raises:
        TruncatedVarintError: If ``data`` ends mid-sequence
        VarintOverflowError: If more than 5 bytes would be consumed
    """
    result = 0
    shift = 0
    for index, byte in enumerate(data):
        if index >= MAX_VARINT_BYTES:
            raise VarintOverflowError(f"Varint longer than {MAX_VARINT_BYTES} bytes")
        result |= (byte & 0x7F) << shift
        shift += 7
        if not byte & 0x80:
            return result & _UINT32_MASK, index + 1
    if len(data) >= MAX_VARINT_BYTES:
        raise VarintOverflowError(f"Varint longer than {MAX_VARINT_BYTES} bytes")
    raise TruncatedVarintError(f"Buffer ended after {len(data)} varint bytes")


def encode_varint(value: int) -> bytes:
    """Encode an unsigned 32-bit integer as a little-endian base-128 varint."""
    if not 0 <= value <= _UINT32_MASK:
        raise ValueError(f"Value out of range for a 32-bit varint: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def extract_id(raw_bytes: bytes) -> Tuple[int, int]:
    """Extract the packet id from raw packet bytes as (id, bytes consumed)."""
    return decode_varint(raw_bytes)


def identify(
    raw_bytes: bytes,
    direction: Direction,
    registry: Optional[ProtocolRegistry],
) -> PacketIdentity:
    """
    Identify a raw packet.

    An unknown id, or a missing registry, yields an identity without a name.

    Raises:
        DecodeError: If the packet id varint is malformed
    """
    packet_id, _ = extract_id(raw_bytes)
    name = registry.lookup_name(direction, packet_id) if registry is not None else None
    return PacketIdentity(id=packet_id, name=name)


def identify_record(
    record: PacketRecord,
    registry: Optional[ProtocolRegistry],
) -> Optional[PacketIdentity]:
    """
    Identify a stored packet record.

    Raw bytes take precedence. Records without raw bytes fall back to the
    ``id`` / ``name`` fields the relay keeps in the decoded value. Returns
    None when the packet cannot be identified at all.
    """
    if record.raw_bytes:
        try:
            return identify(record.raw_bytes, record.direction, registry)
        except DecodeError as e:
            logger.debug(f"Packet #{record.packet_number} unidentified: {e}")
            return None

    value = record.decoded_value
    if not isinstance(value, dict):
        return None
    name = record.name
    packet_id = value.get("id")
    if isinstance(packet_id, bool) or not isinstance(packet_id, int):
        packet_id = None
    if packet_id is None and name is not None and registry is not None:
        packet_id = registry.lookup_id(record.direction, name)
    if packet_id is None:
        return None
    if name is None and registry is not None:
        name = registry.lookup_name(record.direction, packet_id)
    return PacketIdentity(id=packet_id, name=name)


def record_label(record: PacketRecord, registry: Optional[ProtocolRegistry]) -> str:
    """Display label for a record: identity label, stored name, or 'unidentified'."""
    identity = identify_record(record, registry)
    if identity is not None:
        return identity.label
    return record.name or "unidentified"
