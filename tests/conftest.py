"""
Shared fixtures for packet-lens tests
"""

import json
import sqlite3

import pytest

from packet_lens.identifier import encode_varint
from packet_lens.models import Direction, PacketRecord
from packet_lens.protocol import ProtocolRegistry
from packet_lens.store import MemoryPacketStore

C = Direction.CLIENTBOUND
S = Direction.SERVERBOUND


def make_record(number, direction, name, offset_ms=None, session_id=1, raw=None, **fields):
    value = {"name": name}
    value.update(fields)
    return PacketRecord(
        session_id=session_id,
        packet_number=number,
        timestamp_offset_ms=offset_ms if offset_ms is not None else number * 50,
        direction=direction,
        decoded_value=value,
        raw_bytes=raw,
    )


@pytest.fixture
def registry():
    return ProtocolRegistry.from_mapping({
        "packet_login": {"!id": 1, "!bound": "server"},
        "packet_play_status": {"!id": "0x02", "!bound": "client"},
        "packet_text": {"!id": 9, "!bound": "both"},
        "packet_player_auth_input": {"!id": "0x90", "!bound": "server"},
    }, "1.21.111")


@pytest.fixture
def records():
    return [
        make_record(1, S, "login"),
        make_record(2, C, "play_status", status=0),
        make_record(3, S, "player_auth_input", tick=10, position={"x": 1.0, "y": 64.0}),
        make_record(4, C, "player_action_sleep"),
        make_record(5, C, "Sleep"),
        make_record(6, C, "wake"),
        make_record(7, S, "player_auth_input", tick=11, position={"x": 1.5, "y": 64.0}),
        make_record(8, C, "text", raw=encode_varint(9) + b"hello"),
    ]


@pytest.fixture
def store(records):
    return MemoryPacketStore(records)


def write_relay_db(path, records):
    """Write a SQLite database laid out like the relay's tables."""
    conn = sqlite3.connect(str(path))
    conn.executescript("""
        CREATE TABLE sessions (
            id INTEGER PRIMARY KEY,
            started_at TIMESTAMP NOT NULL,
            ended_at TIMESTAMP
        );
        CREATE TABLE packets (
            id INTEGER PRIMARY KEY,
            session_id INTEGER NOT NULL REFERENCES sessions(id),
            ts TIMESTAMP,
            session_time_ms BIGINT NOT NULL,
            packet_number BIGINT NOT NULL,
            server_version VARCHAR(50) NOT NULL,
            direction VARCHAR(20) NOT NULL,
            packet TEXT NOT NULL,
            raw BLOB
        );
    """)
    conn.execute("INSERT INTO sessions (id, started_at, ended_at) VALUES (1, '2025-01-01 10:00:00', '2025-01-01 10:05:00')")
    conn.execute("INSERT INTO sessions (id, started_at) VALUES (2, '2025-01-02 10:00:00')")
    # insert out of order to check ORDER BY
    for record in reversed(records):
        conn.execute(
            "INSERT INTO packets (session_id, session_time_ms, packet_number, server_version, "
            "direction, packet, raw) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (record.session_id, record.timestamp_offset_ms, record.packet_number, "1.21.111",
             record.direction.value, json.dumps(record.decoded_value), record.raw_bytes),
        )
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def sqlite_db(tmp_path, records):
    return write_relay_db(tmp_path / "packets.db", records)
