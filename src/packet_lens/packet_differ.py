"""
Structural diff of decoded packet values.

This module compares a packet's decoded value against a baseline packet and
produces path-addressed difference entries plus the time and packet-number
deltas between the two records.
"""

import json
import logging
import math
from typing import Any, Iterator, List, Tuple

from .models import (
    DiffEntry, DiffResult, DiffType, PacketRecord, Path, SCALAR_KINDS, ValueKind, classify,
)

logger = logging.getLogger(__name__)


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def _walk(baseline: Any, current: Any, path: Path) -> Iterator[DiffEntry]:
    """
    Yield entries for every leaf under ``path`` in sorted path order.

    Added and removed subtrees are reported once at their root.
    """
    baseline_kind = classify(baseline)
    current_kind = classify(current)

    if baseline_kind != current_kind:
        yield DiffEntry(path, DiffType.MODIFIED, baseline, current)
        return

    if baseline_kind in SCALAR_KINDS:
        if baseline == current or (_is_nan(baseline) and _is_nan(current)):
            yield DiffEntry(path, DiffType.UNCHANGED, baseline, current)
        else:
            yield DiffEntry(path, DiffType.MODIFIED, baseline, current)
        return

    if baseline_kind is ValueKind.OBJECT:
        for key in sorted(set(baseline) | set(current)):
            child = path + (key,)
            if key not in baseline:
                yield DiffEntry(child, DiffType.ADDED, None, current[key])
            elif key not in current:
                yield DiffEntry(child, DiffType.REMOVED, baseline[key], None)
            else:
                yield from _walk(baseline[key], current[key], child)
        return

    # ValueKind.ARRAY
    shared = min(len(baseline), len(current))
    for index in range(shared):
        yield from _walk(baseline[index], current[index], path + (index,))
    for index in range(shared, len(current)):
        yield DiffEntry(path + (index,), DiffType.ADDED, None, current[index])
    for index in range(shared, len(baseline)):
        yield DiffEntry(path + (index,), DiffType.REMOVED, baseline[index], None)


def diff_values(baseline: Any, current: Any, include_unchanged: bool = False) -> DiffResult:
    """
    Compute the structural difference between two decoded values.

    Args:
        baseline: Value of the baseline packet
        current: Value of the packet being inspected
        include_unchanged: Keep UNCHANGED leaf entries in the result

    Returns:
        DiffResult with entries ordered by path and zero deltas
    """
    entries = [
        entry for entry in _walk(baseline, current, ())
        if include_unchanged or entry.kind != DiffType.UNCHANGED
    ]
    return DiffResult(entries=entries)


def compare_records(
    baseline: PacketRecord,
    current: PacketRecord,
    include_unchanged: bool = False,
) -> DiffResult:
    """
    Compare a packet record against the baseline record.

    Deltas are current minus baseline.
    """
    result = diff_values(baseline.decoded_value, current.decoded_value, include_unchanged)
    result.time_delta_ms = current.timestamp_offset_ms - baseline.timestamp_offset_ms
    result.packet_number_delta = current.packet_number - baseline.packet_number
    logger.debug(f"Compared #{current.packet_number} to baseline #{baseline.packet_number}: "
                 f"{len(result.entries)} entries")
    return result


def _pretty(value: Any) -> List[str]:
    return json.dumps(value, indent=2, sort_keys=True, default=str).splitlines()


def _prefixed(marker: str, label: str, value: Any) -> List[str]:
    lines = _pretty(value)
    head = f"{marker} {label}: " if label else f"{marker} "
    return [head + lines[0]] + [f"  {marker} {line}" for line in lines[1:]]


def format_diff_lines(result: DiffResult) -> List[Tuple[str, DiffType]]:
    """
    Render a diff as display lines tagged with their DiffType.

    Modified entries render as a removed line followed by an added line.
    """
    lines: List[Tuple[str, DiffType]] = []
    for entry in result.entries:
        label = entry.path_str
        if entry.kind == DiffType.ADDED:
            lines.extend((line, DiffType.ADDED) for line in _prefixed("+", label, entry.new_value))
        elif entry.kind == DiffType.REMOVED:
            lines.extend((line, DiffType.REMOVED) for line in _prefixed("-", label, entry.old_value))
        elif entry.kind == DiffType.MODIFIED:
            lines.extend((line, DiffType.REMOVED) for line in _prefixed("-", label, entry.old_value))
            lines.extend((line, DiffType.ADDED) for line in _prefixed("+", label, entry.new_value))
        else:
            lines.extend((line, DiffType.UNCHANGED) for line in _prefixed(" ", label, entry.new_value))
    return lines


def format_deltas(result: DiffResult) -> List[str]:
    """Render the time and packet-number deltas, signed."""
    seconds = result.time_delta_ms / 1000.0
    return [
        f"Time delta: {seconds:+.3f}s",
        f"Packet number delta: {result.packet_number_delta:+d}",
    ]
