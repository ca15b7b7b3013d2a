"""
Terminal User Interface for packet inspection.

This module provides the Textual-based TUI: a session list, then a packet view
with filtering, hex/JSON toggle and baseline comparison.
"""

import asyncio
import json
from typing import Optional

from textual import events, log
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical, VerticalScroll
from textual.widgets import Header, Footer, Static, DataTable, Label
from rich.text import Text

from .filters import to_display_string
from .models import DIFF_COLORS, DIRECTION_COLORS, DiffType
from .packet_differ import format_deltas, format_diff_lines
from .protocol import ProtocolRegistry
from .session import (
    Backspace, CancelCompare, CancelFilter, ConfirmFilter, EditFilterChar, EnterFilter,
    LoadSession, MarkBaseline, Mode, Navigate, NavigationStep, Quit, SessionController,
    ToggleView,
)
from .store import PacketStore, StoreQueryError

LIST_WINDOW = 15

NAVIGATION_KEYS = {
    "right": NavigationStep.NEXT,
    "l": NavigationStep.NEXT,
    "left": NavigationStep.PREV,
    "h": NavigationStep.PREV,
    "pagedown": NavigationStep.PAGE_NEXT,
    "pageup": NavigationStep.PAGE_PREV,
    "home": NavigationStep.FIRST,
    "end": NavigationStep.LAST,
}

DETAIL_SCROLL_KEYS = {"up": -1, "k": -1, "down": 1, "j": 1}


def hex_dump(data: bytes, bytes_per_line: int = 16) -> str:
    """Classic offset / hex / ASCII dump."""
    lines = []
    for offset in range(0, len(data), bytes_per_line):
        chunk = data[offset:offset + bytes_per_line]
        hex_part = "".join(f"{b:02x} " for b in chunk)
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{offset:04x}  {hex_part:<{bytes_per_line * 3}} {ascii_part}")
    return "\n".join(lines)


class DetailsPanel(VerticalScroll):
    """Scrollable packet details; never takes focus so arrow keys stay with the app."""

    can_focus = False


def _diff_style(diff_type: DiffType) -> str:
    fg, bg = DIFF_COLORS[diff_type]
    return f"{fg} on {bg}" if bg else fg


class PacketLensApp(App):
    """Main TUI application for packet inspection."""

    TITLE = "Packet Lens"

    CSS = """
    #packet-body { height: 1fr; }
    #packet-list { width: 45%; }
    #packet-details-panel { width: 55%; height: 1fr; }
    #filter-line { height: 1; }
    #notice { height: 1; color: $warning; }
    """

    def __init__(
        self,
        store: PacketStore,
        registry: Optional[ProtocolRegistry] = None,
        session_id: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.controller = SessionController(store, registry)
        self.initial_session_id = session_id
        self._details_cursor: Optional[int] = None

    def compose(self) -> ComposeResult:
        """Create the TUI layout."""
        yield Header()

        with Container(id="session-container"):
            yield Label("Sessions", id="session-list-header")
            yield DataTable(id="session-table")

        with Vertical(id="packet-container"):
            yield Static("", id="filter-line")
            with Horizontal(id="packet-body"):
                yield Static("", id="packet-list")
                with DetailsPanel(id="packet-details-panel"):
                    yield Static("", id="packet-details")
                    yield Static("", id="diff-panel")
            yield Static("", id="notice")

        yield Footer()

    async def on_mount(self) -> None:
        """Initialize the application."""
        table = self.query_one("#session-table", DataTable)
        table.add_columns("ID", "Started", "Duration", "Packets")
        table.cursor_type = "row"
        table.zebra_stripes = True
        self.query_one("#packet-container").display = False

        registry = self.controller.registry
        self.sub_title = f"protocol {registry.version}" if registry else "raw packet ids"

        self.call_after_refresh(self._load_sessions)

    async def _load_sessions(self) -> None:
        """Populate the session table."""
        table = self.query_one("#session-table", DataTable)
        try:
            sessions = await self.controller.store.list_sessions()
        except StoreQueryError as e:
            log.error(f"Error loading sessions: {e}")
            self.query_one("#session-list-header", Label).update(f"Error: {e}")
            return

        table.clear()
        for summary in sessions:
            started = summary.started_at.strftime("%Y-%m-%d %H:%M:%S") if summary.started_at else "?"
            table.add_row(
                str(summary.session_id), started, summary.get_duration_str(),
                str(summary.packet_count), key=str(summary.session_id),
            )

        if self.initial_session_id is not None:
            await self._open_session(self.initial_session_id)

    async def _open_session(self, session_id: int) -> None:
        await self.controller.dispatch(LoadSession(session_id))
        if self.controller.state.session_id == session_id:
            self.query_one("#session-container").display = False
            self.query_one("#packet-container").display = True
            self.set_focus(None)
        self._refresh_view()

    async def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        """Handle session selection in the table."""
        if event.row_key is not None:
            await self._open_session(int(event.row_key.value))

    def _show_session_list(self) -> None:
        self.query_one("#packet-container").display = False
        self.query_one("#session-container").display = True
        self.query_one("#session-table", DataTable).focus()

    async def on_key(self, event: events.Key) -> None:
        """Translate key presses into session events."""
        controller = self.controller
        if controller.state.session_id is None or self.query_one("#session-container").display:
            if event.key == "q":
                self.exit()
            return

        mode = controller.state.mode
        key = event.key
        session_event = None

        if mode is Mode.FILTER_INPUT:
            if key == "escape":
                session_event = CancelFilter()
            elif key == "enter":
                session_event = ConfirmFilter()
            elif key == "backspace":
                session_event = Backspace()
            elif event.is_printable and event.character:
                session_event = EditFilterChar(event.character)
        elif key in NAVIGATION_KEYS:
            session_event = Navigate(NAVIGATION_KEYS[key])
        elif key in DETAIL_SCROLL_KEYS:
            event.stop()
            self._scroll_details(DETAIL_SCROLL_KEYS[key])
            return
        elif key in ("x", "X"):
            session_event = ToggleView()
        elif key in ("f", "F"):
            session_event = EnterFilter()
        elif key == "c":
            session_event = MarkBaseline()
        elif key == "escape":
            if mode is Mode.COMPARING:
                session_event = CancelCompare()
            else:
                self._show_session_list()
                return
        elif key == "q":
            session_event = Quit()

        if session_event is None:
            return
        event.stop()
        await controller.dispatch(session_event)
        if controller.should_quit:
            self.exit()
            return
        self._refresh_view()

    def _scroll_details(self, lines: int) -> None:
        panel = self.query_one("#packet-details-panel", DetailsPanel)
        panel.scroll_relative(y=lines, animate=False)

    def _refresh_view(self) -> None:
        controller = self.controller
        state = controller.state

        if state.mode is Mode.FILTER_INPUT:
            filter_text = Text(f"Filter: {state.pending_filter_text}_", style="bold yellow")
        else:
            applied = to_display_string(state.applied_filter) or "a"
            filter_text = Text(f"Session {state.session_id} | filter: {applied} | {state.mode.value}")
        self.query_one("#filter-line", Static).update(filter_text)

        self.query_one("#packet-list", Static).update(self._render_packet_list())
        if state.cursor != self._details_cursor:
            self.query_one("#packet-details-panel", DetailsPanel).scroll_home(animate=False)
            self._details_cursor = state.cursor
        self.query_one("#packet-details", Static).update(self._render_details())
        self.query_one("#diff-panel", Static).update(self._render_diff())
        self.query_one("#notice", Static).update(controller.notice or "")

    def _render_packet_list(self) -> Text:
        controller = self.controller
        records = controller.records
        cursor = controller.state.cursor
        baseline = controller.state.baseline
        text = Text()
        if not records:
            text.append("No packets match the current filter.")
            return text

        start = max(0, min(cursor - LIST_WINDOW // 2, len(records) - LIST_WINDOW))
        for index in range(start, min(start + LIST_WINDOW, len(records))):
            record = records[index]
            marker = ">" if index == cursor else " "
            if baseline is not None and record.packet_number == baseline.packet_number:
                marker = "*" if index != cursor else "#"
            style = DIRECTION_COLORS[record.direction]
            if index == cursor:
                style += " reverse"
            text.append(f"{marker} #{record.packet_number:<6} {controller.label(record)}\n", style=style)
        text.append(f"{cursor + 1}/{len(records)}")
        return text

    def _render_details(self) -> Text:
        controller = self.controller
        record = controller.current_record
        if record is None:
            return Text("")
        header = f"{record.get_summary()}\n{controller.label(record)}\n\n"
        if controller.state.show_hex:
            if record.raw_bytes:
                return Text(header + hex_dump(record.raw_bytes))
            return Text(header + "No raw bytes recorded for this packet.")
        return Text(header + json.dumps(record.decoded_value, indent=2, default=str))

    def _render_diff(self) -> Text:
        controller = self.controller
        state = controller.state
        text = Text()
        if state.mode is not Mode.COMPARING or state.baseline is None:
            return text

        current = controller.current_record
        if current is not None and current.packet_number == state.baseline.packet_number:
            text.append("This is the baseline packet for comparison.\n", style="bold yellow")
            text.append("Navigate to other packets to see differences.")
            return text

        diff = controller.diff
        if diff is None:
            return text
        for line in format_deltas(diff):
            text.append(line + "\n", style="cyan")
        text.append("\n")
        lines = format_diff_lines(diff)
        if not lines:
            text.append("No differences from baseline packet.")
        for line, diff_type in lines:
            text.append(line + "\n", style=_diff_style(diff_type))
        return text


async def run_tui(
    store: PacketStore,
    registry: Optional[ProtocolRegistry] = None,
    session_id: Optional[int] = None,
) -> None:
    """Run the TUI application."""
    app = PacketLensApp(store, registry, session_id)
    await app.run_async()


if __name__ == "__main__":
    import sys
    from .store import open_store
    if len(sys.argv) > 2:
        print("Usage: python -m packet_lens.tui [postgres-dsn]")
        sys.exit(1)

    asyncio.run(run_tui(open_store(sys.argv[1] if len(sys.argv) == 2 else None)))
