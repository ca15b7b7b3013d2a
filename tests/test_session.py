"""
Tests for the session interaction state machine and controller
"""

import asyncio

import pytest

from packet_lens.filters import parse_filter
from packet_lens.models import DiffType, Direction
from packet_lens.session import (
    Backspace, CancelCompare, CancelFilter, ConfirmFilter, EditFilterChar, EnterFilter,
    InteractionState, LoadSession, MarkBaseline, Mode, Navigate, NavigationStep, Quit,
    SessionController, ToggleView, closest_index, transition,
)
from packet_lens.store import MemoryPacketStore, PacketStore, StoreQueryError

from conftest import make_record


def run(coro):
    return asyncio.run(coro)


def type_text(controller, text):
    for char in text:
        run(controller.dispatch(EditFilterChar(char)))


@pytest.fixture
def controller(store, registry):
    controller = SessionController(store, registry)
    run(controller.dispatch(LoadSession(1)))
    return controller


class FailingStore(PacketStore):
    async def list_sessions(self):
        raise StoreQueryError("down")

    async def query_packets(self, session_id, predicate=None):
        raise StoreQueryError("down")


class BlockingStore(PacketStore):
    """Store whose queries wait until released."""

    def __init__(self, records):
        self.inner = MemoryPacketStore(records)
        self.release = None

    async def list_sessions(self):
        return await self.inner.list_sessions()

    async def query_packets(self, session_id, predicate=None):
        await self.release.wait()
        return await self.inner.query_packets(session_id, predicate)


class TestTransition:
    """Pure transition function"""

    def test_initial_state(self):
        state = InteractionState()
        assert state.mode is Mode.BROWSING
        assert state.baseline is None
        assert state.applied_filter is None

    def test_enter_filter_seeds_pending_text(self, records):
        state = InteractionState(session_id=1, applied_filter=parse_filter("s.login, c.*x*"))
        result = transition(state, EnterFilter(), records)
        assert result.state.mode is Mode.FILTER_INPUT
        assert result.state.pending_filter_text == "s.login,c.*x*"
        assert result.query is None

    def test_enter_filter_without_filter_is_empty(self, records):
        result = transition(InteractionState(session_id=1), EnterFilter(), records)
        assert result.state.pending_filter_text == ""

    def test_editing(self):
        state = InteractionState(mode=Mode.FILTER_INPUT, pending_filter_text="s.lo")
        state = transition(state, EditFilterChar("g"), ()).state
        assert state.pending_filter_text == "s.log"
        state = transition(state, Backspace(), ()).state
        state = transition(state, Backspace(), ()).state
        assert state.pending_filter_text == "s.l"
        state = transition(state, Backspace(), ()).state
        assert state.pending_filter_text == "s."

    def test_cancel_filter_keeps_applied_filter(self, records):
        applied = parse_filter("c")
        state = InteractionState(session_id=1, mode=Mode.FILTER_INPUT,
                                 applied_filter=applied, pending_filter_text="s.zzz")
        result = transition(state, CancelFilter(), records)
        assert result.state.mode is Mode.BROWSING
        assert result.state.applied_filter == applied
        assert result.state.pending_filter_text == ""
        assert result.query is None

    def test_confirm_filter_requests_query(self, records):
        state = InteractionState(session_id=1, mode=Mode.FILTER_INPUT,
                                 pending_filter_text="s.login", cursor=2,
                                 baseline=records[0])
        result = transition(state, ConfirmFilter(), records)
        assert result.state == state
        assert result.query.session_id == 1
        assert result.query.filter_set == parse_filter("s.login")
        assert result.query.anchor_packet_number == records[2].packet_number
        committed = result.query.on_success
        assert committed.mode is Mode.BROWSING
        assert committed.baseline is None
        assert committed.applied_filter == parse_filter("s.login")

    def test_confirm_empty_filter_clears_it(self, records):
        state = InteractionState(session_id=1, mode=Mode.FILTER_INPUT,
                                 applied_filter=parse_filter("c"), pending_filter_text="")
        result = transition(state, ConfirmFilter(), records)
        assert result.query.on_success.applied_filter is None

    def test_mark_and_cancel_baseline(self, records):
        state = InteractionState(session_id=1, cursor=3)
        state = transition(state, MarkBaseline(), records).state
        assert state.mode is Mode.COMPARING
        assert state.baseline == records[3]
        state = transition(state, CancelCompare(), records).state
        assert state.mode is Mode.BROWSING
        assert state.baseline is None

    def test_mark_baseline_without_records(self):
        state = InteractionState(session_id=1)
        assert transition(state, MarkBaseline(), ()).state == state

    def test_navigation_keeps_mode(self, records):
        state = InteractionState(session_id=1, mode=Mode.COMPARING, baseline=records[0])
        state = transition(state, Navigate(NavigationStep.NEXT), records).state
        assert state.mode is Mode.COMPARING
        assert state.cursor == 1

    @pytest.mark.parametrize("step, start, expected", [
        (NavigationStep.NEXT, 0, 1),
        (NavigationStep.NEXT, 7, 7),
        (NavigationStep.PREV, 0, 0),
        (NavigationStep.PREV, 5, 4),
        (NavigationStep.PAGE_NEXT, 0, 7),
        (NavigationStep.PAGE_PREV, 5, 0),
        (NavigationStep.FIRST, 5, 0),
        (NavigationStep.LAST, 0, 7),
    ])
    def test_navigation_is_clamped(self, records, step, start, expected):
        state = InteractionState(session_id=1, cursor=start)
        assert transition(state, Navigate(step), records).state.cursor == expected

    def test_navigation_ignored_while_editing(self, records):
        state = InteractionState(session_id=1, mode=Mode.FILTER_INPUT)
        assert transition(state, Navigate(NavigationStep.NEXT), records).state == state

    def test_toggle_view(self, records):
        state = transition(InteractionState(session_id=1), ToggleView(), records).state
        assert state.show_hex

    def test_load_session_resets(self, records):
        state = InteractionState(session_id=1, mode=Mode.COMPARING, baseline=records[0],
                                 applied_filter=parse_filter("c"), cursor=4)
        result = transition(state, LoadSession(2), records)
        fresh = result.query.on_success
        assert result.query.session_id == 2
        assert result.query.filter_set is None
        assert fresh.mode is Mode.BROWSING
        assert fresh.baseline is None
        assert fresh.applied_filter is None
        assert fresh.cursor == 0

    def test_quit(self):
        assert transition(InteractionState(), Quit(), ()).quit

    def test_closest_index(self, records):
        assert closest_index(records, 3) == 2
        assert closest_index(records[::2], 4) == 1
        assert closest_index(records, 100) == len(records) - 1


class TestSessionController:
    """Controller running transitions against a store"""

    def test_load_session(self, controller, records):
        assert controller.state.session_id == 1
        assert len(controller.records) == len(records)
        assert controller.current_record == records[0]

    def test_apply_filter(self, controller):
        run(controller.dispatch(EnterFilter()))
        type_text(controller, "s.player_auth_input")
        run(controller.dispatch(ConfirmFilter()))

        assert controller.state.mode is Mode.BROWSING
        assert controller.state.applied_filter == parse_filter("s.player_auth_input")
        assert [r.packet_number for r in controller.records] == [3, 7]
        assert all(r.direction is Direction.SERVERBOUND for r in controller.records)

    def test_wildcard_filter(self, controller):
        run(controller.dispatch(EnterFilter()))
        type_text(controller, "c.*sleep*")
        run(controller.dispatch(ConfirmFilter()))
        assert [r.name for r in controller.records] == ["player_action_sleep", "Sleep"]

    def test_filter_keeps_position(self, controller):
        for _ in range(5):
            run(controller.dispatch(Navigate(NavigationStep.NEXT)))
        assert controller.current_record.packet_number == 6
        run(controller.dispatch(EnterFilter()))
        type_text(controller, "s")
        run(controller.dispatch(ConfirmFilter()))
        assert controller.current_record.packet_number == 7

    def test_dropped_clause_notice(self, controller):
        run(controller.dispatch(EnterFilter()))
        type_text(controller, "s.login,z.foo")
        run(controller.dispatch(ConfirmFilter()))
        assert [r.packet_number for r in controller.records] == [1]
        assert "z.foo" in controller.notice

    def test_compare_recomputes_on_navigation(self, controller):
        run(controller.dispatch(Navigate(NavigationStep.NEXT)))
        run(controller.dispatch(Navigate(NavigationStep.NEXT)))
        run(controller.dispatch(MarkBaseline()))
        assert controller.state.mode is Mode.COMPARING
        assert controller.diff.entries == []

        run(controller.dispatch(Navigate(NavigationStep.PAGE_NEXT)))
        assert controller.current_record.packet_number == 8
        first = controller.diff
        assert first.packet_number_delta == 5

        run(controller.dispatch(Navigate(NavigationStep.PREV)))
        second = controller.diff
        assert second is not first
        assert second.packet_number_delta == 4
        assert {e.path_str: e.kind for e in second.entries} == {
            "position.x": DiffType.MODIFIED,
            "tick": DiffType.MODIFIED,
        }

    def test_applying_filter_clears_baseline(self, controller):
        run(controller.dispatch(MarkBaseline()))
        run(controller.dispatch(EnterFilter()))
        assert controller.state.baseline is not None
        run(controller.dispatch(ConfirmFilter()))
        assert controller.state.mode is Mode.BROWSING
        assert controller.state.baseline is None
        assert controller.diff is None

    def test_cancel_filter_returns_to_compare(self, controller):
        run(controller.dispatch(MarkBaseline()))
        run(controller.dispatch(EnterFilter()))
        run(controller.dispatch(CancelFilter()))
        assert controller.state.mode is Mode.COMPARING
        assert controller.diff is not None

    def test_cancel_compare(self, controller):
        run(controller.dispatch(MarkBaseline()))
        run(controller.dispatch(CancelCompare()))
        assert controller.state.mode is Mode.BROWSING
        assert controller.state.baseline is None
        assert controller.diff is None

    def test_quit(self, controller):
        run(controller.dispatch(Quit()))
        assert controller.should_quit

    def test_failed_query_leaves_state_unchanged(self, registry):
        controller = SessionController(FailingStore(), registry)
        before = controller.state
        assert run(controller.dispatch(LoadSession(1))) is False
        assert controller.state == before
        assert "down" in controller.notice

    def test_failed_filter_query_keeps_view(self, controller, records):
        run(controller.dispatch(EnterFilter()))
        type_text(controller, "c")
        before = controller.state
        controller.store = FailingStore()
        assert run(controller.dispatch(ConfirmFilter())) is False
        assert controller.state == before
        assert len(controller.records) == len(records)

    def test_one_query_in_flight(self, records, registry):
        async def scenario():
            store = BlockingStore(records)
            store.release = asyncio.Event()
            controller = SessionController(store, registry)

            first = asyncio.ensure_future(controller.dispatch(LoadSession(1)))
            await asyncio.sleep(0)
            assert controller.query_in_flight
            rejected = await controller.dispatch(LoadSession(1))
            store.release.set()
            accepted = await first
            return controller, rejected, accepted

        controller, rejected, accepted = run(scenario())
        assert rejected is False
        assert accepted is True
        assert not controller.query_in_flight
        assert len(controller.records) == len(records)

    def test_events_rejected_while_query_runs(self, records, registry):
        async def scenario():
            store = BlockingStore(records)
            store.release = asyncio.Event()
            store.release.set()
            controller = SessionController(store, registry)
            await controller.dispatch(LoadSession(1))
            await controller.dispatch(EnterFilter())
            await controller.dispatch(EditFilterChar("c"))

            store.release.clear()
            confirm = asyncio.ensure_future(controller.dispatch(ConfirmFilter()))
            await asyncio.sleep(0)
            assert controller.query_in_flight
            edit_accepted = await controller.dispatch(EditFilterChar("z"))
            nav_accepted = await controller.dispatch(Navigate(NavigationStep.NEXT))
            pending = controller.state.pending_filter_text
            store.release.set()
            await confirm
            return controller, edit_accepted, nav_accepted, pending

        controller, edit_accepted, nav_accepted, pending = run(scenario())
        assert edit_accepted is False
        assert nav_accepted is False
        assert pending == "c"
        assert controller.state.mode is Mode.BROWSING
        assert controller.state.applied_filter == parse_filter("c")
        assert controller.state.cursor == 0

    def test_quit_accepted_while_query_runs(self, records, registry):
        async def scenario():
            store = BlockingStore(records)
            store.release = asyncio.Event()
            controller = SessionController(store, registry)
            load = asyncio.ensure_future(controller.dispatch(LoadSession(1)))
            await asyncio.sleep(0)
            accepted = await controller.dispatch(Quit())
            store.release.set()
            await load
            return controller, accepted

        controller, accepted = run(scenario())
        assert accepted is True
        assert controller.should_quit

    def test_load_new_session_resets(self, registry):
        store = MemoryPacketStore([
            make_record(1, Direction.CLIENTBOUND, "a", session_id=1),
            make_record(1, Direction.CLIENTBOUND, "b", session_id=2),
        ])
        controller = SessionController(store, registry)
        run(controller.dispatch(LoadSession(1)))
        run(controller.dispatch(MarkBaseline()))
        run(controller.dispatch(LoadSession(2)))
        assert controller.state.session_id == 2
        assert controller.state.mode is Mode.BROWSING
        assert controller.state.baseline is None
        assert controller.current_record.name == "b"
