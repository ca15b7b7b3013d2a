"""
Session interaction state machine.

``transition`` is a pure function from (state, event, current view) to the
next state plus an optional store query request. ``SessionController`` runs
those requests against a PacketStore, keeps the loaded packet view and the
comparison result, and never lets two queries overlap.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence, Union

from .filters import FilterSet, compile_filter, parse_filter, to_display_string
from .identifier import record_label
from .models import DiffResult, PacketRecord
from .packet_differ import compare_records
from .protocol import ProtocolRegistry
from .store import PacketStore, StoreQueryError

logger = logging.getLogger(__name__)

PAGE_SIZE = 10


class Mode(Enum):
    BROWSING = "browsing"
    FILTER_INPUT = "filter_input"
    COMPARING = "comparing"


class NavigationStep(Enum):
    NEXT = "next"
    PREV = "prev"
    PAGE_NEXT = "page_next"
    PAGE_PREV = "page_prev"
    FIRST = "first"
    LAST = "last"


# Keyboard contract events

@dataclass(frozen=True)
class Navigate:
    step: NavigationStep


@dataclass(frozen=True)
class ToggleView:
    pass


@dataclass(frozen=True)
class EnterFilter:
    pass


@dataclass(frozen=True)
class ConfirmFilter:
    pass


@dataclass(frozen=True)
class CancelFilter:
    pass


@dataclass(frozen=True)
class EditFilterChar:
    char: str


@dataclass(frozen=True)
class Backspace:
    pass


@dataclass(frozen=True)
class MarkBaseline:
    pass


@dataclass(frozen=True)
class CancelCompare:
    pass


@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class LoadSession:
    session_id: int


Event = Union[
    Navigate, ToggleView, EnterFilter, ConfirmFilter, CancelFilter, EditFilterChar,
    Backspace, MarkBaseline, CancelCompare, Quit, LoadSession,
]


@dataclass(frozen=True)
class InteractionState:
    """
    Everything the session view remembers between key presses.

    ``baseline`` is only set while comparing, or while editing a filter that
    was opened from compare mode.
    """
    mode: Mode = Mode.BROWSING
    session_id: Optional[int] = None
    cursor: int = 0
    baseline: Optional[PacketRecord] = None
    applied_filter: Optional[FilterSet] = None
    pending_filter_text: str = ""
    show_hex: bool = False


@dataclass(frozen=True)
class QueryRequest:
    """
    A store query the transition asks the controller to run.

    ``on_success`` is the state committed once records arrive; its cursor is
    re-targeted to ``anchor_packet_number`` when one is given.
    """
    session_id: int
    filter_set: Optional[FilterSet]
    on_success: InteractionState
    anchor_packet_number: Optional[int] = None


@dataclass(frozen=True)
class Transition:
    state: InteractionState
    query: Optional[QueryRequest] = None
    quit: bool = False


def _navigate(cursor: int, step: NavigationStep, count: int) -> int:
    if count == 0:
        return 0
    last = count - 1
    if step is NavigationStep.NEXT:
        target = cursor + 1
    elif step is NavigationStep.PREV:
        target = cursor - 1
    elif step is NavigationStep.PAGE_NEXT:
        target = cursor + PAGE_SIZE
    elif step is NavigationStep.PAGE_PREV:
        target = cursor - PAGE_SIZE
    elif step is NavigationStep.FIRST:
        target = 0
    else:
        target = last
    return max(0, min(target, last))


def closest_index(records: Sequence[PacketRecord], packet_number: int) -> int:
    """Index of the record whose packet number is closest; earliest wins ties."""
    best_index = 0
    best_distance = None
    for index, record in enumerate(records):
        distance = abs(record.packet_number - packet_number)
        if best_distance is None or distance < best_distance:
            best_index, best_distance = index, distance
    return best_index


def transition(
    state: InteractionState,
    event: Event,
    records: Sequence[PacketRecord] = (),
) -> Transition:
    """
    Compute the next state for an event.

    Args:
        state: Current state
        event: Keyboard contract event or LoadSession
        records: Packets currently displayed, in view order

    Returns:
        Transition with the next state and, when the store must be queried,
        a QueryRequest whose ``on_success`` state is committed afterwards
    """
    if isinstance(event, Quit):
        return Transition(state, quit=True)

    if isinstance(event, LoadSession):
        fresh = InteractionState(session_id=event.session_id, show_hex=state.show_hex)
        return Transition(state, QueryRequest(event.session_id, None, fresh))

    current = records[state.cursor] if 0 <= state.cursor < len(records) else None

    if state.mode is Mode.FILTER_INPUT:
        if isinstance(event, EditFilterChar):
            return Transition(replace(state, pending_filter_text=state.pending_filter_text + event.char))
        if isinstance(event, Backspace):
            return Transition(replace(state, pending_filter_text=state.pending_filter_text[:-1]))
        if isinstance(event, CancelFilter):
            mode = Mode.COMPARING if state.baseline is not None else Mode.BROWSING
            return Transition(replace(state, mode=mode, pending_filter_text=""))
        if isinstance(event, ConfirmFilter):
            filter_set = parse_filter(state.pending_filter_text)
            applied = None if filter_set.is_empty() else filter_set
            committed = replace(
                state, mode=Mode.BROWSING, baseline=None, applied_filter=applied,
                pending_filter_text="", cursor=0,
            )
            if state.session_id is None:
                return Transition(committed)
            anchor = current.packet_number if current is not None else None
            return Transition(state, QueryRequest(state.session_id, filter_set, committed, anchor))
        return Transition(state)

    if isinstance(event, Navigate):
        return Transition(replace(state, cursor=_navigate(state.cursor, event.step, len(records))))

    if isinstance(event, ToggleView):
        return Transition(replace(state, show_hex=not state.show_hex))

    if isinstance(event, EnterFilter):
        return Transition(replace(
            state,
            mode=Mode.FILTER_INPUT,
            pending_filter_text=to_display_string(state.applied_filter),
        ))

    if isinstance(event, MarkBaseline):
        if current is None:
            return Transition(state)
        return Transition(replace(state, mode=Mode.COMPARING, baseline=current))

    if isinstance(event, CancelCompare) and state.mode is Mode.COMPARING:
        return Transition(replace(state, mode=Mode.BROWSING, baseline=None))

    return Transition(state)


class SessionController:
    """
    Drives one session view.

    Applies events through :func:`transition`, runs the resulting store
    queries one at a time, and recomputes the baseline diff on every event
    while comparing.
    """

    def __init__(self, store: PacketStore, registry: Optional[ProtocolRegistry] = None):
        self.store = store
        self.registry = registry
        self.state = InteractionState()
        self.records: Sequence[PacketRecord] = ()
        self.diff: Optional[DiffResult] = None
        self.notice: Optional[str] = None
        self.should_quit = False
        self._query_in_flight = False

    @property
    def current_record(self) -> Optional[PacketRecord]:
        if 0 <= self.state.cursor < len(self.records):
            return self.records[self.state.cursor]
        return None

    @property
    def query_in_flight(self) -> bool:
        return self._query_in_flight

    def label(self, record: PacketRecord) -> str:
        return record_label(record, self.registry)

    async def dispatch(self, event: Event) -> bool:
        """
        Process one event to completion.

        Returns:
            False if the event was rejected because a query is still running
            or the query failed, True otherwise
        """
        if self._query_in_flight and not isinstance(event, Quit):
            self.notice = "A query is already running"
            logger.debug(f"Rejected {event!r}: query in flight")
            return False

        result = transition(self.state, event, self.records)
        if result.quit:
            self.should_quit = True
            return True

        if result.query is not None:
            self.notice = None
            if not await self._run_query(result.query):
                return False
        else:
            self.state = result.state

        self._refresh_diff()
        return True

    async def _run_query(self, request: QueryRequest) -> bool:
        self._query_in_flight = True
        try:
            predicate = compile_filter(request.filter_set)
            records = await self.store.query_packets(request.session_id, predicate)
        except StoreQueryError as e:
            self.notice = f"Failed to load packets: {e}"
            logger.warning(self.notice)
            return False
        finally:
            self._query_in_flight = False

        state = request.on_success
        if request.anchor_packet_number is not None and records:
            state = replace(state, cursor=closest_index(records, request.anchor_packet_number))
        self.records = tuple(records)
        self.state = state
        if request.filter_set is not None and request.filter_set.dropped:
            self.notice = f"Ignored filter clauses: {', '.join(request.filter_set.dropped)}"
        logger.info(f"Session {request.session_id}: {len(self.records)} packets in view")
        return True

    def _refresh_diff(self) -> None:
        baseline = self.state.baseline
        current = self.current_record
        if self.state.mode is Mode.COMPARING and baseline is not None and current is not None:
            self.diff = compare_records(baseline, current)
        else:
            self.diff = None
