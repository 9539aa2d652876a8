from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Sequence

from .clustering import cluster_items
from .models import Cluster, ContentItem

logger = logging.getLogger(__name__)

OPEN_RENDER_DELAY = 1.5
REFRESH_RENDER_DELAY = 1.0
REFRESH_FAILED_NOTICE = "✗ Failed to refresh content"

FetchResult = tuple[list[ContentItem], list[str]]


class Command(Enum):
    QUIT = "quit"
    TOGGLE_HELP = "toggle-help"
    NAVIGATE_UP = "navigate-up"
    NAVIGATE_DOWN = "navigate-down"
    OPEN = "open"
    REFRESH = "refresh"
    MENU = "menu"
    UNKNOWN = "unknown"


class Outcome(Enum):
    QUIT = "quit"
    MENU = "menu"


KEY_COMMANDS: dict[str, Command] = {
    "QUIT": Command.QUIT,
    "q": Command.QUIT,
    "?": Command.TOGGLE_HELP,
    "UP": Command.NAVIGATE_UP,
    "k": Command.NAVIGATE_UP,
    "DOWN": Command.NAVIGATE_DOWN,
    "j": Command.NAVIGATE_DOWN,
    "ENTER": Command.OPEN,
    "o": Command.OPEN,
    "r": Command.REFRESH,
    "m": Command.MENU,
}


def decode_key(key: str) -> Command:
    """Map a key token from the keyboard reader to a dashboard command."""
    if len(key) == 1:
        key = key.lower()
    return KEY_COMMANDS.get(key, Command.UNKNOWN)


@dataclass(frozen=True)
class DashboardState:
    clusters: tuple[Cluster, ...]
    selected_index: int | None
    help_visible: bool = False
    notice: str = ""
    notice_level: str = "info"

    @property
    def item_count(self) -> int:
        return sum(len(cluster.members) for cluster in self.clusters)


def initial_state(clusters: Sequence[Cluster]) -> DashboardState:
    clusters = tuple(clusters)
    return DashboardState(clusters=clusters, selected_index=0 if clusters else None)


def selected_cluster(state: DashboardState) -> Cluster | None:
    if state.selected_index is None or not state.clusters:
        return None
    return state.clusters[state.selected_index]


def move_selection(state: DashboardState, delta: int) -> DashboardState:
    if state.selected_index is None or not state.clusters:
        return state
    index = max(0, min(len(state.clusters) - 1, state.selected_index + delta))
    return replace(state, selected_index=index)


def toggle_help(state: DashboardState) -> DashboardState:
    return replace(state, help_visible=not state.help_visible)


def replace_clusters(state: DashboardState, clusters: Sequence[Cluster]) -> DashboardState:
    clusters = tuple(clusters)
    return replace(state, clusters=clusters, selected_index=0 if clusters else None)


def with_notice(state: DashboardState, notice: str, level: str = "info") -> DashboardState:
    return replace(state, notice=notice, notice_level=level)


def start_daemon(target: Callable[[], None]) -> threading.Thread:
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def start_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class DashboardController:
    """
    Event-driven state machine behind the interactive dashboard.

    All state changes happen on the thread that calls ``run`` (or
    ``process_pending``). Background work for ``open`` and ``refresh`` runs on
    spawned threads which only post events back onto ``events``:

    - ``("command", Command)`` from the keyboard reader
    - ``("refreshed", (items, errors))`` when a refresh fetch settles
    - ``("settle", None)`` when a delayed re-render is due
    """

    def __init__(
        self,
        clusters: Sequence[Cluster],
        *,
        fetch: Callable[[], FetchResult],
        render: Callable[[DashboardState], None],
        open_url: Callable[[str], str],
        release_input: Callable[[], None] | None = None,
        regroup: Callable[[Sequence[ContentItem]], list[Cluster]] = cluster_items,
        spawn: Callable[[Callable[[], None]], Any] = start_daemon,
        schedule: Callable[[float, Callable[[], None]], Any] = start_timer,
        open_delay: float = OPEN_RENDER_DELAY,
        refresh_delay: float = REFRESH_RENDER_DELAY,
    ) -> None:
        self.events: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._state = initial_state(clusters)
        self._fetch = fetch
        self._render_sink = render
        self._open_url = open_url
        self._release_input = release_input
        self._regroup = regroup
        self._spawn = spawn
        self._schedule = schedule
        self.open_delay = open_delay
        self.refresh_delay = refresh_delay
        self._outcome: Outcome | None = None

    @property
    def state(self) -> DashboardState:
        return self._state

    @property
    def outcome(self) -> Outcome | None:
        return self._outcome

    @property
    def exited(self) -> bool:
        return self._outcome is not None

    def post(self, event: str, value: Any = None) -> None:
        self.events.put((event, value))

    def post_command(self, command: Command) -> None:
        self.post("command", command)

    def run(self, poll_seconds: float = 0.2) -> Outcome:
        self._render()
        while self._outcome is None:
            try:
                try:
                    event, value = self.events.get(timeout=poll_seconds)
                except queue.Empty:
                    continue
                self.dispatch(event, value)
            except KeyboardInterrupt:
                self.handle(Command.QUIT)
        return self._outcome

    def process_pending(self) -> None:
        while self._outcome is None:
            try:
                event, value = self.events.get_nowait()
            except queue.Empty:
                return
            self.dispatch(event, value)

    def dispatch(self, event: str, value: Any) -> None:
        if self.exited:
            return
        if event == "command":
            self.handle(value)
            return
        try:
            if event == "refreshed":
                self._apply_refresh(value)
            elif event == "settle":
                self._state = with_notice(self._state, "")
                self._render()
            else:
                logger.debug("Ignoring unknown dashboard event %r", event)
        except Exception:
            logger.exception("Dashboard failed to process %s event", event)
            self._render()

    def handle(self, command: Command) -> None:
        if self.exited:
            return
        if not isinstance(command, Command) or command is Command.UNKNOWN:
            logger.debug("Ignoring unrecognized input %r", command)
            return
        try:
            if command is Command.QUIT:
                self._exit(Outcome.QUIT)
                return
            if command is Command.MENU:
                self._exit(Outcome.MENU)
                return
            if command is Command.TOGGLE_HELP:
                self._state = toggle_help(self._state)
            elif command is Command.NAVIGATE_UP:
                self._state = move_selection(self._state, -1)
            elif command is Command.NAVIGATE_DOWN:
                self._state = move_selection(self._state, 1)
            elif command is Command.OPEN:
                if not self._open_selected():
                    return
            elif command is Command.REFRESH:
                self._start_refresh()
            self._render()
        except Exception:
            logger.exception("Dashboard failed to handle %s", command.value)
            self._render()

    def _render(self) -> None:
        try:
            self._render_sink(self._state)
        except Exception:
            logger.exception("Dashboard render failed")

    def _exit(self, outcome: Outcome) -> None:
        self._outcome = outcome
        if self._release_input is None:
            return
        try:
            self._release_input()
        except Exception:
            logger.exception("Failed to release terminal input")

    def _open_selected(self) -> bool:
        cluster = selected_cluster(self._state)
        if cluster is None:
            return False
        item = cluster.lead
        self._state = with_notice(self._state, f"Opening: {item.title}\n{item.url}")
        self._spawn(lambda: self._open_in_background(item.url))
        self._schedule(self.open_delay, lambda: self.post("settle"))
        return True

    def _open_in_background(self, url: str) -> None:
        try:
            error = self._open_url(url)
        except Exception:
            logger.exception("Opening %s failed", url)
            return
        if error:
            logger.warning(error)

    def _settle_after_refresh(self) -> None:
        self._schedule(self.refresh_delay, lambda: self.post("settle"))

    def _start_refresh(self) -> None:
        self._state = with_notice(self._state, "Refreshing content...")
        try:
            self._spawn(self._refresh_in_background)
        except Exception:
            logger.exception("Could not start refresh")
            self._state = with_notice(self._state, REFRESH_FAILED_NOTICE, "error")
            self._settle_after_refresh()

    def _refresh_in_background(self) -> None:
        try:
            result = self._fetch()
        except Exception as exc:
            logger.exception("Refresh fetch raised")
            result = ([], [str(exc)])
        self.post("refreshed", result)

    def _apply_refresh(self, result: FetchResult) -> None:
        items, errors = result
        try:
            if items:
                self._state = with_notice(
                    replace_clusters(self._state, self._regroup(items)),
                    "✓ Content refreshed!",
                    "success",
                )
                logger.info("Refreshed dashboard with %d items", len(items))
            elif errors:
                self._state = with_notice(self._state, REFRESH_FAILED_NOTICE, "error")
                logger.info("Refresh failed: %s", "; ".join(errors))
            else:
                self._state = with_notice(self._state, "✗ No content found", "error")
                logger.info("Refresh returned no content")
        except Exception:
            logger.exception("Could not regroup refreshed items")
            self._state = with_notice(self._state, REFRESH_FAILED_NOTICE, "error")
        self._render()
        self._settle_after_refresh()
