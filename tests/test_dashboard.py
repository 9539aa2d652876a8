"""Tests for techscope.dashboard module."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from techscope.clustering import cluster_items
from techscope.dashboard import (
    OPEN_RENDER_DELAY,
    REFRESH_RENDER_DELAY,
    Command,
    DashboardController,
    Outcome,
    decode_key,
    initial_state,
    move_selection,
    replace_clusters,
    selected_cluster,
    toggle_help,
)
from techscope.models import ContentItem


def make_item(item_id: str, title: str) -> ContentItem:
    return ContentItem(
        id=item_id,
        title=title,
        url=f"https://example.com/{item_id}",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        source_name="Tech News",
    )


@pytest.fixture
def clusters():
    return cluster_items([
        make_item("1", "Rust async runtime"),
        make_item("2", "Async runtime in Rust"),
        make_item("3", "Cooking pasta tips"),
        make_item("4", "Kernel scheduler patch"),
    ])


def make_controller(clusters, **overrides) -> DashboardController:
    options = {
        "fetch": MagicMock(return_value=([], [])),
        "render": MagicMock(),
        "open_url": MagicMock(return_value=""),
        "release_input": MagicMock(),
        "spawn": lambda target: target(),
        "schedule": MagicMock(),
    }
    options.update(overrides)
    return DashboardController(clusters, **options)


class TestDecodeKey:
    def test_known_keys(self) -> None:
        assert decode_key("q") is Command.QUIT
        assert decode_key("Q") is Command.QUIT
        assert decode_key("QUIT") is Command.QUIT
        assert decode_key("?") is Command.TOGGLE_HELP
        assert decode_key("UP") is Command.NAVIGATE_UP
        assert decode_key("k") is Command.NAVIGATE_UP
        assert decode_key("DOWN") is Command.NAVIGATE_DOWN
        assert decode_key("j") is Command.NAVIGATE_DOWN
        assert decode_key("o") is Command.OPEN
        assert decode_key("ENTER") is Command.OPEN
        assert decode_key("r") is Command.REFRESH
        assert decode_key("m") is Command.MENU

    def test_unknown_keys(self) -> None:
        assert decode_key("x") is Command.UNKNOWN
        assert decode_key("ESC") is Command.UNKNOWN
        assert decode_key("") is Command.UNKNOWN


class TestTransitions:
    def test_initial_state(self, clusters) -> None:
        state = initial_state(clusters)
        assert state.selected_index == 0
        assert state.help_visible is False
        assert state.item_count == 4

    def test_initial_state_empty(self) -> None:
        state = initial_state([])
        assert state.selected_index is None
        assert selected_cluster(state) is None

    def test_move_selection_is_clamped(self, clusters) -> None:
        state = initial_state(clusters)
        assert move_selection(state, -1).selected_index == 0
        last = len(clusters) - 1
        state = move_selection(move_selection(move_selection(state, 1), 1), 1)
        assert state.selected_index == last
        assert move_selection(state, 1).selected_index == last

    def test_move_selection_empty_is_noop(self) -> None:
        state = initial_state([])
        assert move_selection(state, 1) is state
        assert move_selection(state, -1) is state

    def test_toggle_help(self, clusters) -> None:
        state = initial_state(clusters)
        assert toggle_help(state).help_visible is True
        assert toggle_help(toggle_help(state)).help_visible is False

    def test_replace_clusters_resets_selection(self, clusters) -> None:
        state = move_selection(initial_state(clusters), 2)
        assert replace_clusters(state, clusters[:1]).selected_index == 0
        assert replace_clusters(state, []).selected_index is None


class TestNavigation:
    def test_up_at_top_stays_and_renders(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.NAVIGATE_UP)
        assert controller.state.selected_index == 0
        controller._render_sink.assert_called_once_with(controller.state)

    def test_down_moves_until_last(self, clusters) -> None:
        controller = make_controller(clusters)
        for _ in range(len(clusters) + 2):
            controller.handle(Command.NAVIGATE_DOWN)
        assert controller.state.selected_index == len(clusters) - 1
        assert controller._render_sink.call_count == len(clusters) + 2

    def test_empty_dashboard_navigation(self) -> None:
        controller = make_controller([])
        controller.handle(Command.NAVIGATE_UP)
        controller.handle(Command.NAVIGATE_DOWN)
        assert controller.state.selected_index is None
        assert controller._render_sink.call_count == 2

    def test_toggle_help_renders(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.TOGGLE_HELP)
        assert controller.state.help_visible is True
        controller._render_sink.assert_called_once()

    def test_unknown_command_is_ignored(self, clusters) -> None:
        controller = make_controller(clusters)
        before = controller.state
        controller.handle(Command.UNKNOWN)
        controller.handle("garbage")
        assert controller.state is before
        controller._render_sink.assert_not_called()


class TestExit:
    def test_quit_releases_input_without_render(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.QUIT)
        assert controller.outcome is Outcome.QUIT
        assert controller.exited
        controller._release_input.assert_called_once()
        controller._render_sink.assert_not_called()

    def test_menu_returns_menu_outcome(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.MENU)
        assert controller.outcome is Outcome.MENU
        controller._release_input.assert_called_once()

    def test_commands_after_exit_are_ignored(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.QUIT)
        controller.handle(Command.NAVIGATE_DOWN)
        controller.dispatch("refreshed", ([make_item("9", "Late arrival")], []))
        assert controller.state.selected_index == 0
        controller._render_sink.assert_not_called()

    def test_release_failure_still_exits(self, clusters) -> None:
        controller = make_controller(clusters, release_input=MagicMock(side_effect=OSError("tty gone")))
        controller.handle(Command.QUIT)
        assert controller.outcome is Outcome.QUIT


class TestOpen:
    def test_opens_lead_member(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.OPEN)

        controller._open_url.assert_called_once_with("https://example.com/1")
        assert "Opening: Rust async runtime" in controller.state.notice
        controller._render_sink.assert_called_once()
        delay, callback = controller._schedule.call_args.args
        assert delay == OPEN_RENDER_DELAY

        callback()
        controller.process_pending()
        assert controller.state.notice == ""
        assert controller._render_sink.call_count == 2

    def test_open_selected_cluster(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.NAVIGATE_DOWN)
        controller.handle(Command.OPEN)
        controller._open_url.assert_called_once_with(clusters[1].lead.url)

    def test_open_without_clusters_is_noop(self) -> None:
        spawn = MagicMock()
        controller = make_controller([], spawn=spawn)
        controller.handle(Command.OPEN)
        spawn.assert_not_called()
        controller._open_url.assert_not_called()
        controller._render_sink.assert_not_called()

    def test_open_failure_is_not_fatal(self, clusters) -> None:
        controller = make_controller(clusters, open_url=MagicMock(side_effect=RuntimeError("no browser")))
        controller.handle(Command.OPEN)
        assert not controller.exited
        controller._render_sink.assert_called_once()


class TestRefresh:
    def test_replaces_clusters_and_resets_selection(self, clusters) -> None:
        fresh = [make_item("10", "Zig compiler news"), make_item("11", "Zig compiler news today")]
        controller = make_controller(clusters, fetch=MagicMock(return_value=(fresh, [])))
        controller.handle(Command.NAVIGATE_DOWN)
        controller.handle(Command.REFRESH)
        assert controller.state.notice == "Refreshing content..."

        controller.process_pending()

        assert len(controller.state.clusters) == 1
        assert controller.state.selected_index == 0
        assert controller.state.notice_level == "success"
        delay, callback = controller._schedule.call_args.args
        assert delay == REFRESH_RENDER_DELAY

        callback()
        controller.process_pending()
        assert controller.state.notice == ""

    def test_empty_result_keeps_state(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.handle(Command.NAVIGATE_DOWN)
        before = controller.state.clusters

        controller.handle(Command.REFRESH)
        controller.process_pending()

        assert controller.state.clusters is before
        assert controller.state.selected_index == 1
        assert controller.state.notice == "✗ No content found"
        assert controller.state.notice_level == "error"
        controller._schedule.assert_called_once()

    def test_failed_fetch_keeps_state(self, clusters) -> None:
        controller = make_controller(clusters, fetch=MagicMock(return_value=([], ["Tech news unavailable"])))
        before = controller.state.clusters
        controller.handle(Command.REFRESH)
        controller.process_pending()
        assert controller.state.clusters is before
        assert controller.state.notice == "✗ Failed to refresh content"

    def test_fetch_exception_is_treated_as_failure(self, clusters) -> None:
        controller = make_controller(clusters, fetch=MagicMock(side_effect=ConnectionError("offline")))
        controller.handle(Command.REFRESH)
        controller.process_pending()
        assert controller.state.notice == "✗ Failed to refresh content"
        assert not controller.exited

    def test_regroup_error_rerenders_current_state(self, clusters) -> None:
        controller = make_controller(
            clusters,
            fetch=MagicMock(return_value=([make_item("10", "Anything")], [])),
            regroup=MagicMock(side_effect=ValueError("bad cluster")),
        )
        before = controller.state.clusters
        controller.handle(Command.REFRESH)
        controller.process_pending()
        assert controller.state.clusters is before
        assert controller.state.notice == "✗ Failed to refresh content"
        assert controller.state.notice_level == "error"
        assert controller._render_sink.call_count == 2

        delay, callback = controller._schedule.call_args.args
        assert delay == REFRESH_RENDER_DELAY
        callback()
        controller.process_pending()
        assert controller.state.notice == ""
        assert controller._render_sink.call_count == 3

    def test_spawn_error_rerenders(self, clusters) -> None:
        controller = make_controller(clusters, spawn=MagicMock(side_effect=RuntimeError("no threads")))
        controller.handle(Command.REFRESH)
        assert not controller.exited
        assert controller.state.notice == "✗ Failed to refresh content"
        controller._render_sink.assert_called_once()

        delay, callback = controller._schedule.call_args.args
        assert delay == REFRESH_RENDER_DELAY
        callback()
        controller.process_pending()
        assert controller.state.notice == ""

    def test_background_threads(self, clusters) -> None:
        fresh = [make_item("10", "Zig compiler news")]
        controller = DashboardController(
            clusters,
            fetch=lambda: (fresh, []),
            render=MagicMock(),
            open_url=MagicMock(return_value=""),
            open_delay=0.01,
            refresh_delay=0.01,
        )
        controller.handle(Command.REFRESH)

        controller.dispatch(*controller.events.get(timeout=2))
        assert controller.state.clusters[0].lead.id == "10"
        controller.dispatch(*controller.events.get(timeout=2))
        assert controller.state.notice == ""


class TestRun:
    def test_processes_queued_commands_until_quit(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.post_command(Command.NAVIGATE_DOWN)
        controller.post_command(Command.TOGGLE_HELP)
        controller.post_command(Command.QUIT)

        assert controller.run(poll_seconds=0.01) is Outcome.QUIT
        assert controller.state.selected_index == 1
        assert controller.state.help_visible is True
        assert controller._render_sink.call_count == 3

    def test_keyboard_interrupt_quits_cleanly(self, clusters) -> None:
        controller = make_controller(clusters)
        controller.events = MagicMock()
        controller.events.get.side_effect = KeyboardInterrupt

        assert controller.run(poll_seconds=0.01) is Outcome.QUIT
        controller._release_input.assert_called_once()

    def test_render_errors_do_not_escape(self, clusters) -> None:
        controller = make_controller(clusters, render=MagicMock(side_effect=RuntimeError("closed")))
        controller.post_command(Command.NAVIGATE_DOWN)
        controller.post_command(Command.MENU)
        assert controller.run(poll_seconds=0.01) is Outcome.MENU
