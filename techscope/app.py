from __future__ import annotations

import argparse
import logging
import os
import select
import subprocess
import sys
import termios
import threading
import tty
import webbrowser
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, TextIO

from dotenv import load_dotenv
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import IntPrompt, Prompt
from rich.style import Style
from rich.table import Table
from rich.text import Text

from .clustering import SIMILARITY_THRESHOLD, cluster_items
from .dashboard import DashboardController, DashboardState, Outcome, decode_key, initial_state, selected_cluster
from .models import Cluster, ContentItem, ItemKind
from .sources import (
    MAX_LIMIT,
    apply_keyword_filter,
    fetch_items,
    now_utc,
    parse_feed_urls,
    parse_sources,
)

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
DEFAULT_LOG_LEVEL = "WARNING"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

ACCENT = "#ff9999"
SUCCESS = "#ff6666"
TITLE_WIDTH = 80
# (suffix, seconds per unit, first age that rolls over to the next unit)
AGE_UNITS = (("s", 1, 60), ("m", 60, 3600), ("h", 3600, 48 * 3600))
REPO_HOSTS = ("github.com", "gitlab.com")
SELECTED_ROW_STYLE = "bold bright_white on rgb(28,28,28)"
NOTICE_STYLES = {"info": f"bold {ACCENT}", "success": f"bold {SUCCESS}", "error": "bold red"}

MENU_CHOICES = {"1": "start", "2": "settings", "3": "exit"}
HELP_LINES = (
    ("↑/↓ k/j", "Navigate through topics"),
    ("o/Enter", "Open selected article"),
    ("r", "Refresh content"),
    ("m", "Return to main menu"),
    ("?", "Toggle this help"),
    ("q", "Quit TechScope"),
)


@dataclass
class AppConfig:
    limit: int
    sources: tuple[str, ...]
    feed_urls: tuple[str, ...]
    keyword: str
    threshold: float
    mixed: bool
    direct: bool
    once: bool
    log_level: str
    log_file: str


def truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    if width <= 3:
        return value[:width]
    return f"{value[: width - 3]}..."


def human_age(published_at: datetime) -> str:
    """Compact age label for the members table, e.g. ``45s``, ``12m``, ``30h``, ``3d``."""
    seconds = max(int((now_utc() - published_at).total_seconds()), 0)
    for unit, size, upper in AGE_UNITS:
        if seconds < upper:
            return f"{seconds // size}{unit}"
    return f"{seconds // 86400}d"


def open_link(url: str) -> str:
    clean_url = url.strip()
    if not clean_url:
        return "No URL available for selected story."
    try:
        if sys.platform == "darwin":
            subprocess.Popen(["open", clean_url], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        else:
            webbrowser.open(clean_url, new=2)
        return ""
    except Exception as exc:
        return f"Failed to open link: {exc}"


def configure_logging(level: str, log_file: str, console: Console) -> None:
    if log_file:
        logging.basicConfig(filename=log_file, level=level, format=LOG_FORMAT)
        return
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def build_regroup(config: AppConfig) -> Callable[[list[ContentItem]], list[Cluster]]:
    return lambda items: cluster_items(items, threshold=config.threshold, mixed=config.mixed)


def fetch_filtered(config: AppConfig) -> tuple[list[ContentItem], list[str]]:
    items, errors = fetch_items(config.limit, config.sources, config.feed_urls)
    return apply_keyword_filter(items, config.keyword), errors


class KeyboardReader:
    """
    Reads single keys from stdin on a daemon thread and hands each token to ``on_key``.

    Arrow keys arrive as ``UP``/``DOWN``, Enter as ``ENTER`` and Ctrl-C as ``QUIT``;
    anything else is passed through as typed. When stdin is not a terminal every
    input line is one token.
    """

    def __init__(self, on_key: Callable[[str], None], stream: TextIO | None = None) -> None:
        self._on_key = on_key
        self._stream = stream or sys.stdin
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._fd: int | None = None
        self._old_settings: list | None = None
        self._thread: threading.Thread | None = None

    def acquire(self) -> None:
        self._stop_event.clear()
        self._fd = self._stream.fileno()
        target = self._read_lines
        if self._stream.isatty():
            try:
                self._old_settings = termios.tcgetattr(self._fd)
                tty.setcbreak(self._fd)
                target = self._read_keys
            except termios.error as exc:
                logger.debug("Falling back to line input: %s", exc)
                self._old_settings = None
        self._thread = threading.Thread(target=target, daemon=True)
        self._thread.start()

    def release(self) -> None:
        self._stop_event.set()
        with self._lock:
            if self._old_settings is not None and self._fd is not None:
                try:
                    termios.tcsetattr(self._fd, termios.TCSADRAIN, self._old_settings)
                except termios.error as exc:
                    logger.debug("Could not restore terminal settings: %s", exc)
                self._old_settings = None
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=0.5)

    def _wait_readable(self) -> bool:
        ready, _, _ = select.select([self._fd], [], [], 0.2)
        return bool(ready)

    def _emit_line(self, line: str) -> None:
        token = line.strip()
        if token.upper() in {"UP", "DOWN", "ENTER", "QUIT"}:
            token = token.upper()
        if token:
            self._on_key(token)

    def _read_lines(self) -> None:
        # select() cannot see data already pulled into a TextIO buffer, so read the fd raw.
        pending = ""
        while not self._stop_event.is_set():
            if not self._wait_readable():
                continue
            data = os.read(self._fd, 1024)
            if not data:
                if pending:
                    self._emit_line(pending)
                    pending = ""
                if self._stop_event.wait(0.2):
                    break
                continue
            pending += data.decode("utf-8", errors="ignore")
            *lines, pending = pending.split("\n")
            for line in lines:
                self._emit_line(line)

    def _read_keys(self) -> None:
        while not self._stop_event.is_set():
            if not self._wait_readable():
                continue
            data = os.read(self._fd, 1)
            if not data:
                continue
            key = data.decode("utf-8", errors="ignore")
            if not key:
                continue
            if key in {"\r", "\n"}:
                self._on_key("ENTER")
                continue
            if key == "\x03":
                self._on_key("QUIT")
                continue
            if key == "\x1b":
                sequence = ""
                while select.select([self._fd], [], [], 0.001)[0]:
                    sequence += os.read(self._fd, 1).decode("utf-8", errors="ignore")
                    if not sequence:
                        continue
                    if sequence[-1].isalpha() or sequence.endswith("~") or len(sequence) >= 6:
                        break
                if sequence in {"[A", "OA"}:
                    self._on_key("UP")
                elif sequence in {"[B", "OB"}:
                    self._on_key("DOWN")
                else:
                    self._on_key("ESC")
                continue
            self._on_key(key)


def item_prefix(item: ContentItem) -> str:
    if any(host in item.url for host in REPO_HOSTS):
        return "[repo]"
    return "[link]" if item.kind is ItemKind.NEWS else "[tool]"


def build_banner() -> Text:
    banner = Text("TECHSCOPE", style=f"bold {ACCENT}", justify="center")
    banner.append("\nTerminal tech content discovery", style="dim")
    return banner


def render_topics_table(state: DashboardState) -> Table:
    table = Table(title="Topics", expand=True, title_justify="left")
    table.add_column("Sel", width=3)
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("Topic")
    table.add_column("Items", justify="right", width=6)

    for cluster in state.clusters:
        is_selected = cluster.index == state.selected_index
        table.add_row(
            Text("▶", style=ACCENT) if is_selected else "",
            str(cluster.index + 1),
            Text(cluster.headline),
            str(len(cluster.members)),
            style=SELECTED_ROW_STYLE if is_selected else "bright_black",
        )

    if not state.clusters:
        table.add_row("", "-", "No topics available", "0")
    return table


def render_members_table(cluster: Cluster) -> Table:
    title = Text("Items in ")
    title.append(f'"{cluster.headline}"', style=ACCENT)
    table = Table(title=title, expand=True, title_justify="left")
    table.add_column("Type", style="dim", width=6)
    table.add_column("Age", justify="right", width=5)
    table.add_column("Source", width=16, no_wrap=True, overflow="ellipsis")
    table.add_column("Title")

    for item in cluster.members:
        table.add_row(
            Text(item_prefix(item)),
            human_age(item.created_at),
            Text(item.source_name),
            Text(truncate(item.title, TITLE_WIDTH), style=Style(link=item.url) if item.url else ""),
        )
    return table


def render_help_panel() -> Panel:
    table = Table.grid(padding=(0, 3))
    table.add_column(style=f"bold {ACCENT}")
    table.add_column()
    for keys, description in HELP_LINES:
        table.add_row(keys, description)
    return Panel(table, title="Help", border_style="blue")


def render_controls() -> Text:
    controls = Text()
    for keys, label in (("↑↓", "Navigate"), ("o", "Open"), ("r", "Refresh"), ("?", "Help"), ("m", "Menu"), ("q", "Quit")):
        controls.append(keys, style="dim")
        controls.append(f" {label}  ")
    return controls


def build_dashboard(state: DashboardState, config: AppConfig) -> Panel:
    status = Text(
        f"Found {len(state.clusters)} topics with {state.item_count} items",
        style=f"bold {ACCENT}",
    )
    status.append(
        f"  |  {', '.join(config.sources)}  |  {datetime.now():%Y-%m-%d %H:%M}",
        style="dim",
    )
    if config.keyword:
        status.append(f'  |  filter "{config.keyword}"', style="dim")

    parts: list = [build_banner(), status]
    if state.help_visible:
        parts.append(render_help_panel())
    else:
        parts.append(render_topics_table(state))
        cluster = selected_cluster(state)
        if cluster is not None:
            parts.append(render_members_table(cluster))
    if state.notice:
        parts.append(Text(state.notice, style=NOTICE_STYLES.get(state.notice_level, "bold")))

    return Panel(
        Group(*parts),
        title="TechScope",
        border_style="bright_blue",
        subtitle=render_controls(),
        subtitle_align="left",
    )


def show_goodbye(console: Console) -> None:
    console.clear()
    console.print(Text("\nBYE!\n", style=f"bold {ACCENT}", justify="center"))
    console.print("   Thanks for using TechScope", style="dim")
    console.print("   Stay curious, keep coding! ✨\n", style="dim")


def select_menu_option(console: Console) -> str:
    console.clear()
    console.print(build_banner())
    console.print("\n  [1] Start\n  [2] Settings\n  [3] Exit\n")
    choice = Prompt.ask("Choose an option", choices=list(MENU_CHOICES), default="1", console=console)
    return MENU_CHOICES[choice]


def configure_settings(console: Console, config: AppConfig) -> AppConfig:
    console.clear()
    console.print(build_banner())
    while True:
        limit = IntPrompt.ask(
            "How many items to fetch per section?",
            default=config.limit,
            console=console,
        )
        if 1 <= limit <= MAX_LIMIT:
            break
        console.print(f"[red]Please enter a number between 1 and {MAX_LIMIT}[/red]")
    console.print(f"[bold {SUCCESS}]Settings saved! Limit: {limit} items per section[/bold {SUCCESS}]")
    return replace(config, limit=limit)


def load_clusters(config: AppConfig, console: Console) -> list[Cluster] | None:
    with console.status(f"[{ACCENT}]Loading content...[/]", spinner="dots12"):
        items, errors = fetch_items(config.limit, config.sources, config.feed_urls)

    if not items:
        for error in errors:
            logger.info(error)
        console.print("[bold red]No content found. Please check your connection and try again.[/bold red]")
        return None

    if config.keyword:
        items = apply_keyword_filter(items, config.keyword)
        if not items:
            console.print(f'[bold red]No content found matching "{escape(config.keyword)}".[/bold red]')
            return None
        console.print(f'[bold {ACCENT}]Filtered by "{escape(config.keyword)}" - {len(items)} matches[/]')
    else:
        console.print(f"[bold {ACCENT}]Found {len(items)} items[/]")

    clusters = build_regroup(config)(items)
    console.print(f"[bold {ACCENT}]Organized into {len(clusters)} topics[/]")
    return clusters


def start_dashboard(config: AppConfig, console: Console) -> Outcome | None:
    clusters = load_clusters(config, console)
    if clusters is None:
        return None

    with Live(
        build_dashboard(initial_state(clusters), config),
        console=console,
        auto_refresh=False,
        screen=True,
        vertical_overflow="crop",
    ) as live:
        controller: DashboardController
        reader = KeyboardReader(lambda key: controller.post_command(decode_key(key)))
        controller = DashboardController(
            clusters,
            fetch=lambda: fetch_filtered(config),
            render=lambda state: live.update(build_dashboard(state, config), refresh=True),
            open_url=open_link,
            release_input=reader.release,
            regroup=build_regroup(config),
        )
        reader.acquire()
        try:
            return controller.run()
        finally:
            reader.release()


def parse_args(argv: list[str]) -> AppConfig:
    parser = argparse.ArgumentParser(
        prog="techscope",
        description="Terminal tech content reader that groups related stories into topics.",
    )
    parser.add_argument(
        "-l",
        "--limit",
        type=int,
        default=int(os.getenv("TECHSCOPE_LIMIT", DEFAULT_LIMIT)),
        help=f"Number of items to fetch per source (1-{MAX_LIMIT}).",
    )
    parser.add_argument(
        "--sources",
        default=os.getenv("TECHSCOPE_SOURCES", "news,apps"),
        help="Comma-separated: news,apps,feeds",
    )
    parser.add_argument(
        "--feeds",
        default=os.getenv("TECHSCOPE_FEEDS", ""),
        help="Comma-separated RSS/Atom URLs used by the 'feeds' source.",
    )
    parser.add_argument("-f", "--filter", default="", help='Filter by keyword (e.g. "rust", "ai").')
    parser.add_argument("--threshold", type=float, default=SIMILARITY_THRESHOLD)
    parser.add_argument(
        "--mixed",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Drop common stopwords from topic headlines (default: on with several sources).",
    )
    parser.add_argument("-d", "--direct", action="store_true", help="Skip the menu and open the dashboard.")
    parser.add_argument("--once", action="store_true", help="Print one dashboard frame and exit.")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=os.getenv("TECHSCOPE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
    )
    parser.add_argument("--log-file", default="")

    args = parser.parse_args(argv)

    if not 1 <= args.limit <= MAX_LIMIT:
        raise ValueError(f"--limit must be between 1 and {MAX_LIMIT}")
    if not 0 < args.threshold < 1:
        raise ValueError("--threshold must be between 0 and 1")
    if args.log_level not in LOG_LEVELS:
        raise ValueError(f"--log-level must be one of {', '.join(LOG_LEVELS)}")

    sources = parse_sources(args.sources)
    feed_urls = parse_feed_urls(args.feeds)
    if "feeds" in sources and not feed_urls:
        raise ValueError("the 'feeds' source needs at least one URL in --feeds")

    return AppConfig(
        limit=args.limit,
        sources=sources,
        feed_urls=feed_urls,
        keyword=args.filter.strip(),
        threshold=args.threshold,
        mixed=args.mixed if args.mixed is not None else len(sources) > 1,
        direct=args.direct,
        once=args.once,
        log_level=args.log_level,
        log_file=args.log_file,
    )


def run(config: AppConfig, console: Console) -> int:
    if config.once:
        clusters = load_clusters(config, console)
        if clusters is None:
            return 1
        console.print(build_dashboard(initial_state(clusters), config))
        return 0

    if config.direct:
        outcome = start_dashboard(config, console)
        if outcome is None:
            return 1
        if outcome is Outcome.QUIT:
            show_goodbye(console)
            return 0

    while True:
        selection = select_menu_option(console)
        if selection == "start":
            outcome = start_dashboard(config, console)
            if outcome is Outcome.QUIT:
                show_goodbye(console)
                return 0
            if outcome is None:
                console.input("[dim]Press Enter to return to the menu...[/dim]")
        elif selection == "settings":
            config = configure_settings(console, config)
            console.input("[dim]Press Enter to continue...[/dim]")
        else:
            show_goodbye(console)
            return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    console = Console()
    try:
        config = parse_args(argv if argv is not None else sys.argv[1:])
    except Exception as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return 2

    configure_logging(config.log_level, config.log_file, console)
    try:
        return run(config, console)
    except KeyboardInterrupt:
        show_goodbye(console)
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
