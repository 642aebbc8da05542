# main.py
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

try:
    import pyperclip
except ImportError:
    pyperclip = None

from rich.markup import escape
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.widgets import Footer, Header

from config import (CONFIG_PATH, Config, apply_cli_overrides, load_config,
                    save_config)
from lifecycle import InterruptHandler, ManagedTempDir
from logging_config import DEFAULT_LOG_FILE, OperationCancelled, get_logger, setup_logging
from models import (FetchNextPage, FocusedPanel, InputMode, NewSearch, Play,
                    PendingAction, SearchResult)
from player import PlayerCapability, detect_player
from services import Downloader, PaginatedSearchCache, SearchCommand
from session import TICK_SECONDS, SessionStateMachine
from ui import (DetailsPane, HelpPane, LogPane, NowPlaying, PageStatus,
                QueueDisplay, ResultsDisplay, SearchBar, SettingsPane)

logger = get_logger("main")

T = TypeVar("T")


class YTQueueApp(App):
    TITLE = "ytqueue"
    BINDINGS = [
        Binding("ctrl+c", "interrupt", "Quit", priority=True),
        Binding("tab", "cycle_focus(1)", "Next panel", priority=True),
        Binding("shift+tab", "cycle_focus(-1)", "Previous panel", show=False, priority=True),
    ]
    CSS = """
    #app-grid { height: 1fr; }
    #left-pane { width: 2fr; }
    #right-pane { width: 1fr; }
    SearchBar { height: 3; border: round $primary-darken-2; padding: 0 1; }
    SearchBar.focused, ResultsDisplay.focused, QueueDisplay.focused { border: round $accent; }
    ResultsDisplay { height: 1fr; border: round $primary-darken-2; }
    QueueDisplay { height: 1fr; border: round $primary-darken-2; }
    PageStatus { height: 1; padding: 0 1; }
    NowPlaying { height: 4; border: round $primary-darken-2; padding: 0 1; }
    DetailsPane { height: 1fr; }
    LogPane { height: 8; border: round $primary-darken-2; }
    HelpPane, SettingsPane { dock: top; height: auto; margin: 1 8; padding: 1 2;
                             border: thick $accent; background: $panel; display: none; }
    """

    def __init__(self, session: SessionStateMachine, downloader: Downloader,
                 interrupts: InterruptHandler, config: Config):
        super().__init__()
        self.session = session
        self.downloader = downloader
        self.interrupts = interrupts
        self.config = config
        self.session.foreground_runner = self.run_suspended
        self.interrupts.on_graceful = self.on_graceful_interrupt
        self.interrupts.on_force = self.on_forced_interrupt

    def compose(self) -> ComposeResult:
        yield Header()
        with Container(id="main-container"):
            with Horizontal(id="app-grid"):
                with Vertical(id="left-pane"):
                    yield SearchBar()
                    yield ResultsDisplay(id="results-table")
                    yield PageStatus()
                with Vertical(id="right-pane"):
                    yield NowPlaying()
                    yield QueueDisplay(id="queue-table")
                    yield DetailsPane(id="details-pane")
            yield LogPane(id="log", wrap=True, highlight=True, markup=True)
        yield HelpPane()
        yield SettingsPane()
        yield Footer()

    def on_mount(self) -> None:
        log = self.query_one(LogPane)
        if self.downloader.is_available:
            log.add_message(f"[green]✅ {self.config.DOWNLOAD_COMMAND} found.[/green]")
        else:
            log.add_message(f"[yellow]⚠️ '{self.config.DOWNLOAD_COMMAND}' not found.[/yellow]")
        if self.session.player_kind is None:
            log.add_message("[yellow]⚠️ No media player found (mpv, vlc, mplayer).[/yellow]")
        elif self.session.capability is PlayerCapability.BACKGROUND_CAPABLE:
            log.add_message(f"[green]✅ {self.session.player_kind.value} found, background playback enabled.[/green]")
        else:
            log.add_message(f"[green]✅ {self.session.player_kind.value} found.[/green]")
        if pyperclip:
            log.add_message("[green]✅ Clipboard found.[/green]")
        else:
            log.add_message("[yellow]⚠️ 'pyperclip' not installed.[/yellow]")
        self.set_interval(TICK_SECONDS, self.tick)
        self.refresh_view()

    # --- Tick ---
    def tick(self) -> None:
        if self.session.should_quit:
            self.exit()
            return
        action = self.session.take_pending_action()
        if isinstance(action, (NewSearch, FetchNextPage)):
            self.start_search(action)
        elif isinstance(action, Play) and self.session.config.DOWNLOAD_MODE:
            result = self.session.result_at(action.index)
            if result:
                self.run_worker(self.perform_download(result), group="download_worker")
        elif action is not None:
            self.session.apply_action(action)
        self.session.refresh_playback()
        self.refresh_view()

    def refresh_view(self) -> None:
        snapshot = self.session.snapshot()
        self.query_one(SearchBar).update_bar(snapshot)
        self.query_one(ResultsDisplay).update_results(
            snapshot.page_rows, snapshot.selected_index,
            snapshot.focused_panel is FocusedPanel.RESULTS)
        self.query_one(PageStatus).update_page(snapshot)
        self.query_one(QueueDisplay).update_queue(
            snapshot.queue_rows, snapshot.queue_selected_index,
            snapshot.playback is not None and snapshot.playback.playing,
            snapshot.focused_panel is FocusedPanel.QUEUE)
        self.query_one(NowPlaying).update_status(snapshot.playback)
        self.query_one(DetailsPane).update_details(snapshot.selected_result)
        self.query_one(HelpPane).display = snapshot.input_mode is InputMode.HELP
        settings = self.query_one(SettingsPane)
        settings.display = snapshot.settings is not None
        settings.update_settings(snapshot.settings)
        log = self.query_one(LogPane)
        for notice in self.session.drain_notices():
            log.add_notice(notice)

    # --- Input ---
    def on_key(self, event: events.Key) -> None:
        event.stop()
        browsing = self.session.settings is None and self.session.input_mode is InputMode.BROWSE
        if (event.key == "y" and browsing
                and self.session.focused_panel is not FocusedPanel.SEARCH_BAR):
            self.action_copy_link()
            return
        self.session.handle_key(event.key, event.character)
        self.refresh_view()

    def action_cycle_focus(self, step: int) -> None:
        self.session.handle_key("tab" if step > 0 else "shift+tab")
        self.refresh_view()

    def action_copy_link(self) -> None:
        log = self.query_one(LogPane)
        if not pyperclip:
            log.add_message("[red]❌ 'pyperclip' not installed.[/red]")
            return
        selected = self.session.snapshot().selected_result
        if selected:
            pyperclip.copy(selected.link)
            log.add_message(f"📋 Copied link for '[b]{escape(selected.title)}[/b]'.")
        else:
            log.add_message("[yellow]⚠️ No video selected.[/yellow]")

    def action_interrupt(self) -> None:
        self.interrupts.interrupt()

    def on_graceful_interrupt(self) -> None:
        self.session.request_quit()
        self.query_one(LogPane).add_message(
            "[yellow]Interrupted. Press Ctrl-C again to force exit.[/yellow]")

    def on_forced_interrupt(self) -> None:
        self.session.shutdown()
        self.exit(return_code=130)

    def run_suspended(self, fn: Callable[[], T]) -> T:
        """Gives the terminal to a blocking player and takes it back afterwards."""
        with self.suspend():
            return fn()

    # --- Worker Methods ---
    def start_search(self, action: PendingAction) -> None:
        log = self.query_one(LogPane)
        if isinstance(action, NewSearch):
            log.add_message(f"🔎 Searching for '{escape(action.query)}'...")
        else:
            log.add_message("🔎 Fetching more results...")
        self.workers.cancel_group(self, "search_worker")
        self.run_worker(self.perform_search(action), group="search_worker", exclusive=True)

    async def perform_search(self, action: PendingAction) -> None:
        token = self.session.token.child()
        try:
            await asyncio.to_thread(self.session.fetch_results, action, token)
        except asyncio.CancelledError:
            token.abort()
            raise
        except OperationCancelled:
            self.session.loading = False
            return
        self.session.show_results(action)
        self.refresh_view()

    async def perform_download(self, result: SearchResult) -> None:
        log = self.query_one(LogPane)
        if not self.downloader.is_available:
            log.add_message(f"[red]❌ Download failed: Command not found.[/red]")
            return
        log.add_message(f"📥 Downloading '[b]{escape(result.title)}[/b]'...")
        success, message = await asyncio.to_thread(self.session.download_track, result)
        self.session.finish_download(success, message)
        self.refresh_view()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search YouTube, queue videos and play them from the terminal.")
    parser.add_argument("query", nargs="*", help="Optional search to run at start-up.")
    parser.add_argument("-n", "--num", type=int, default=None, help="Results per page.")
    parser.add_argument("-a", "--audio-only", action="store_true", help="Play audio only (no video).")
    parser.add_argument("-l", "--limit", action="store_true", help="Limit bandwidth (audio 128k, video 360p).")
    parser.add_argument("-d", "--download", action="store_true", help="Download instead of playing.")
    parser.add_argument("-k", "--keep", action="store_true", help="Keep temporary files after playback.")
    parser.add_argument("-f", "--format", default=None, help="Custom yt-dlp format string.")
    parser.add_argument("-i", "--include-shorts", action="store_true", help="Include videos under 3 minutes.")
    parser.add_argument("--player", choices=["mpv", "vlc", "mplayer"], default=None, help="Media player to use.")
    parser.add_argument("--config", type=Path, default=CONFIG_PATH, help="Settings file.")
    parser.add_argument("--log-file", type=Path, default=DEFAULT_LOG_FILE, help="Diagnostics log file.")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    config = apply_cli_overrides(load_config(args.config), args)

    search_command = SearchCommand(config.SEARCH_COMMAND)
    if not search_command.is_available:
        logger.error(f"{config.SEARCH_COMMAND} not found on PATH")
        print(f"{config.SEARCH_COMMAND} is not installed\nPlease install it with: pip install yt-dlp",
              file=sys.stderr)
        return 1
    player_kind = detect_player(config.PLAYER)
    logger.info(f"Player: {player_kind.value if player_kind else 'none'}, format: {config.format}")
    downloader = Downloader(config.DOWNLOAD_COMMAND)
    interrupts = InterruptHandler()

    with ManagedTempDir(keep=config.KEEP_TEMP) as temp_dir:
        cache = PaginatedSearchCache(search_command, config.RESULTS_PER_PAGE,
                                     filter_shorts=not config.INCLUDE_SHORTS)
        session = SessionStateMachine(
            config, cache, player_kind, downloader, temp_dir,
            token=interrupts.token,
            on_config_committed=lambda new_config: save_config(new_config, args.config),
        )
        if args.query:
            session.submit_search(" ".join(args.query))

        app = YTQueueApp(session, downloader, interrupts, config)
        interrupts.install()
        try:
            app.run()
        finally:
            interrupts.uninstall()
            session.shutdown()
    return app.return_code or 0


if __name__ == "__main__":
    sys.exit(main())
