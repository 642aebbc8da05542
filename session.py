# session.py
import math
import os
from collections import deque
from dataclasses import replace
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple, TypeVar

from config import Config, ConfigCallback, SettingsDraft
from lifecycle import CancellationToken
from logging_config import (ConnectionTimeout, OperationCancelled, PlayerError,
                            get_logger)
from models import (FetchNextPage, FocusedPanel, InputMode, NewSearch, Notice,
                    NoticeLevel, PendingAction, Play, SearchResult,
                    SessionSnapshot, SettingsView)
from play_queue import PlayQueue
from player import (ForegroundPlayer, PlaybackEngine, PlaybackOutcome,
                    PlayerCapability, PlayerKind, PlayerProcess,
                    resolve_capability)
from services import Downloader, PaginatedSearchCache

logger = get_logger("session")

TICK_SECONDS = 0.25
SEEK_STEP_SECONDS = 10
VOLUME_STEP = 5

T = TypeVar("T")


def run_inline(fn: Callable[[], T]) -> T:
    return fn()


class SessionStateMachine:
    """Top-level controller for one interactive session.

    Input handlers only move cursors and fill the single pending-action slot.
    ``tick()`` consumes that slot, then polls the player and reconciles
    end-of-stream against the queue, so a play issued in a tick is visible
    before that tick's status poll.
    """

    def __init__(self, config: Config, cache: PaginatedSearchCache,
                 player_kind: Optional[PlayerKind], downloader: Downloader,
                 temp_dir: Path,
                 engine_factory: Optional[Callable[[], PlaybackEngine]] = None,
                 foreground_player: Optional[ForegroundPlayer] = None,
                 token: Optional[CancellationToken] = None,
                 on_config_committed: Optional[ConfigCallback] = None):
        self.config = config
        self.cache = cache
        self.player_kind = player_kind
        self.capability: Optional[PlayerCapability] = (
            resolve_capability(player_kind, config.BACKGROUND_PLAYBACK) if player_kind else None)
        self.downloader = downloader
        self.temp_dir = temp_dir
        self.engine_factory = engine_factory or self._create_engine
        if foreground_player is None and player_kind is not None:
            foreground_player = ForegroundPlayer(player_kind, config.format, config.AUDIO_ONLY,
                                                 downloader, keep_temp=config.KEEP_TEMP)
        self.foreground_player = foreground_player
        self.foreground_runner: Callable[[Callable[[], T]], T] = run_inline
        self.token = token or CancellationToken()
        self.on_config_committed = on_config_committed

        self.query = cache.query
        self.results: List[SearchResult] = []
        self.page = 0
        self.selected_index = 0
        self.exhausted = False
        self.loading = False
        self.queue = PlayQueue()
        self.engine: Optional[PlaybackEngine] = None
        self.pending_action: Optional[PendingAction] = None
        self.should_quit = False
        self.focused_panel = FocusedPanel.SEARCH_BAR
        self.input_mode = InputMode.BROWSE
        self.search_input = ""
        self.number_input = ""
        self.settings: Optional[SettingsDraft] = None
        self._notices: Deque[Notice] = deque()

    # --- Notices ---
    def notify(self, text: str, level: NoticeLevel = NoticeLevel.INFO) -> None:
        self._notices.append(Notice(text, level))

    def drain_notices(self) -> List[Notice]:
        notices = list(self._notices)
        self._notices.clear()
        return notices

    # --- Pending action slot ---
    def request(self, action: PendingAction) -> None:
        self.pending_action = action

    def take_pending_action(self) -> Optional[PendingAction]:
        action, self.pending_action = self.pending_action, None
        return action

    # --- Paging ---
    @property
    def page_size(self) -> int:
        return self.cache.page_size

    def current_page_results(self) -> List[SearchResult]:
        start = self.page * self.page_size
        return self.results[start:start + self.page_size]

    def has_next_page(self) -> bool:
        if not self.query:
            return False
        end = (self.page + 1) * self.page_size
        return end < len(self.results) or not self.exhausted

    def has_prev_page(self) -> bool:
        return self.page > 0

    def result_at(self, index: int) -> Optional[SearchResult]:
        if 0 <= index < len(self.results):
            return self.results[index]
        return None

    # --- Tick ---
    def tick(self) -> SessionSnapshot:
        action = self.take_pending_action()
        if action is not None:
            self.apply_action(action)
        self.refresh_playback()
        return self.snapshot()

    def apply_action(self, action: PendingAction) -> None:
        if isinstance(action, (NewSearch, FetchNextPage)):
            try:
                self.fetch_results(action, self.token.child())
            except OperationCancelled:
                self.loading = False
                self.notify("Search cancelled.", NoticeLevel.WARNING)
                return
            self.show_results(action)
        elif isinstance(action, Play):
            self.play_result(action.index)

    def fetch_results(self, action: PendingAction,
                      token: Optional[CancellationToken] = None) -> None:
        """The blocking half of a search action. Only touches the cache, so it
        may run on a worker thread."""
        if isinstance(action, NewSearch):
            self.cache.reset(action.query)
            self.cache.ensure_page(0, token)
        else:
            self.cache.ensure_page(self.page, token)

    def show_results(self, action: PendingAction) -> None:
        """Publishes what ``fetch_results`` loaded into the visible state."""
        if isinstance(action, NewSearch) and self.cache.query != action.query:
            return
        self.results = list(self.cache.results)
        self.exhausted = self.cache.exhausted
        self.loading = False

        if isinstance(action, NewSearch):
            self.query = action.query
            self.page = 0
            self.selected_index = 0
            if not self.results:
                if self.cache.last_error:
                    self.notify(f"Search failed: {self.cache.last_error}", NoticeLevel.ERROR)
                self.notify(f"No videos found for '{action.query}'.", NoticeLevel.WARNING)
            else:
                self.notify(f"Found {len(self.results)} videos for '{action.query}'.",
                            NoticeLevel.SUCCESS)
            return

        if self.page > 0 and self.page * self.page_size >= len(self.results):
            self.page = max(0, math.ceil(len(self.results) / self.page_size) - 1)
            self.notify("No more results.", NoticeLevel.WARNING)
        self.selected_index = min(self.selected_index,
                                  max(0, len(self.current_page_results()) - 1))

    # --- Playback ---
    def _create_engine(self) -> PlaybackEngine:
        process = PlayerProcess(executable=self.player_kind.value,
                                ytdl_format=self.config.format,
                                audio_only=self.config.AUDIO_ONLY)
        return PlaybackEngine(process)

    def play_result(self, index: int) -> None:
        track = self.result_at(index)
        if track is None:
            return
        if self.config.DOWNLOAD_MODE:
            success, message = self.download_track(track)
            self.finish_download(success, message)
            return
        if self.capability is None:
            self.notify("No supported media player found (mpv, vlc, mplayer).", NoticeLevel.ERROR)
            return

        self.queue.enqueue(track)
        if self.capability is PlayerCapability.FOREGROUND_ONLY:
            self.play_in_foreground(len(self.queue) - 1)
            return

        if self.engine is not None and self.engine.status.playing:
            self.notify(f"Added to queue: {track.title}")
            return
        self.queue.move_to_front(len(self.queue) - 1)
        self.start_head(autoplay=True)

    def start_head(self, autoplay: bool = True) -> bool:
        """Loads the queue head into the background player, spawning it if needed."""
        track = self.queue.head
        if track is None:
            return False
        try:
            if self.engine is None:
                self.engine = self.engine_factory()
                self.engine.spawn()
            if autoplay:
                self.engine.play(track.link, track.title, track.video_id)
            else:
                self.engine.load_paused(track.link, track.title, track.video_id)
        except ConnectionTimeout as e:
            logger.error(f"Player connection failed: {e}")
            self.notify(f"Player did not start: {e}", NoticeLevel.ERROR)
            self.drop_engine()
            return False
        except PlayerError as e:
            logger.error(f"Playback failed: {e}")
            self.notify(f"Playback failed: {e}", NoticeLevel.ERROR)
            self.drop_engine()
            return False
        verb = "Now playing" if autoplay else "Ready (paused)"
        self.notify(f"{verb}: {track.title}", NoticeLevel.SUCCESS)
        return True

    def play_in_foreground(self, queue_index: int) -> None:
        """Hands the terminal to a blocking player, then drops the played entry."""
        track = self.queue[queue_index]
        try:
            outcome = self.foreground_runner(
                lambda: self.foreground_player.play(track, self.temp_dir, self.token))
        except (PlayerError, OperationCancelled) as e:
            logger.error(f"Foreground playback of '{track.title}' failed: {e}")
            self.notify(f"Playback failed: {e}", NoticeLevel.ERROR)
            outcome = PlaybackOutcome.FAILED
        self.queue.remove_at(queue_index)
        if outcome is PlaybackOutcome.FAILED:
            self.notify(f"Could not play '{track.title}'.", NoticeLevel.ERROR)
        elif outcome is PlaybackOutcome.FINISHED:
            self.notify(f"Finished: {track.title}")
        else:
            self.notify("Returned to search results.")

    def drop_engine(self) -> None:
        if self.engine is not None:
            self.engine.terminate()
            self.engine = None

    def refresh_playback(self) -> None:
        if self.engine is None:
            return
        if not self.engine.is_alive():
            self.notify("Player exited.", NoticeLevel.WARNING)
            self.drop_engine()
            return
        self.engine.poll_status()
        if not self.engine.is_end_of_stream():
            return
        finished = self.queue.dequeue()
        if finished is not None:
            logger.info(f"Finished '{finished.title}'")
        if len(self.queue):
            self.start_head(autoplay=self.config.AUTOPLAY)
        else:
            self.drop_engine()
            self.notify("Queue finished.")

    def download_track(self, track: SearchResult) -> Tuple[bool, str]:
        """Blocking download of ``track`` into the download directory."""
        template = os.path.join(os.path.expanduser(self.config.DOWNLOAD_DIR), "%(title)s.%(ext)s")
        return self.downloader.run(track.link, track.title, self.config.format, template,
                                   self.config.AUDIO_ONLY)

    def finish_download(self, success: bool, message: str) -> None:
        if success:
            self.notify(f"{message} Saved to {self.config.DOWNLOAD_DIR}", NoticeLevel.SUCCESS)
        else:
            self.notify(message, NoticeLevel.ERROR)

    def _control(self, operation: Callable[[PlaybackEngine], None]) -> None:
        if self.engine is None:
            return
        try:
            operation(self.engine)
        except PlayerError as e:
            logger.warning(f"Player command failed: {e}")
            self.notify(f"Player command failed: {e}", NoticeLevel.WARNING)

    def toggle_pause(self) -> None:
        self._control(lambda engine: engine.toggle_pause())

    def seek(self, delta_seconds: float) -> None:
        self._control(lambda engine: engine.seek(delta_seconds))

    def change_volume(self, delta: int) -> None:
        self._control(lambda engine: engine.set_volume(engine.status.volume + delta))

    def toggle_mute(self) -> None:
        self._control(lambda engine: engine.set_volume(0 if engine.status.volume > 0 else 100))

    def stop_playback(self) -> None:
        self._control(lambda engine: engine.stop())

    def skip_track(self) -> None:
        """Drops the playing head and starts whatever is next."""
        if self.engine is None:
            return
        self.queue.dequeue()
        if len(self.queue):
            self.start_head(autoplay=True)
        else:
            self.drop_engine()

    def play_queue_selection(self) -> None:
        if not len(self.queue):
            return
        self.queue.move_to_front(self.queue.selected_index)
        if self.capability is PlayerCapability.BACKGROUND_CAPABLE:
            self.start_head(autoplay=True)
        elif self.capability is PlayerCapability.FOREGROUND_ONLY:
            self.play_in_foreground(0)

    def remove_queue_selection(self) -> None:
        if not len(self.queue):
            return
        index = self.queue.selected_index
        if index == 0 and self.engine is not None and self.engine.status.playing:
            self.skip_track()
            return
        self.queue.remove_at(index)

    def clear_queue(self) -> None:
        self.queue.clear()
        self.drop_engine()

    # --- Quit & teardown ---
    def quit(self) -> None:
        self.should_quit = True

    def request_quit(self) -> None:
        """Graceful interrupt: in-flight work finishes its step, then we exit."""
        self.token.cancel()
        self.should_quit = True

    def shutdown(self) -> None:
        self.token.cancel()
        self.drop_engine()

    # --- Settings ---
    def open_settings(self) -> None:
        self.settings = SettingsDraft(self.config)

    def close_settings(self, commit: bool) -> None:
        draft, self.settings = self.settings, None
        if draft is None:
            return
        if not commit:
            if draft.dirty:
                self.notify("Settings changes discarded.")
            return
        new_config = draft.commit()
        self.apply_config(new_config)
        if self.on_config_committed:
            self.on_config_committed(new_config)
        self.notify("Settings saved.", NoticeLevel.SUCCESS)

    def apply_config(self, config: Config) -> None:
        old, self.config = self.config, config
        if self.foreground_player is not None:
            self.foreground_player.ytdl_format = config.format
            self.foreground_player.audio_only = config.AUDIO_ONLY
            self.foreground_player.keep_temp = config.KEEP_TEMP
        reload = (config.RESULTS_PER_PAGE != old.RESULTS_PER_PAGE
                  or config.INCLUDE_SHORTS != old.INCLUDE_SHORTS)
        self.cache.page_size = config.RESULTS_PER_PAGE
        self.cache.filter_shorts = not config.INCLUDE_SHORTS
        if reload and self.query:
            self.loading = True
            self.request(NewSearch(self.query))

    # --- Input ---
    def submit_search(self, query: str) -> None:
        query = query.strip()
        if not query:
            return
        self.query = query
        self.loading = True
        self.request(NewSearch(query))
        self.focused_panel = FocusedPanel.RESULTS

    def focus_next(self) -> None:
        order = [FocusedPanel.SEARCH_BAR, FocusedPanel.RESULTS, FocusedPanel.QUEUE]
        self.focused_panel = order[(order.index(self.focused_panel) + 1) % len(order)]

    def focus_previous(self) -> None:
        order = [FocusedPanel.SEARCH_BAR, FocusedPanel.RESULTS, FocusedPanel.QUEUE]
        self.focused_panel = order[(order.index(self.focused_panel) - 1) % len(order)]

    def next_page(self) -> None:
        if self.loading or not self.has_next_page():
            return
        self.page += 1
        self.selected_index = 0
        if (self.page + 1) * self.page_size > len(self.results) and not self.exhausted:
            self.loading = True
            self.request(FetchNextPage())

    def prev_page(self) -> None:
        if self.has_prev_page():
            self.page -= 1
            self.selected_index = 0

    def choose_result(self) -> None:
        """Enter on the results list: quick-pick number if typed, else the cursor row."""
        if self.number_input:
            number = int(self.number_input)
            self.number_input = ""
            if not 1 <= number <= len(self.results):
                self.notify(f"No result #{number}.", NoticeLevel.WARNING)
                return
            index = number - 1
        else:
            index = self.page * self.page_size + self.selected_index
        if index < len(self.results):
            self.request(Play(index))

    def handle_key(self, key: str, character: Optional[str] = None) -> None:
        """Applies one key press. ``key`` uses Textual key names."""
        char = character if character and len(character) == 1 and character.isprintable() else None
        token = char if char and not char.isspace() else key

        if self.input_mode is InputMode.HELP:
            if token in ("escape", "h", "q"):
                self.input_mode = InputMode.BROWSE
            return

        if self.settings is not None:
            self._handle_settings_key(key, token, char)
            return

        if key == "tab":
            self.focus_next()
            return
        if key == "shift+tab":
            self.focus_previous()
            return

        in_search_bar = self.focused_panel is FocusedPanel.SEARCH_BAR
        if token == "f2" or (token == "s" and not in_search_bar):
            self.open_settings()
            return
        if token == "escape":
            if in_search_bar:
                self.search_input = ""
                self.focused_panel = FocusedPanel.RESULTS
            else:
                self.quit()
            return
        if token == "q" and not in_search_bar:
            self.quit()
            return

        if in_search_bar:
            self._handle_search_bar_key(key, token, char)
            return
        if self.engine is not None and self._handle_playback_key(token):
            return
        if self.focused_panel is FocusedPanel.RESULTS:
            self._handle_results_key(token)
        else:
            self._handle_queue_key(token)

    def _handle_playback_key(self, token: str) -> bool:
        if token == "space":
            self.toggle_pause()
        elif token in ("<", "left"):
            self.seek(-SEEK_STEP_SECONDS)
        elif token in (">", "right"):
            self.seek(SEEK_STEP_SECONDS)
        elif token in ("+", "="):
            self.change_volume(VOLUME_STEP)
        elif token == "-":
            self.change_volume(-VOLUME_STEP)
        elif token == "m":
            self.toggle_mute()
        elif token == "x":
            self.stop_playback()
        else:
            return False
        return True

    def _handle_search_bar_key(self, key: str, token: str, char: Optional[str]) -> None:
        if key == "enter":
            if self.search_input:
                query, self.search_input = self.search_input, ""
                self.submit_search(query)
        elif key == "backspace":
            self.search_input = self.search_input[:-1]
        elif char is not None:
            self.search_input += char
        elif key == "space":
            self.search_input += " "

    def _handle_results_key(self, token: str) -> None:
        if token == "up":
            if self.selected_index > 0:
                self.selected_index -= 1
        elif token == "down":
            if self.selected_index < len(self.current_page_results()) - 1:
                self.selected_index += 1
        elif token == "n":
            self.next_page()
        elif token == "p":
            self.prev_page()
        elif token == "h":
            self.input_mode = InputMode.HELP
        elif token == "/":
            self.focused_panel = FocusedPanel.SEARCH_BAR
        elif token.isdigit() and len(token) == 1:
            self.number_input += token
        elif token == "backspace":
            self.number_input = self.number_input[:-1]
        elif token == "enter":
            self.choose_result()

    def _handle_queue_key(self, token: str) -> None:
        if token == "up":
            self.queue.select_previous()
        elif token == "down":
            self.queue.select_next()
        elif token == "enter":
            self.play_queue_selection()
        elif token in ("delete", "backspace"):
            self.remove_queue_selection()
        elif token == "c":
            self.clear_queue()
        elif token == "n":
            self.skip_track()
        elif token == "h":
            self.input_mode = InputMode.HELP

    def _handle_settings_key(self, key: str, token: str, char: Optional[str]) -> None:
        draft = self.settings
        if draft.editing:
            if key == "escape":
                draft.cancel_edit()
            elif key == "enter":
                draft.finish_edit()
            elif key == "backspace":
                draft.backspace()
            elif char is not None:
                draft.type_char(char)
            return

        if token == "escape":
            self.close_settings(commit=False)
        elif token in ("s", "f2"):
            self.close_settings(commit=True)
        elif token == "up":
            draft.select_previous()
        elif token == "down":
            draft.select_next()
        elif token in ("enter", "space"):
            draft.activate()

    # --- Rendering ---
    def snapshot(self) -> SessionSnapshot:
        start = self.page * self.page_size
        page_rows = [(start + offset + 1, result)
                     for offset, result in enumerate(self.current_page_results())]
        settings = None
        if self.settings is not None:
            settings = SettingsView(rows=self.settings.rows(),
                                    selected_index=self.settings.selected_index,
                                    editing=self.settings.editing)
        return SessionSnapshot(
            query=self.query,
            page=self.page,
            page_rows=page_rows,
            selected_index=self.selected_index,
            has_next_page=self.has_next_page(),
            has_prev_page=self.has_prev_page(),
            exhausted=self.exhausted,
            total_results=len(self.results),
            queue_rows=list(self.queue),
            queue_selected_index=self.queue.selected_index,
            focused_panel=self.focused_panel,
            input_mode=self.input_mode,
            search_input=self.search_input,
            number_input=self.number_input,
            playback=replace(self.engine.status) if self.engine is not None else None,
            loading=self.loading,
            settings=settings,
        )
