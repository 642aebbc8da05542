# ui.py
from typing import List, Optional, Tuple

from rich.markup import escape
from rich.text import Text
from textual.app import ComposeResult
from textual.widgets import DataTable, Markdown, RichLog, Static

from models import (FocusedPanel, Notice, NoticeLevel, PlaybackStatus,
                    SearchResult, SessionSnapshot, SettingsView)

HELP_TEXT = """\
[b]Keys[/b]
  Tab / Shift+Tab   cycle search bar, results, queue
  Up / Down         move the cursor
  Enter             play selection (or the typed result number)
  0-9               type a result number, Enter to play it
  n / p             next / previous page
  /                 jump to the search bar
  y                 copy the selected link
  s / F2            settings (s again saves, Esc discards)
  h                 this help
  q / Esc           quit

[b]Playback[/b]
  Space pause   < > seek 10s   + - volume   m mute   x stop

[b]Queue panel[/b]
  Enter play now   Del remove   c clear   n next track
"""

NOTICE_TEMPLATES = {
    NoticeLevel.INFO: "{}",
    NoticeLevel.SUCCESS: "[green]✅ {}[/green]",
    NoticeLevel.WARNING: "[yellow]⚠️ {}[/yellow]",
    NoticeLevel.ERROR: "[red]❌ {}[/red]",
}


def format_clock(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


class SearchBar(Static):
    """Shows the current query, or what is being typed when focused."""
    def update_bar(self, snapshot: SessionSnapshot) -> None:
        focused = snapshot.focused_panel is FocusedPanel.SEARCH_BAR
        if focused:
            content = f"🔎 {escape(snapshot.search_input)}[reverse] [/reverse]"
        elif snapshot.query:
            content = f"🔎 {escape(snapshot.query)}"
        else:
            content = "[dim]🔎 Press Tab or / to search[/dim]"
        if snapshot.loading:
            content += "  [yellow]Searching...[/yellow]"
        self.update(content)
        self.set_class(focused, "focused")


class ResultsDisplay(DataTable):
    """Widget for the main results table."""
    can_focus = False

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._rows: Optional[List[Tuple[int, SearchResult]]] = None

    def on_mount(self) -> None:
        self.add_columns("#", "Title", "Channel", "Duration", "Views")
        self.cursor_type = "row"

    def update_results(self, rows: List[Tuple[int, SearchResult]], selected: int,
                       focused: bool) -> None:
        if rows != self._rows:
            self.clear()
            for number, r in rows:
                self.add_row(str(number), Text(r.title), Text(r.channel), r.duration, r.views,
                             key=str(number))
            self._rows = rows
        if rows:
            self.move_cursor(row=selected)
        self.set_class(focused, "focused")


class QueueDisplay(DataTable):
    """The play queue; the first row is the track in the player."""
    can_focus = False

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._rows: Optional[List[SearchResult]] = None

    def on_mount(self) -> None:
        self.add_columns("", "Title", "Duration")
        self.cursor_type = "row"

    def update_queue(self, rows: List[SearchResult], selected: int, playing: bool,
                     focused: bool) -> None:
        if rows != self._rows:
            self.clear()
            for position, r in enumerate(rows):
                marker = "▶" if position == 0 and playing else str(position + 1)
                self.add_row(marker, Text(r.title), r.duration, key=str(position))
            self._rows = rows
        if rows:
            self.move_cursor(row=selected)
        self.set_class(focused, "focused")


class NowPlaying(Static):
    def update_status(self, status: Optional[PlaybackStatus]) -> None:
        if status is None or not status.playing:
            self.update("[dim]Nothing playing[/dim]")
            return
        state = "⏸" if status.paused else "▶"
        position = format_clock(status.time_position)
        total = format_clock(status.duration) if status.duration else "--:--"
        self.update(f"{state} [b]{escape(status.title)}[/b]\n"
                    f"{position} / {total}   🔊 {status.volume}%")


class DetailsPane(Static):
    """Widget to display details of the selected video."""
    def on_mount(self) -> None:
        self.update_details(None)

    def update_details(self, result: Optional[SearchResult]) -> None:
        if result:
            content = f"## {result.title}\n\n- **Channel**: {result.channel}\n- **Duration**: {result.duration}\n- **Views**: {result.views}\n- **Link**: `{result.link}`"
        else:
            content = "## Details\n\n*Select a video to see its details.*"
        self.query_one(Markdown).update(content)

    def compose(self) -> ComposeResult:
        yield Markdown()


class PageStatus(Static):
    def update_page(self, snapshot: SessionSnapshot) -> None:
        if not snapshot.query:
            self.update("")
            return
        parts = [f"Page {snapshot.page + 1}", f"{snapshot.total_results} loaded"]
        if snapshot.exhausted:
            parts.append("end of results")
        if snapshot.has_prev_page:
            parts.append("p: prev")
        if snapshot.has_next_page:
            parts.append("n: next")
        if snapshot.number_input:
            parts.append(f"[b]#{snapshot.number_input}[/b]")
        self.update("  ·  ".join(parts))


class HelpPane(Static):
    def on_mount(self) -> None:
        self.update(HELP_TEXT)


class SettingsPane(Static):
    def update_settings(self, view: Optional[SettingsView]) -> None:
        if view is None:
            return
        lines = ["[b]Settings[/b]  (Enter toggle/edit, s save, Esc discard)", ""]
        for index, (label, value) in enumerate(view.rows):
            line = f"{label:<26} {escape(value)}"
            if index == view.selected_index:
                line = f"[reverse]{line}[/reverse]"
            lines.append(line)
        self.update("\n".join(lines))


class LogPane(RichLog):
    """A dedicated widget for logging application events."""
    def add_message(self, message: str) -> None:
        self.write(message)

    def add_notice(self, notice: Notice) -> None:
        self.write(NOTICE_TEMPLATES[notice.level].format(escape(notice.text)))
