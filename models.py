# models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union

WATCH_URL = "https://www.youtube.com/watch?v={}"


@dataclass(frozen=True)
class SearchResult:
    """A data class to hold all available details for a single result."""
    video_id: str
    title: str
    duration: str
    channel: str
    views: str

    def __post_init__(self):
        if not self.video_id or not self.video_id.strip():
            raise ValueError("SearchResult requires a non-empty video_id")

    @classmethod
    def from_fields(cls, title: str, duration: str, channel: str, views: str,
                    video_id: str) -> Optional["SearchResult"]:
        """Builds a result from raw search fields, or None when the id is blank."""
        video_id = video_id.strip()
        if not video_id:
            return None
        return cls(video_id=video_id, title=title, duration=duration,
                   channel=channel, views=views)

    @property
    def link(self) -> str:
        return WATCH_URL.format(self.video_id)

    @property
    def safe_title(self) -> str:
        return "".join(c for c in self.title if c.isalnum() or c in "._ -")


@dataclass
class PlaybackStatus:
    """Last known state of the background player."""
    playing: bool = False
    paused: bool = False
    time_position: float = 0.0
    duration: float = 0.0
    volume: int = 100
    title: str = ""
    track_id: str = ""
    eof_reached: bool = False


# Pending actions: the session holds at most one, the latest write wins.
@dataclass(frozen=True)
class Play:
    index: int


@dataclass(frozen=True)
class NewSearch:
    query: str


@dataclass(frozen=True)
class FetchNextPage:
    pass


PendingAction = Union[Play, NewSearch, FetchNextPage]


class FocusedPanel(Enum):
    SEARCH_BAR = "search"
    RESULTS = "results"
    QUEUE = "queue"


class InputMode(Enum):
    BROWSE = "browse"
    HELP = "help"


class NoticeLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    text: str
    level: NoticeLevel = NoticeLevel.INFO


@dataclass(frozen=True)
class SettingsView:
    """Render-ready view of the settings draft."""
    rows: Tuple[Tuple[str, str], ...]
    selected_index: int
    editing: bool


@dataclass(frozen=True)
class SessionSnapshot:
    """A single object to hold everything the screen shows for one tick."""
    query: str
    page: int
    page_rows: List[Tuple[int, SearchResult]] = field(default_factory=list)
    selected_index: int = 0
    has_next_page: bool = False
    has_prev_page: bool = False
    exhausted: bool = False
    total_results: int = 0
    queue_rows: List[SearchResult] = field(default_factory=list)
    queue_selected_index: int = 0
    focused_panel: FocusedPanel = FocusedPanel.SEARCH_BAR
    input_mode: InputMode = InputMode.BROWSE
    search_input: str = ""
    number_input: str = ""
    playback: Optional[PlaybackStatus] = None
    loading: bool = False
    settings: Optional[SettingsView] = None

    @property
    def selected_result(self) -> Optional[SearchResult]:
        if 0 <= self.selected_index < len(self.page_rows):
            return self.page_rows[self.selected_index][1]
        return None
