# config.py
import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from logging_config import get_logger

logger = get_logger("config")

CONFIG_PATH = Path.home() / ".config" / "ytqueue" / "config.json"
MIN_RESULTS_PER_PAGE = 1
MAX_RESULTS_PER_PAGE = 100


def resolve_format(audio_only: bool, limit_bandwidth: bool) -> str:
    if audio_only and limit_bandwidth:
        return "bestaudio[abr<=128]/bestaudio/best"
    if audio_only:
        return "bestaudio/best"
    if limit_bandwidth:
        return "bestvideo[height<=360]+bestaudio/best[height<=360]/best"
    return "bestvideo+bestaudio/best"


@dataclass
class Config:
    """Holds all application configuration."""
    RESULTS_PER_PAGE: int = 20
    AUDIO_ONLY: bool = False
    LIMIT_BANDWIDTH: bool = False
    INCLUDE_SHORTS: bool = False
    CUSTOM_FORMAT: str = ""
    DOWNLOAD_MODE: bool = False
    DOWNLOAD_DIR: str = field(default_factory=lambda: str(Path.home() / "Downloads"))
    KEEP_TEMP: bool = False
    AUTOPLAY: bool = True
    BACKGROUND_PLAYBACK: bool = True
    SEARCH_COMMAND: str = "yt-dlp"
    DOWNLOAD_COMMAND: str = "yt-dlp"
    PLAYER: str = ""

    @property
    def format(self) -> str:
        return self.CUSTOM_FORMAT or resolve_format(self.AUDIO_ONLY, self.LIMIT_BANDWIDTH)


def load_config(path: Path = CONFIG_PATH) -> Config:
    """Loads the config file, falling back to defaults for anything unusable."""
    if not path.exists() or path.stat().st_size == 0:
        return Config()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return Config()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config {path}: expected a JSON object")
        return Config()

    defaults = Config()
    values = {}
    for f in fields(Config):
        if f.name not in data:
            continue
        value = data[f.name]
        expected = type(getattr(defaults, f.name))
        if expected is not int and type(value) is not expected:
            logger.warning(f"Ignoring {f.name} in {path}: expected {expected.__name__}, got {value!r}")
            continue
        values[f.name] = value
    config = Config(**values)
    config.RESULTS_PER_PAGE = _clamp_page_size(config.RESULTS_PER_PAGE)
    return config


def save_config(config: Config, path: Path = CONFIG_PATH) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(asdict(config), f, indent=4)
    except OSError as e:
        logger.error(f"Could not save config to {path}: {e}")


def apply_cli_overrides(config: Config, args) -> Config:
    """Returns a copy of ``config`` with the command line flags layered on top."""
    updates = {}
    if args.num is not None:
        updates["RESULTS_PER_PAGE"] = _clamp_page_size(args.num)
    if args.audio_only:
        updates["AUDIO_ONLY"] = True
    if args.limit:
        updates["LIMIT_BANDWIDTH"] = True
    if args.download:
        updates["DOWNLOAD_MODE"] = True
    if args.keep:
        updates["KEEP_TEMP"] = True
    if args.include_shorts:
        updates["INCLUDE_SHORTS"] = True
    if args.format:
        updates["CUSTOM_FORMAT"] = args.format
    if args.player:
        updates["PLAYER"] = args.player
    return replace(config, **updates)


def _clamp_page_size(value) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        return Config.RESULTS_PER_PAGE
    return max(MIN_RESULTS_PER_PAGE, min(MAX_RESULTS_PER_PAGE, value))


@dataclass(frozen=True)
class SettingsField:
    label: str
    attr: str
    kind: str  # "bool", "text" or "int"


SETTINGS_FIELDS: List[SettingsField] = [
    SettingsField("Audio only", "AUDIO_ONLY", "bool"),
    SettingsField("Limit bandwidth", "LIMIT_BANDWIDTH", "bool"),
    SettingsField("Keep temporary files", "KEEP_TEMP", "bool"),
    SettingsField("Include shorts", "INCLUDE_SHORTS", "bool"),
    SettingsField("Auto-play next track", "AUTOPLAY", "bool"),
    SettingsField("Download instead of play", "DOWNLOAD_MODE", "bool"),
    SettingsField("Download directory", "DOWNLOAD_DIR", "text"),
    SettingsField("Results per page", "RESULTS_PER_PAGE", "int"),
    SettingsField("Custom format", "CUSTOM_FORMAT", "text"),
]


class SettingsDraft:
    """An editable copy of a Config.

    Edits only touch the draft. Nothing reaches the live config (or the disk)
    until ``commit()`` returns a validated Config, so half-typed values are
    never persisted.
    """

    def __init__(self, config: Config):
        self._original = config
        self.values = asdict(config)
        self.selected_index = 0
        self.edit_buffer: Optional[str] = None

    @property
    def selected_field(self) -> SettingsField:
        return SETTINGS_FIELDS[self.selected_index]

    @property
    def editing(self) -> bool:
        return self.edit_buffer is not None

    def select_previous(self) -> None:
        if self.selected_index > 0:
            self.selected_index -= 1

    def select_next(self) -> None:
        if self.selected_index < len(SETTINGS_FIELDS) - 1:
            self.selected_index += 1

    def activate(self) -> None:
        """Toggles a checkbox, or starts/finishes editing a text field."""
        field_ = self.selected_field
        if field_.kind == "bool":
            self.values[field_.attr] = not self.values[field_.attr]
        elif self.editing:
            self.finish_edit()
        else:
            self.edit_buffer = str(self.values[field_.attr])

    def type_char(self, char: str) -> None:
        if not self.editing:
            return
        if self.selected_field.kind == "int" and not char.isdigit():
            return
        self.edit_buffer += char

    def backspace(self) -> None:
        if self.editing:
            self.edit_buffer = self.edit_buffer[:-1]

    def finish_edit(self) -> None:
        if not self.editing:
            return
        field_ = self.selected_field
        if field_.kind == "int":
            self.values[field_.attr] = _clamp_page_size(self.edit_buffer or MIN_RESULTS_PER_PAGE)
        else:
            self.values[field_.attr] = self.edit_buffer
        self.edit_buffer = None

    def cancel_edit(self) -> None:
        self.edit_buffer = None

    def commit(self) -> Config:
        self.finish_edit()
        values = dict(self.values)
        values["RESULTS_PER_PAGE"] = _clamp_page_size(values["RESULTS_PER_PAGE"])
        return Config(**values)

    @property
    def dirty(self) -> bool:
        return self.values != asdict(self._original)

    def rows(self) -> Tuple[Tuple[str, str], ...]:
        rows = []
        for index, field_ in enumerate(SETTINGS_FIELDS):
            value = self.values[field_.attr]
            if index == self.selected_index and self.editing:
                shown = f"{self.edit_buffer}_"
            elif field_.kind == "bool":
                shown = "[x]" if value else "[ ]"
            else:
                shown = str(value) or "(default)"
            rows.append((field_.label, shown))
        return tuple(rows)


ConfigCallback = Callable[[Config], None]
