# services.py
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from lifecycle import CancellationToken
from logging_config import OperationCancelled, get_logger
from models import SearchResult

logger = get_logger("services")

MIN_DURATION_SECONDS = 180
SEARCH_CEILING = 500
SEARCH_FIELD_COUNT = 6
SEARCH_PRINT_TEMPLATE = (
    "%(title)s|%(duration_string|N/A)s|%(channel|Unknown)s|"
    "%(view_count|0)s|%(id)s|%(duration|0)s"
)
WAIT_POLL_INTERVAL = 0.25


@dataclass
class SearchBatchOutput:
    """Raw output of one search command invocation."""
    lines: List[str] = field(default_factory=list)
    returncode: int = 0
    stderr: str = ""


def wait_for_output(process: subprocess.Popen,
                    token: Optional[CancellationToken]) -> Tuple[str, str]:
    """communicate() that keeps an eye on ``token``; an abort kills the process."""
    while True:
        try:
            return process.communicate(timeout=WAIT_POLL_INTERVAL)
        except subprocess.TimeoutExpired:
            if token is not None and token.aborted:
                process.kill()
                process.communicate()
                raise OperationCancelled("search command aborted")


class SearchCommand:
    """A service to run batched yt-dlp searches."""
    def __init__(self, command: str = "yt-dlp",
                 popen: Callable[..., subprocess.Popen] = subprocess.Popen):
        self.command_name = command
        self.command_path = shutil.which(command)
        self._popen = popen

    @property
    def is_available(self) -> bool:
        return self.command_path is not None

    def build_command(self, query: str, start: int, end: int, ceiling: int) -> List[str]:
        return [
            self.command_path or self.command_name,
            "--flat-playlist",
            "--no-warnings",
            "--playlist-items", f"{start}:{end}",
            f"ytsearch{ceiling}:{query}",
            "--print", SEARCH_PRINT_TEMPLATE,
        ]

    def __call__(self, query: str, start: int, end: int, ceiling: int,
                 token: Optional[CancellationToken] = None) -> SearchBatchOutput:
        cmd = self.build_command(query, start, end, ceiling)
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            process = self._popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                  text=True, encoding="utf-8", errors="replace")
        except OSError as e:
            logger.error(f"Failed to run {self.command_name}: {e}")
            return SearchBatchOutput(returncode=127, stderr=str(e))
        stdout, stderr = wait_for_output(process, token)
        return SearchBatchOutput(lines=stdout.splitlines(), returncode=process.returncode,
                                 stderr=stderr or "")


def humanize_views(raw: str) -> str:
    """'1234567' -> '1.2M'. Anything that is not a plain count is kept as is."""
    raw = raw.strip()
    if not raw.isdigit():
        return raw
    count = int(raw)
    for divisor, suffix in ((1_000_000_000, "B"), (1_000_000, "M"), (1_000, "K")):
        if count >= divisor:
            value = f"{count / divisor:.1f}".rstrip("0").rstrip(".")
            return f"{value}{suffix}"
    return str(count)


def parse_search_line(line: str) -> Optional[Tuple[SearchResult, float]]:
    """Parses one raw search line into a result and its duration in seconds.

    Fields are split from the right so a title may itself contain '|'.
    """
    parts = line.rsplit("|", SEARCH_FIELD_COUNT - 1)
    if len(parts) < SEARCH_FIELD_COUNT:
        return None
    title, duration, channel, views, video_id, seconds = parts
    result = SearchResult.from_fields(title, duration, channel, humanize_views(views), video_id)
    if result is None:
        return None
    try:
        duration_seconds = float(seconds.strip())
    except ValueError:
        duration_seconds = 0.0
    return result, duration_seconds


SearchRunner = Callable[..., SearchBatchOutput]


class PaginatedSearchCache:
    """Fetches search results one batch at a time and keeps everything fetched.

    ``results`` only grows until the next ``reset``; a batch that was started
    before a reset is dropped when it completes.
    """

    def __init__(self, runner: SearchRunner, page_size: int, filter_shorts: bool = True,
                 query: str = "", ceiling: int = SEARCH_CEILING):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.runner = runner
        self.page_size = page_size
        self.filter_shorts = filter_shorts
        self.ceiling = ceiling
        self.query = query
        self.results: List[SearchResult] = []
        self.raw_cursor = 0
        self.exhausted = False
        self.last_error: Optional[str] = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def batch_size(self) -> int:
        # Filtering throws away many raw items; pull more per invocation.
        return self.page_size * 3 if self.filter_shorts else self.page_size

    def reset(self, query: str) -> None:
        with self._lock:
            self.query = query
            self.results = []
            self.raw_cursor = 0
            self.exhausted = False
            self.last_error = None
            self._generation += 1

    def ensure_page(self, page: int, token: Optional[CancellationToken] = None) -> int:
        """Makes sure page ``page`` (0-indexed) is loaded or the query is exhausted.

        Returns the number of results held.
        """
        needed = (page + 1) * self.page_size
        while len(self.results) < needed and not self.exhausted:
            if token is not None:
                token.raise_if_cancelled()
            if not self.fetch_batch(token):
                break
        return len(self.results)

    def fetch_batch(self, token: Optional[CancellationToken] = None) -> bool:
        """Fetches one raw batch. Returns False if a reset superseded it."""
        with self._lock:
            generation = self._generation
            query = self.query
            raw_cursor = self.raw_cursor
            first_batch = raw_cursor == 0
            filter_shorts = self.filter_shorts
            requested_batch = self.batch_size

        start = raw_cursor + 1
        end = min(raw_cursor + requested_batch, self.ceiling)
        if start > self.ceiling:
            with self._lock:
                if generation != self._generation:
                    return False
                self.exhausted = True
            return True

        logger.info(f"Fetching raw items {start}:{end} for '{query}'")
        output = self.runner(query, start, end, self.ceiling, token)

        raw_count = 0
        batch: List[SearchResult] = []
        for line in output.lines:
            line = line.strip()
            if not line:
                continue
            raw_count += 1
            parsed = parse_search_line(line)
            if parsed is None:
                logger.debug(f"Dropping malformed search line: {line!r}")
                continue
            result, seconds = parsed
            if filter_shorts and seconds < MIN_DURATION_SECONDS:
                continue
            batch.append(result)

        with self._lock:
            if generation != self._generation:
                logger.debug(f"Discarding stale batch for '{query}'")
                return False
            self.results.extend(batch)
            self.raw_cursor = end
            if output.returncode != 0 and first_batch and raw_count == 0:
                self.last_error = output.stderr.strip() or f"exit code {output.returncode}"
                logger.warning(f"Search for '{query}' failed: {self.last_error}")
                self.exhausted = True
            elif output.returncode != 0 and not first_batch:
                self.exhausted = True
            elif raw_count < end - start + 1 or end >= self.ceiling:
                self.exhausted = True
        logger.info(f"Found {len(self.results)} videos so far for '{query}'")
        return True


class Downloader:
    """A service to manage the external download command."""
    def __init__(self, command: str = "yt-dlp"):
        self.command_name = command
        self.command_path = shutil.which(command)

    @property
    def is_available(self) -> bool:
        return self.command_path is not None

    def build_command(self, url: str, ytdl_format: str, output_template: str,
                      audio_only: bool) -> List[str]:
        cmd = [self.command_path or self.command_name, "-f", ytdl_format]
        if audio_only:
            cmd += ["-x", "--audio-format", "mp3", "--audio-quality", "0"]
        cmd += ["-o", output_template, url]
        return cmd

    def run(self, url: str, title: str, ytdl_format: str, output_template: str,
            audio_only: bool = False) -> Tuple[bool, str]:
        """Runs the download command, returning success status and message."""
        if not self.is_available:
            return False, f"Command '{self.command_name}' not found."
        cmd = self.build_command(url, ytdl_format, output_template, audio_only)
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True, encoding='utf-8')
            return True, f"Download successful for '{title}'."
        except subprocess.CalledProcessError as e:
            return False, f"Download failed for '{title}'. Details:\n{e.stderr}"
        except OSError as e:
            return False, f"An unexpected error occurred during the download of '{title}': {e}"
