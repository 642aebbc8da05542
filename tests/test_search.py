import subprocess

import pytest

from conftest import FakeSearchRunner, search_line
from lifecycle import CancellationToken
from logging_config import OperationCancelled
from services import (SEARCH_CEILING, SEARCH_FIELD_COUNT, SEARCH_PRINT_TEMPLATE,
                      PaginatedSearchCache, SearchCommand,
                      humanize_views, parse_search_line, wait_for_output)


class _FinishedProcess:
    def __init__(self, stdout="", stderr="", returncode=0):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode

    def communicate(self, timeout=None):
        return self._stdout, self._stderr


class _HangingProcess:
    def __init__(self):
        self.killed = False
        self.returncode = None

    def communicate(self, timeout=None):
        if self.killed:
            self.returncode = -9
            return "", ""
        raise subprocess.TimeoutExpired("yt-dlp", timeout)

    def kill(self):
        self.killed = True


class TestParseSearchLine:
    """Tests for parse_search_line() and humanize_views()."""

    def test_parse_search_line(self):
        parsed = parse_search_line("Lofi Mix|1:02:03|Chill Channel|1234567|abc123|3723")
        assert parsed is not None
        result, seconds = parsed
        assert result.video_id == "abc123"
        assert result.title == "Lofi Mix"
        assert result.channel == "Chill Channel"
        assert result.duration == "1:02:03"
        assert result.views == "1.2M"
        assert seconds == 3723.0

    def test_keeps_pipes_in_title(self):
        result, _ = parse_search_line("Song | Live|4:00|Band|10|xyz|240")
        assert result.title == "Song | Live"
        assert result.video_id == "xyz"

    def test_rejects_short_lines_and_blank_ids(self):
        assert parse_search_line("Title|4:00|Channel|10") is None
        assert parse_search_line("Title|4:00|Channel|10|  |240") is None

    def test_tolerates_missing_seconds(self):
        """Test that live streams without a duration still parse."""
        result, seconds = parse_search_line("Live now|N/A|Channel|0|live1|NA")
        assert result.video_id == "live1"
        assert seconds == 0.0

    def test_humanize_views(self):
        assert humanize_views("999") == "999"
        assert humanize_views("1000") == "1K"
        assert humanize_views("1234567") == "1.2M"
        assert humanize_views("3000000000") == "3B"
        assert humanize_views("N/A") == "N/A"


class TestPaginatedSearchCache:
    """Tests for batch fetching and paging."""

    def test_first_batch_is_three_pages_when_filtering(self):
        runner = FakeSearchRunner()
        cache = PaginatedSearchCache(runner, page_size=10, query="lofi")
        cache.fetch_batch()
        assert runner.ranges == ["1:30"]
        assert runner.calls[0][0] == "lofi"
        assert runner.calls[0][3] == SEARCH_CEILING

    def test_batch_is_one_page_without_filtering(self):
        runner = FakeSearchRunner()
        cache = PaginatedSearchCache(runner, page_size=10, filter_shorts=False, query="lofi")
        cache.ensure_page(0)
        assert runner.ranges == ["1:10"]
        assert len(cache.results) == 10

    def test_full_batch_of_mostly_shorts_is_not_exhausted(self):
        """Test that a full raw batch keeps the query open even if filtering kept few."""
        # Every 4th raw item is long enough: 8 of the first 30 survive the filter.
        runner = FakeSearchRunner(line_for=lambda i: search_line(i, 300 if i % 4 == 1 else 60))
        cache = PaginatedSearchCache(runner, page_size=10, query="lofi")

        cache.fetch_batch()
        assert len(cache.results) == 8
        assert not cache.exhausted

        cache.ensure_page(1)
        assert runner.ranges[:2] == ["1:30", "31:60"]
        assert len(cache.results) >= 20 or cache.exhausted

    def test_malformed_line_is_dropped(self):
        lines = [search_line(i) for i in range(1, 21)]
        lines[7] = "broken|line|with|four"
        runner = FakeSearchRunner(total=20, line_for=lambda i: lines[i - 1])
        cache = PaginatedSearchCache(runner, page_size=20, filter_shorts=False, query="q")
        cache.fetch_batch()
        assert len(cache.results) == 19
        assert cache.last_error is None

    def test_short_batch_marks_exhausted(self):
        runner = FakeSearchRunner(total=12)
        cache = PaginatedSearchCache(runner, page_size=10, filter_shorts=False, query="q")
        cache.ensure_page(5)
        assert cache.exhausted
        assert len(cache.results) == 12
        assert runner.ranges == ["1:10", "11:20"]

    @pytest.mark.parametrize("page", [0, 1, 3, 7])
    def test_ensure_page_loads_page_or_exhausts(self, page):
        runner = FakeSearchRunner(total=75, line_for=lambda i: search_line(i, 300 if i % 3 else 30))
        cache = PaginatedSearchCache(runner, page_size=10, query="q")
        cache.ensure_page(page)
        assert len(cache.results) >= (page + 1) * 10 or cache.exhausted

    def test_ceiling_bounds_raw_range(self):
        runner = FakeSearchRunner(total=1000)
        cache = PaginatedSearchCache(runner, page_size=40, filter_shorts=False, query="q",
                                     ceiling=100)
        cache.ensure_page(10)
        assert runner.ranges == ["1:40", "41:80", "81:100"]
        assert cache.exhausted
        assert len(cache.results) == 100

    def test_first_batch_failure_is_zero_results(self):
        runner = FakeSearchRunner(total=0, returncode=1, stderr="ERROR: network unreachable\n")
        cache = PaginatedSearchCache(runner, page_size=10, query="q")
        cache.ensure_page(0)
        assert cache.results == []
        assert cache.exhausted
        assert cache.last_error == "ERROR: network unreachable"

    def test_partial_failure_with_output_keeps_paging(self):
        # yt-dlp exits 1 when a single entry fails but still prints the rest.
        runner = FakeSearchRunner(total=500, returncode=1, stderr="ERROR: video unavailable")
        cache = PaginatedSearchCache(runner, page_size=10, filter_shorts=False, query="q")
        cache.ensure_page(0)
        assert len(cache.results) == 10
        assert not cache.exhausted
        assert cache.last_error is None
        cache.ensure_page(1)
        assert runner.ranges == ["1:10", "11:20"]
        assert len(cache.results) == 20

    def test_later_batch_failure_is_exhaustion(self):
        runner = FakeSearchRunner(fail_on_call=2)
        cache = PaginatedSearchCache(runner, page_size=10, filter_shorts=False, query="q")
        cache.ensure_page(0)
        cache.ensure_page(1)
        assert len(cache.results) == 10
        assert cache.exhausted
        assert cache.last_error is None
        cache.ensure_page(2)
        assert len(runner.calls) == 2

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValueError):
            PaginatedSearchCache(FakeSearchRunner(), page_size=0)


class TestResetAndCancellation:
    """Tests for new queries superseding old ones."""

    def test_reset_never_reuses_previous_results(self):
        runner = FakeSearchRunner()
        cache = PaginatedSearchCache(runner, page_size=10, filter_shorts=False, query="first")
        cache.ensure_page(1)
        assert len(cache.results) == 20

        runner.line_for = lambda i: search_line(i, title=f"Second {i}")
        cache.reset("second")
        assert cache.results == []
        assert cache.raw_cursor == 0
        assert not cache.exhausted
        cache.ensure_page(0)
        assert [r.title for r in cache.results] == [f"Second {i}" for i in range(1, 11)]
        assert runner.calls[-1][0] == "second"
        assert runner.ranges[-1] == "1:10"

    def test_stale_batch_is_discarded_after_reset(self):
        cache = None

        def runner(query, start, end, ceiling, token=None):
            # A new search starts while this batch is still running.
            cache.reset("newer")
            return FakeSearchRunner()(query, start, end, ceiling, token)

        cache = PaginatedSearchCache(runner, page_size=10, query="older")
        assert cache.fetch_batch() is False
        assert cache.results == []
        assert cache.query == "newer"
        assert cache.raw_cursor == 0

    def test_cancelled_token_stops_before_next_batch(self):
        runner = FakeSearchRunner()
        cache = PaginatedSearchCache(runner, page_size=10, filter_shorts=False, query="q")
        token = CancellationToken()
        cache.ensure_page(0, token)
        token.cancel()
        with pytest.raises(OperationCancelled):
            cache.ensure_page(3, token)
        assert len(runner.calls) == 1


class TestSearchCommand:
    """Tests for the yt-dlp search command wrapper."""

    def test_command_line(self):
        command = SearchCommand("yt-dlp")
        cmd = command.build_command("lofi beats", 31, 60, 500)
        assert cmd[1:] == [
            "--flat-playlist", "--no-warnings", "--playlist-items", "31:60",
            "ytsearch500:lofi beats", "--print", cmd[-1],
        ]
        assert cmd[-1] == SEARCH_PRINT_TEMPLATE
        assert len(search_line(1).split("|")) == SEARCH_FIELD_COUNT

    def test_returns_lines(self):
        output = "\n".join(search_line(i) for i in (1, 2)) + "\n"
        command = SearchCommand("yt-dlp", popen=lambda cmd, **kwargs: _FinishedProcess(output))
        batch = command("q", 1, 2, 500)
        assert batch.returncode == 0
        assert batch.lines == [search_line(1), search_line(2)]

    def test_missing_executable(self):
        def popen(cmd, **kwargs):
            raise FileNotFoundError("yt-dlp")

        batch = SearchCommand("yt-dlp", popen=popen)("q", 1, 10, 500)
        assert batch.returncode == 127
        assert batch.lines == []

    def test_abort_kills_running_search(self):
        process = _HangingProcess()
        token = CancellationToken()
        token.abort()
        with pytest.raises(OperationCancelled):
            wait_for_output(process, token)
        assert process.killed

    def test_graceful_cancel_lets_search_finish(self):
        process = _FinishedProcess(stdout="line\n")
        token = CancellationToken()
        token.cancel()
        assert wait_for_output(process, token) == ("line\n", "")
