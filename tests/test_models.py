import dataclasses

import pytest

from conftest import make_result
from models import (FetchNextPage, NewSearch, Play, SearchResult,
                    SessionSnapshot)


class TestSearchResult:
    """Tests for the SearchResult data class."""

    def test_link_is_built_from_id(self):
        assert make_result(7).link == "https://www.youtube.com/watch?v=id7"

    def test_blank_id_is_rejected(self):
        with pytest.raises(ValueError):
            SearchResult(video_id=" ", title="t", duration="1:00", channel="c", views="1")
        assert SearchResult.from_fields("t", "1:00", "c", "1", "") is None

    def test_from_fields_strips_id(self):
        result = SearchResult.from_fields("t", "1:00", "c", "1", " abc \n")
        assert result.video_id == "abc"

    def test_safe_title_drops_path_characters(self):
        """Test that titles can be used as file names."""
        result = make_result(1, title="AC/DC: Back in Black (Live) 1.0")
        assert result.safe_title == "ACDC Back in Black Live 1.0"

    def test_results_are_immutable(self):
        result = make_result(1)
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.title = "other"


class TestActionsAndSnapshot:

    def test_actions_compare_by_value(self):
        assert Play(3) == Play(3)
        assert NewSearch("a") != NewSearch("b")
        assert FetchNextPage() == FetchNextPage()

    def test_snapshot_selected_result(self):
        rows = [(11, make_result(11)), (12, make_result(12))]
        snapshot = SessionSnapshot(query="q", page=1, page_rows=rows, selected_index=1)
        assert snapshot.selected_result.video_id == "id12"
        assert SessionSnapshot(query="", page=0).selected_result is None
