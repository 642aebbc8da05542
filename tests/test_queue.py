import pytest

from conftest import make_result
from play_queue import PlayQueue


def build_queue(n):
    queue = PlayQueue()
    for i in range(n):
        queue.enqueue(make_result(i))
    return queue


def ids(queue):
    return [track.video_id for track in queue]


class TestEnqueueDequeue:
    """Tests for adding and popping tracks."""

    def test_enqueue_keeps_order(self):
        queue = build_queue(3)
        assert len(queue) == 3
        assert ids(queue) == ["id0", "id1", "id2"]
        assert queue.head.video_id == "id0"

    def test_enqueue_same_track_twice(self):
        """The same result can be queued twice as two entries."""
        queue = PlayQueue()
        track = make_result(1)
        queue.enqueue(track)
        queue.enqueue(track)
        assert ids(queue) == ["id1", "id1"]
        assert queue[0] is not queue[1]

    def test_dequeue_empty_queue(self):
        queue = PlayQueue()
        assert queue.dequeue() is None
        assert queue.selected_index == 0
        assert queue.head is None

    def test_dequeue_follows_selection(self):
        """The cursor stays on the same track when the head is popped."""
        queue = build_queue(3)
        queue.selected_index = 2
        track = queue.dequeue()
        assert track.video_id == "id0"
        assert queue.selected_index == 1
        assert queue[queue.selected_index].video_id == "id2"

    def test_dequeue_last_track_resets_selection(self):
        queue = build_queue(1)
        queue.dequeue()
        assert len(queue) == 0
        assert queue.selected_index == 0


class TestRemoveAt:
    """Tests for PlayQueue.remove_at()."""

    @pytest.mark.parametrize("index", [3, 10, -1])
    def test_out_of_range_is_noop(self, index):
        queue = build_queue(3)
        queue.selected_index = 1
        assert queue.remove_at(index) is None
        assert ids(queue) == ["id0", "id1", "id2"]
        assert queue.selected_index == 1

    def test_remove_before_selection_decrements_once(self):
        queue = build_queue(4)
        queue.selected_index = 2
        removed = queue.remove_at(0)
        assert removed.video_id == "id0"
        assert queue.selected_index == 1
        assert queue[queue.selected_index].video_id == "id2"

    def test_remove_selected_last_entry_clamps(self):
        queue = build_queue(3)
        queue.selected_index = 2
        queue.remove_at(2)
        assert queue.selected_index == 1

    def test_remove_after_selection_keeps_index(self):
        queue = build_queue(3)
        queue.selected_index = 0
        queue.remove_at(2)
        assert queue.selected_index == 0
        assert ids(queue) == ["id0", "id1"]


class TestReorder:

    @pytest.mark.parametrize("index", [0, 1, 3])
    def test_move_to_front(self, index):
        """The moved track ends up first and gets the cursor."""
        queue = build_queue(4)
        queue.selected_index = 2
        moved_id = queue[index].video_id
        queue.move_to_front(index)
        assert queue[0].video_id == moved_id
        assert queue.selected_index == 0
        assert len(queue) == 4
        assert sorted(ids(queue)) == ["id0", "id1", "id2", "id3"]

    def test_clear(self):
        queue = build_queue(3)
        queue.selected_index = 2
        queue.clear()
        assert len(queue) == 0
        assert queue.selected_index == 0

    def test_selection_stays_in_bounds(self):
        queue = build_queue(2)
        queue.select_previous()
        assert queue.selected_index == 0
        queue.select_next()
        queue.select_next()
        assert queue.selected_index == 1
