# play_queue.py
from collections import deque
from dataclasses import replace
from typing import Deque, Iterator, Optional

from models import SearchResult


class PlayQueue:
    """Ordered playlist. While a background player is active, index 0 is the
    track that is playing; ``selected_index`` is the queue panel cursor."""

    def __init__(self):
        self._tracks: Deque[SearchResult] = deque()
        self.selected_index = 0

    def __len__(self) -> int:
        return len(self._tracks)

    def __iter__(self) -> Iterator[SearchResult]:
        return iter(self._tracks)

    def __getitem__(self, index: int) -> SearchResult:
        return self._tracks[index]

    @property
    def head(self) -> Optional[SearchResult]:
        return self._tracks[0] if self._tracks else None

    def enqueue(self, track: SearchResult) -> None:
        self._tracks.append(replace(track))

    def dequeue(self) -> Optional[SearchResult]:
        if not self._tracks:
            self.selected_index = 0
            return None
        if self.selected_index > 0:
            self.selected_index -= 1
        track = self._tracks.popleft()
        self._clamp()
        return track

    def remove_at(self, index: int) -> Optional[SearchResult]:
        if index < 0 or index >= len(self._tracks):
            return None
        if index < self.selected_index:
            self.selected_index -= 1
        track = self._tracks[index]
        del self._tracks[index]
        self._clamp()
        return track

    def move_to_front(self, index: int) -> None:
        if index < 0 or index >= len(self._tracks):
            return
        if index > 0:
            track = self._tracks[index]
            del self._tracks[index]
            self._tracks.appendleft(track)
        self.selected_index = 0

    def clear(self) -> None:
        self._tracks.clear()
        self.selected_index = 0

    def select_previous(self) -> None:
        if self.selected_index > 0:
            self.selected_index -= 1

    def select_next(self) -> None:
        if self.selected_index < len(self._tracks) - 1:
            self.selected_index += 1

    def _clamp(self) -> None:
        if self.selected_index >= len(self._tracks):
            self.selected_index = max(0, len(self._tracks) - 1)
