"""The map: the sets of keyframes, map points and map lines of a session."""

from __future__ import annotations

import threading
from typing import Any, Iterable


class Map:
    """Holds every keyframe, map point and map line known to the system.

    Keyframes must carry an integer ``id`` attribute. Points and lines are
    kept by identity; insertion order is preserved in the returned lists.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._map_points: dict[Any, None] = {}
        self._map_lines: dict[Any, None] = {}
        self._keyframes: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._reference_map_lines: list[Any] = []
        self._max_keyframe_id = 0
        self._big_change_index = 0
        self.keyframe_origins: list[Any] = []
        # Held while the map is being changed as a whole (loop closure, global BA).
        self.map_update_lock = threading.RLock()
        # Keeps two points from being created with the same id in separate threads.
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def add_map_line(self, line: Any) -> None:
        with self._lock:
            self._map_lines[line] = None

    def erase_map_line(self, line: Any) -> None:
        with self._lock:
            self._map_lines.pop(line, None)

    def set_reference_map_points(self, points: Iterable[Any]) -> None:
        with self._lock:
            self._reference_map_points = list(points)

    def set_reference_map_lines(self, lines: Iterable[Any]) -> None:
        with self._lock:
            self._reference_map_lines = list(lines)

    def inform_new_big_change(self) -> None:
        """Record a large change of the map, such as a loop closure."""
        with self._lock:
            self._big_change_index += 1

    def big_change_index(self) -> int:
        with self._lock:
            return self._big_change_index

    def all_keyframes(self) -> list[Any]:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._map_points)

    def all_map_lines(self) -> list[Any]:
        with self._lock:
            return list(self._map_lines)

    def reference_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._reference_map_points)

    def reference_map_lines(self) -> list[Any]:
        with self._lock:
            return list(self._reference_map_lines)

    def num_map_points(self) -> int:
        with self._lock:
            return len(self._map_points)

    def num_keyframes(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Forget every element; the big-change counter is kept."""
        with self._lock:
            self._map_points.clear()
            self._map_lines.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points.clear()
            self._reference_map_lines.clear()
            self.keyframe_origins.clear()