"""Geometry for drawing the map: points, lines, keyframes, graph and camera.

The drawer produces vertex data rather than issuing drawing calls, so any
renderer can use it.

Map points provide ``is_bad`` and ``world_pos``; map lines provide
``is_bad`` and ``start_end_points()``; keyframes provide ``id``,
``pose_inverse()``, ``camera_center()``, ``covisibles_by_weight(w)``,
``parent()`` and ``loop_edges()``.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import yaml

_SETTING_KEYS = {
    "keyframe_size": "Viewer.KeyFrameSize",
    "keyframe_line_width": "Viewer.KeyFrameLineWidth",
    "graph_line_width": "Viewer.GraphLineWidth",
    "point_size": "Viewer.PointSize",
    "line_size": "Viewer.LineSize",
    "camera_size": "Viewer.CameraSize",
    "camera_line_width": "Viewer.CameraLineWidth",
}

#: Minimum covisibility weight for an edge of the drawn graph.
GRAPH_MIN_WEIGHT = 100


class _SettingsLoader(yaml.SafeLoader):
    """Safe loader that reads tagged nodes (such as matrices) as plain data."""


def _construct_tagged(loader: yaml.SafeLoader, suffix: str, node: yaml.Node) -> Any:
    if isinstance(node, yaml.MappingNode):
        return loader.construct_mapping(node, deep=True)
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    return loader.construct_scalar(node)


_SettingsLoader.add_multi_constructor("tag:yaml.org,2002:", _construct_tagged)
_SettingsLoader.add_multi_constructor("!", _construct_tagged)


def load_settings(path: str | Path) -> dict[str, Any]:
    """Read a YAML settings file, tolerating a leading ``%YAML:1.0`` line."""
    text = Path(path).read_text(encoding="utf-8")
    lines = text.splitlines()
    if lines and lines[0].lstrip().startswith("%YAML"):
        lines = lines[1:]
    data = yaml.load("\n".join(lines), Loader=_SettingsLoader)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("settings file must hold a mapping")
    return data


def camera_frustum_lines(size: float) -> np.ndarray:
    """Line-segment vertices (16 x 3) of a camera pyramid in the camera frame."""
    w = float(size)
    h = w * 0.75
    z = w * 0.6
    o = (0.0, 0.0, 0.0)
    return np.array([
        o, (w, h, z), o, (w, -h, z), o, (-w, -h, z), o, (-w, h, z),
        (w, h, z), (w, -h, z),
        (-w, h, z), (-w, -h, z),
        (-w, h, z), (w, h, z),
        (-w, -h, z), (w, -h, z),
    ])


def _vector3(value: Any) -> np.ndarray:
    return np.asarray(value, dtype=float).reshape(3)


def _position(point: Any) -> np.ndarray:
    value = point.world_pos
    if callable(value):
        value = value()
    return _vector3(value)


class MapDrawer:
    """Collects what a viewer needs to show the current map."""

    def __init__(self, map: Any, settings: Mapping[str, Any]) -> None:
        self._map = map
        for attribute, key in _SETTING_KEYS.items():
            setattr(self, attribute, float(settings.get(key, 0.0) or 0.0))
        self._camera_lock = threading.Lock()
        self._camera_pose: np.ndarray | None = None

    def map_point_vertices(self) -> tuple[np.ndarray, np.ndarray]:
        """Positions of ordinary and of reference map points, bad ones left out."""
        points = self._map.all_map_points()
        references = self._map.reference_map_points()
        reference_ids = {id(p) for p in references}
        ordinary = [_position(p) for p in points
                    if not p.is_bad and id(p) not in reference_ids]
        if not points:
            ordinary = []
        reference = [_position(p) for p in references if not p.is_bad] if points else []
        return (np.array(ordinary).reshape(-1, 3), np.array(reference).reshape(-1, 3))

    def map_line_vertices(self) -> tuple[list[tuple[np.ndarray, np.ndarray]],
                                         list[tuple[np.ndarray, np.ndarray]]]:
        """End points of ordinary and of reference map lines, bad ones left out."""
        lines = self._map.all_map_lines()
        if not lines:
            return [], []
        references = self._map.reference_map_lines()
        reference_ids = {id(line) for line in references}

        def segment(line: Any) -> tuple[np.ndarray, np.ndarray]:
            start, end = line.start_end_points()
            return _vector3(start), _vector3(end)

        ordinary = [segment(line) for line in lines
                    if not line.is_bad and id(line) not in reference_ids]
        reference = [segment(line) for line in references if not line.is_bad]
        return ordinary, reference

    def keyframe_frustums(self) -> list[np.ndarray]:
        """World-frame frustum segment vertices of every keyframe."""
        local = np.hstack([camera_frustum_lines(self.keyframe_size), np.ones((16, 1))])
        frustums = []
        for keyframe in self._map.all_keyframes():
            twc = np.asarray(keyframe.pose_inverse(), dtype=float).reshape(4, 4)
            frustums.append((local @ twc.T)[:, :3])
        return frustums

    def graph_edges(self) -> list[tuple[np.ndarray, np.ndarray]]:
        """Covisibility, spanning-tree and loop edges between camera centres."""
        edges = []
        for keyframe in self._map.all_keyframes():
            center = _vector3(keyframe.camera_center())
            for other in keyframe.covisibles_by_weight(GRAPH_MIN_WEIGHT):
                if other.id < keyframe.id:
                    continue
                edges.append((center, _vector3(other.camera_center())))
            parent = keyframe.parent()
            if parent is not None:
                edges.append((center, _vector3(parent.camera_center())))
            for other in keyframe.loop_edges():
                if other.id < keyframe.id:
                    continue
                edges.append((center, _vector3(other.camera_center())))
        return edges

    def set_current_camera_pose(self, tcw: Any) -> None:
        with self._camera_lock:
            self._camera_pose = np.array(tcw, dtype=float).reshape(4, 4)

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """The camera-to-world matrix as 16 values in column-major order."""
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).flatten(order="F")
        rwc = pose[:3, :3].T
        twc = -rwc @ pose[:3, 3]
        matrix = np.eye(4)
        matrix[:3, :3] = rwc
        matrix[:3, 3] = twc
        return matrix.flatten(order="F")