"""ORB feature extraction over a scale pyramid."""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Any

import numpy as np

from lineslam.imageops import fast_detect, gaussian_blur, reflect_border, resize_linear
from lineslam.octree import distribute_oct_tree
from lineslam.orbdescriptor import (
    BIT_PATTERN_31,
    DESCRIPTOR_BYTES,
    PATCH_SIZE,
    KeyPoint,
    compute_descriptors,
    compute_orientation,
    compute_umax,
)

EDGE_THRESHOLD = 19
CELL_SIZE = 30


def _retain_best(keypoints: list[KeyPoint], count: int) -> list[KeyPoint]:
    if count >= len(keypoints):
        return keypoints
    return sorted(keypoints, key=lambda kp: kp.response, reverse=True)[:max(count, 0)]


class ORBExtractor:
    """Detects FAST corners on a scale pyramid and describes them with rotated BRIEF."""

    def __init__(self, nfeatures: int, scale_factor: float, nlevels: int,
                 ini_th_fast: int, min_th_fast: int) -> None:
        if nlevels < 1:
            raise ValueError("at least one pyramid level is needed")
        if scale_factor <= 1.0:
            raise ValueError("scale factor must be greater than one")
        if nfeatures < 0:
            raise ValueError("number of features must not be negative")
        self.nfeatures = int(nfeatures)
        self.scale_factor = float(scale_factor)
        self.nlevels = int(nlevels)
        self.ini_th_fast = int(ini_th_fast)
        self.min_th_fast = int(min_th_fast)

        self.scale_factors = [1.0]
        for _ in range(1, self.nlevels):
            self.scale_factors.append(self.scale_factors[-1] * self.scale_factor)
        self.level_sigma2 = [s * s for s in self.scale_factors]
        self.inv_scale_factors = [1.0 / s for s in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        factor = 1.0 / self.scale_factor
        desired = self.nfeatures * (1 - factor) / (1 - factor ** self.nlevels)
        self.features_per_level: list[int] = []
        total = 0
        for _ in range(self.nlevels - 1):
            count = round(desired)
            self.features_per_level.append(count)
            total += count
            desired *= factor
        self.features_per_level.append(max(self.nfeatures - total, 0))

        self.pattern = BIT_PATTERN_31
        self.umax = compute_umax()
        self.image_pyramid: list[np.ndarray] = []
        self._bordered_pyramid: list[np.ndarray] = []

    def compute_pyramid(self, image: Any) -> None:
        """Build the scaled images, each also kept with a reflected border."""
        base = np.asarray(image)
        self.image_pyramid = []
        self._bordered_pyramid = []
        for level in range(self.nlevels):
            if level == 0:
                current = base
            else:
                scale = self.inv_scale_factors[level]
                width = round(base.shape[1] * scale)
                height = round(base.shape[0] * scale)
                current = resize_linear(self.image_pyramid[-1], width, height)
            self.image_pyramid.append(current)
            self._bordered_pyramid.append(reflect_border(current, EDGE_THRESHOLD, level != 0))

    def _require_pyramid(self) -> None:
        if len(self.image_pyramid) != self.nlevels:
            raise RuntimeError("compute_pyramid must be called first")

    def _finish_level(self, keypoints: list[KeyPoint], level: int) -> None:
        size = float(int(PATCH_SIZE * self.scale_factors[level]))
        for kp in keypoints:
            kp.octave = level
            kp.size = size

    def compute_keypoints_oct_tree(self) -> list[list[KeyPoint]]:
        """Keypoints of every level, spread out with a quadtree."""
        self._require_pyramid()
        all_keypoints: list[list[KeyPoint]] = []
        for level, img in enumerate(self.image_pyramid):
            min_border_x = EDGE_THRESHOLD - 3
            min_border_y = min_border_x
            max_border_x = img.shape[1] - EDGE_THRESHOLD + 3
            max_border_y = img.shape[0] - EDGE_THRESHOLD + 3

            width = float(max_border_x - min_border_x)
            height = float(max_border_y - min_border_y)
            n_cols = int(width / CELL_SIZE)
            n_rows = int(height / CELL_SIZE)
            if n_cols < 1 or n_rows < 1:
                raise ValueError(f"pyramid level {level} is too small for feature extraction")
            w_cell = math.ceil(width / n_cols)
            h_cell = math.ceil(height / n_rows)

            to_distribute: list[KeyPoint] = []
            for i in range(n_rows):
                ini_y = min_border_y + i * h_cell
                if ini_y >= max_border_y - 3:
                    continue
                max_y = min(ini_y + h_cell + 6, max_border_y)
                for j in range(n_cols):
                    ini_x = min_border_x + j * w_cell
                    if ini_x >= max_border_x - 6:
                        continue
                    max_x = min(ini_x + w_cell + 6, max_border_x)
                    cell = img[ini_y:max_y, ini_x:max_x]
                    found = fast_detect(cell, self.ini_th_fast, True)
                    if not found:
                        found = fast_detect(cell, self.min_th_fast, True)
                    for kp in found:
                        kp.x += j * w_cell
                        kp.y += i * h_cell
                        to_distribute.append(kp)

            keypoints = distribute_oct_tree(to_distribute, min_border_x, max_border_x,
                                            min_border_y, max_border_y,
                                            self.features_per_level[level])
            for kp in keypoints:
                kp.x += min_border_x
                kp.y += min_border_y
            self._finish_level(keypoints, level)
            all_keypoints.append(keypoints)

        for img, keypoints in zip(self.image_pyramid, all_keypoints):
            compute_orientation(img, keypoints, self.umax)
        return all_keypoints

    def compute_keypoints_old(self) -> list[list[KeyPoint]]:
        """Keypoints of every level, spread out over a fixed grid of cells."""
        self._require_pyramid()
        first = self.image_pyramid[0]
        image_ratio = first.shape[1] / first.shape[0]
        all_keypoints: list[list[KeyPoint]] = []

        for level, img in enumerate(self.image_pyramid):
            desired = self.features_per_level[level]
            level_cols = int(math.sqrt(desired / (5 * image_ratio)))
            level_rows = int(image_ratio * level_cols)
            if level_cols < 1 or level_rows < 1:
                raise ValueError(f"too few features requested on pyramid level {level}")

            min_border_x = EDGE_THRESHOLD
            min_border_y = min_border_x
            max_border_x = img.shape[1] - EDGE_THRESHOLD
            max_border_y = img.shape[0] - EDGE_THRESHOLD
            cell_w = math.ceil((max_border_x - min_border_x) / level_cols)
            cell_h = math.ceil((max_border_y - min_border_y) / level_rows)
            n_cells = level_rows * level_cols
            features_cell = math.ceil(desired / n_cells)

            cells = [[[] for _ in range(level_cols)] for _ in range(level_rows)]
            to_retain = [[0] * level_cols for _ in range(level_rows)]
            totals = [[0] * level_cols for _ in range(level_rows)]
            no_more = [[False] * level_cols for _ in range(level_rows)]
            ini_x_col = [0] * level_cols
            ini_y_row = [0] * level_rows
            n_no_more = 0
            to_distribute = 0

            h_y = cell_h + 6
            for i in range(level_rows):
                ini_y = min_border_y + i * cell_h - 3
                ini_y_row[i] = ini_y
                if i == level_rows - 1:
                    h_y = max_border_y + 3 - ini_y
                    if h_y <= 0:
                        continue
                h_x = cell_w + 6
                for j in range(level_cols):
                    if i == 0:
                        ini_x_col[j] = min_border_x + j * cell_w - 3
                    ini_x = ini_x_col[j]
                    if j == level_cols - 1:
                        h_x = max_border_x + 3 - ini_x
                        if h_x <= 0:
                            continue
                    cell_image = img[ini_y:ini_y + h_y, ini_x:ini_x + h_x]
                    found = fast_detect(cell_image, self.ini_th_fast, True)
                    if len(found) <= 3:
                        found = fast_detect(cell_image, self.min_th_fast, True)
                    cells[i][j] = found
                    count = len(found)
                    totals[i][j] = count
                    if count > features_cell:
                        to_retain[i][j] = features_cell
                    else:
                        to_retain[i][j] = count
                        to_distribute += features_cell - count
                        no_more[i][j] = True
                        n_no_more += 1

            while to_distribute > 0 and n_no_more < n_cells:
                new_features_cell = features_cell + math.ceil(to_distribute / (n_cells - n_no_more))
                to_distribute = 0
                for i in range(level_rows):
                    for j in range(level_cols):
                        if no_more[i][j]:
                            continue
                        if totals[i][j] > new_features_cell:
                            to_retain[i][j] = new_features_cell
                        else:
                            to_retain[i][j] = totals[i][j]
                            to_distribute += new_features_cell - totals[i][j]
                            no_more[i][j] = True
                            n_no_more += 1

            keypoints: list[KeyPoint] = []
            for i in range(level_rows):
                for j in range(level_cols):
                    for kp in _retain_best(cells[i][j], to_retain[i][j]):
                        kp.x += ini_x_col[j]
                        kp.y += ini_y_row[i]
                        keypoints.append(kp)
            keypoints = _retain_best(keypoints, desired)
            self._finish_level(keypoints, level)
            all_keypoints.append(keypoints)

        for img, keypoints in zip(self.image_pyramid, all_keypoints):
            compute_orientation(img, keypoints, self.umax)
        return all_keypoints

    def __call__(self, image: Any) -> tuple[list[KeyPoint], np.ndarray]:
        """Keypoints in level-0 coordinates and their (n, 32) uint8 descriptors."""
        array = np.asarray(image)
        if array.size == 0:
            return [], np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)
        if array.ndim != 2 or array.dtype != np.uint8:
            raise ValueError("expected a single-channel 8-bit image")

        self.compute_pyramid(array)
        all_keypoints = self.compute_keypoints_oct_tree()

        result: list[KeyPoint] = []
        blocks: list[np.ndarray] = []
        for level, keypoints in enumerate(all_keypoints):
            if not keypoints:
                continue
            working = gaussian_blur(self._bordered_pyramid[level], 7, 2)
            shifted = [replace(kp, x=kp.x + EDGE_THRESHOLD, y=kp.y + EDGE_THRESHOLD)
                       for kp in keypoints]
            blocks.append(compute_descriptors(working, shifted, self.pattern))
            if level != 0:
                scale = self.scale_factors[level]
                for kp in keypoints:
                    kp.x *= scale
                    kp.y *= scale
            result.extend(keypoints)

        if not blocks:
            return [], np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)
        return result, np.vstack(blocks)