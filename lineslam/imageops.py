"""Image operations used by the feature extractor: FAST, blur, resize, borders."""

from __future__ import annotations

import math
from typing import Any

import numpy as np

from lineslam.orbdescriptor import KeyPoint

# Bresenham circle of radius 3 as (dx, dy), in order around the circle.
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC = 9
FAST_KEYPOINT_SIZE = 7.0


def _gray(image: Any) -> np.ndarray:
    array = np.asarray(image)
    if array.ndim != 2:
        raise ValueError("expected a single-channel image")
    return array


def fast_detect(image: Any, threshold: int, nonmax_suppression: bool = True) -> list[KeyPoint]:
    """FAST-9/16 corners in row-major order, scored by their largest passing threshold."""
    img = _gray(image).astype(np.int32)
    threshold = min(max(int(threshold), 0), 255)
    h, w = img.shape
    if h < 7 or w < 7:
        return []
    center = img[3:h - 3, 3:w - 3]
    diffs = np.stack([img[3 + dy:h - 3 + dy, 3 + dx:w - 3 + dx] - center for dx, dy in _CIRCLE])
    ext = np.concatenate([diffs, diffs[:_ARC - 1]])
    brighter = np.full(center.shape, np.iinfo(np.int32).min, dtype=np.int32)
    darker = brighter.copy()
    for k in range(len(_CIRCLE)):
        window = ext[k:k + _ARC]
        np.maximum(brighter, window.min(axis=0), out=brighter)
        np.maximum(darker, -window.max(axis=0), out=darker)
    score = np.maximum(brighter, darker) - 1
    corner = score >= threshold

    scores = np.zeros((h, w), dtype=np.int32)
    scores[3:h - 3, 3:w - 3] = np.where(corner, score, 0)
    keep = np.zeros((h, w), dtype=bool)
    keep[3:h - 3, 3:w - 3] = corner
    if nonmax_suppression:
        padded = np.pad(scores, 1)
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                keep &= scores > padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
    return [KeyPoint(float(x), float(y), FAST_KEYPOINT_SIZE, -1.0, float(scores[y, x]))
            for y, x in np.argwhere(keep)]


def _gaussian_kernel(ksize: int, sigma: float) -> np.ndarray:
    if sigma <= 0:
        sigma = 0.3 * ((ksize - 1) * 0.5 - 1) + 0.8
    x = np.arange(ksize) - (ksize - 1) / 2.0
    kernel = np.exp(-(x * x) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def _finish(result: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if dtype == np.uint8:
        return np.clip(np.rint(result), 0, 255).astype(np.uint8)
    return result


def gaussian_blur(image: Any, ksize: int, sigma: float) -> np.ndarray:
    """Separable Gaussian blur with a reflect-101 border; uint8 stays uint8."""
    img = _gray(image)
    ksize = int(ksize)
    if ksize <= 0 or ksize % 2 == 0:
        raise ValueError("kernel size must be a positive odd number")
    kernel = _gaussian_kernel(ksize, float(sigma))
    radius = ksize // 2
    data = reflect_border(img.astype(np.float64), radius, True)
    h, w = img.shape
    rows = sum(weight * data[:, k:k + w] for k, weight in enumerate(kernel))
    out = sum(weight * rows[k:k + h, :] for k, weight in enumerate(kernel))
    return _finish(out, img.dtype)


def _axis_samples(src: int, dst: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    scale = src / dst
    f = (np.arange(dst) + 0.5) * scale - 0.5
    s = np.floor(f)
    frac = f - s
    s = s.astype(np.int64)
    low = s < 0
    s[low], frac[low] = 0, 0.0
    high = s >= src - 1
    s[high], frac[high] = src - 1, 0.0
    return s, np.minimum(s + 1, src - 1), frac


def resize_linear(image: Any, width: int, height: int) -> np.ndarray:
    """Bilinear resize with pixel-centre alignment; uint8 stays uint8."""
    img = _gray(image)
    width, height = int(width), int(height)
    if width <= 0 or height <= 0:
        raise ValueError("target size must be positive")
    if img.shape[0] == 0 or img.shape[1] == 0:
        raise ValueError("cannot resize an empty image")
    data = img.astype(np.float64)
    y0, y1, fy = _axis_samples(img.shape[0], height)
    x0, x1, fx = _axis_samples(img.shape[1], width)
    rows = data[y0, :] * (1 - fy)[:, None] + data[y1, :] * fy[:, None]
    out = rows[:, x0] * (1 - fx)[None, :] + rows[:, x1] * fx[None, :]
    return _finish(out, img.dtype)


def reflect_border(image: Any, border: int, isolated: bool = True) -> np.ndarray:
    """Surround the image with ``border`` pixels mirrored about the edge pixel.

    An array never has a surrounding parent image here, so the border is always
    built from the array alone, which is what ``isolated`` asks for.
    """
    img = np.asarray(image)
    if img.ndim < 2:
        raise ValueError("expected an image")
    border = int(border)
    if border < 0:
        raise ValueError("border must not be negative")
    if border == 0:
        return img.copy()
    pad = ((border, border), (border, border)) + ((0, 0),) * (img.ndim - 2)
    return np.pad(img, pad, mode="reflect")