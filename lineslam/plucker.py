"""Plücker coordinates of 3D lines and their rigid-body transformation."""

from __future__ import annotations

from typing import Any

import numpy as np

from lineslam.triangulation import skew_symmetric


def _vector3(value: Any, name: str) -> np.ndarray:
    array = np.asarray(value, dtype=float)
    if array.size != 3:
        raise ValueError(f"{name} must have 3 components")
    return array.reshape(3).copy()


def _matrix3(value: Any, name: str) -> np.ndarray:
    array = np.asarray(value, dtype=float)
    if array.shape != (3, 3):
        raise ValueError(f"{name} must be a 3x3 matrix")
    return array


class Plucker:
    """A 3D line as a normal (moment) vector and a direction vector.

    For a line through point ``p`` with direction ``d`` the normal is
    ``cross(p, d)``.
    """

    __slots__ = ("normal", "direction")

    def __init__(self, normal: Any, direction: Any) -> None:
        self.normal = _vector3(normal, "normal")
        self.direction = _vector3(direction, "direction")

    def __repr__(self) -> str:
        return f"Plucker(normal={self.normal.tolist()}, direction={self.direction.tolist()})"

    @property
    def nd(self) -> tuple[np.ndarray, np.ndarray]:
        """Copies of the normal and direction vectors."""
        return self.normal.copy(), self.direction.copy()

    def nd_transform(self, rotation: Any, translation: Any) -> tuple[np.ndarray, np.ndarray]:
        """Normal and direction of the line expressed in the frame ``(rotation, translation)`` maps to."""
        r = _matrix3(rotation, "rotation")
        t = _vector3(translation, "translation")
        direction = r @ self.direction
        normal = r @ self.normal + skew_symmetric(t) @ direction
        return normal, direction

    def transform(self, rotation: Any, translation: Any) -> None:
        """Move this line into the new frame in place."""
        self.normal, self.direction = self.nd_transform(rotation, translation)

    def transformed(self, rotation: Any, translation: Any) -> "Plucker":
        """A new line: this one expressed in the new frame."""
        normal, direction = self.nd_transform(rotation, translation)
        return Plucker(normal, direction)