"""Quadtree distribution of keypoints over an image region."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable

from lineslam.orbdescriptor import KeyPoint


@dataclass(eq=False)
class ExtractorNode:
    """A rectangular cell of the quadtree and the keypoints that fall in it.

    Corners are integer (x, y) pairs: upper-left, upper-right, bottom-left,
    bottom-right. Nodes compare by identity.
    """

    ul: tuple[int, int]
    ur: tuple[int, int]
    bl: tuple[int, int]
    br: tuple[int, int]
    keys: list[KeyPoint] = field(default_factory=list)
    no_more: bool = False

    def divide(self) -> tuple["ExtractorNode", "ExtractorNode", "ExtractorNode", "ExtractorNode"]:
        """Split into four children and share the keypoints out among them."""
        half_x = math.ceil((self.ur[0] - self.ul[0]) / 2)
        half_y = math.ceil((self.br[1] - self.ul[1]) / 2)

        n1 = ExtractorNode(
            self.ul,
            (self.ul[0] + half_x, self.ul[1]),
            (self.ul[0], self.ul[1] + half_y),
            (self.ul[0] + half_x, self.ul[1] + half_y),
        )
        n2 = ExtractorNode(n1.ur, self.ur, n1.br, (self.ur[0], self.ul[1] + half_y))
        n3 = ExtractorNode(n1.bl, n1.br, self.bl, (n1.br[0], self.bl[1]))
        n4 = ExtractorNode(n3.ur, n2.br, n3.br, self.br)

        for kp in self.keys:
            if kp.x < n1.ur[0]:
                (n1 if kp.y < n1.br[1] else n3).keys.append(kp)
            elif kp.y < n1.br[1]:
                n2.keys.append(kp)
            else:
                n4.keys.append(kp)

        children = (n1, n2, n3, n4)
        for child in children:
            if len(child.keys) == 1:
                child.no_more = True
        return children


def _round_half_away(value: float) -> int:
    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


def _refine(nodes: list[ExtractorNode], expandable: list[ExtractorNode], n: int) -> None:
    """Split the most populated nodes first until ``n`` nodes exist or nothing changes."""
    while True:
        prev_size = len(nodes)
        previous = sorted(expandable, key=lambda node: len(node.keys))
        expandable = []
        for node in reversed(previous):
            for child in node.divide():
                if child.keys:
                    nodes.insert(0, child)
                    if len(child.keys) > 1:
                        expandable.append(child)
            nodes.remove(node)
            if len(nodes) >= n:
                break
        if len(nodes) >= n or len(nodes) == prev_size:
            return


def distribute_oct_tree(keypoints: Iterable[KeyPoint], min_x: int, max_x: int,
                        min_y: int, max_y: int, n: int) -> list[KeyPoint]:
    """Spread keypoints evenly: subdivide until about ``n`` cells, keep the best of each.

    Keypoint coordinates are relative to (min_x, min_y).
    """
    keys = list(keypoints)
    width = max_x - min_x
    height = max_y - min_y
    if width <= 0 or height <= 0:
        raise ValueError("region must have a positive size")
    n_ini = _round_half_away(width / height)
    if n_ini < 1:
        raise ValueError("region is too tall for its width")
    h_x = width / n_ini

    initial = [
        ExtractorNode(
            (int(h_x * i), 0),
            (int(h_x * (i + 1)), 0),
            (int(h_x * i), height),
            (int(h_x * (i + 1)), height),
        )
        for i in range(n_ini)
    ]
    for kp in keys:
        index = min(max(int(kp.x / h_x), 0), n_ini - 1)
        initial[index].keys.append(kp)

    nodes = [node for node in initial if node.keys]
    for node in nodes:
        node.no_more = len(node.keys) == 1

    while True:
        prev_size = len(nodes)
        expandable: list[ExtractorNode] = []
        front: list[ExtractorNode] = []
        kept: list[ExtractorNode] = []
        for node in nodes:
            if node.no_more:
                kept.append(node)
                continue
            for child in node.divide():
                if child.keys:
                    front.append(child)
                    if len(child.keys) > 1:
                        expandable.append(child)
        nodes = front[::-1] + kept

        if len(nodes) >= n or len(nodes) == prev_size:
            break
        if len(nodes) + 3 * len(expandable) > n:
            _refine(nodes, expandable, n)
            break

    return [max(node.keys, key=lambda kp: kp.response) for node in nodes]