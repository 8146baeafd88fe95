"""Quad-tree distribution of keypoints so that they cover an image evenly."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from orbfeatures.keypoint import KeyPoint

Point = tuple[int, int]


@dataclass(eq=False)
class ExtractorNode:
    """A rectangular cell of the quad-tree and the keypoints falling inside it."""

    ul: Point = (0, 0)
    ur: Point = (0, 0)
    bl: Point = (0, 0)
    br: Point = (0, 0)
    keys: list[KeyPoint] = field(default_factory=list)
    no_more: bool = False

    def divide(self) -> tuple[ExtractorNode, ExtractorNode, ExtractorNode, ExtractorNode]:
        """Split into four children (upper-left, upper-right, lower-left, lower-right)."""
        half_x = math.ceil((self.ur[0] - self.ul[0]) / 2)
        half_y = math.ceil((self.br[1] - self.ul[1]) / 2)

        n1 = ExtractorNode(
            ul=self.ul,
            ur=(self.ul[0] + half_x, self.ul[1]),
            bl=(self.ul[0], self.ul[1] + half_y),
            br=(self.ul[0] + half_x, self.ul[1] + half_y),
        )
        n2 = ExtractorNode(
            ul=n1.ur,
            ur=self.ur,
            bl=n1.br,
            br=(self.ur[0], self.ul[1] + half_y),
        )
        n3 = ExtractorNode(
            ul=n1.bl,
            ur=n1.br,
            bl=self.bl,
            br=(n1.br[0], self.bl[1]),
        )
        n4 = ExtractorNode(ul=n3.ur, ur=n2.br, bl=n3.br, br=self.br)

        split_x, split_y = n1.ur[0], n1.br[1]
        for kp in self.keys:
            if kp.x < split_x:
                (n1 if kp.y < split_y else n3).keys.append(kp)
            elif kp.y < split_y:
                n2.keys.append(kp)
            else:
                n4.keys.append(kp)

        children = (n1, n2, n3, n4)
        for child in children:
            if len(child.keys) == 1:
                child.no_more = True
        return children


def _round_half_away(value: float) -> int:
    return int(math.floor(abs(value) + 0.5)) * (1 if value >= 0 else -1)


def _best(node: ExtractorNode) -> KeyPoint:
    return max(node.keys, key=lambda kp: kp.response)


def distribute_oct_tree(
    keypoints: list[KeyPoint],
    min_x: int,
    max_x: int,
    min_y: int,
    max_y: int,
    n: int,
) -> list[KeyPoint]:
    """Keep at most about ``n`` well-spread keypoints, the strongest in each cell.

    Keypoint coordinates are relative to ``(min_x, min_y)``.
    """
    width = max_x - min_x
    height = max_y - min_y
    if width <= 0 or height <= 0:
        raise ValueError("region must have positive width and height")

    n_ini = max(1, _round_half_away(width / height))
    h_x = width / n_ini

    initial = [
        ExtractorNode(
            ul=(int(h_x * i), 0),
            ur=(int(h_x * (i + 1)), 0),
            bl=(int(h_x * i), height),
            br=(int(h_x * (i + 1)), height),
        )
        for i in range(n_ini)
    ]
    for kp in keypoints:
        index = min(max(int(kp.x / h_x), 0), n_ini - 1)
        initial[index].keys.append(kp)

    nodes: list[ExtractorNode] = []
    for node in initial:
        if not node.keys:
            continue
        if len(node.keys) == 1:
            node.no_more = True
        nodes.append(node)

    finished = False
    while not finished:
        prev_size = len(nodes)
        to_expand: list[tuple[int, ExtractorNode]] = []
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
                        to_expand.append((len(child.keys), child))

        nodes = front[::-1] + kept

        if len(nodes) >= n or len(nodes) == prev_size:
            finished = True
        elif len(nodes) + len(to_expand) * 3 > n:
            while not finished:
                prev_size = len(nodes)
                previous = sorted(to_expand, key=lambda pair: pair[0])
                to_expand = []

                for _, parent in reversed(previous):
                    children = [child for child in parent.divide() if child.keys]
                    nodes = children[::-1] + nodes
                    to_expand.extend(
                        (len(child.keys), child)
                        for child in children
                        if len(child.keys) > 1
                    )
                    nodes.remove(parent)
                    if len(nodes) >= n:
                        break

                if len(nodes) >= n or len(nodes) == prev_size:
                    finished = True

    return [_best(node) for node in nodes]