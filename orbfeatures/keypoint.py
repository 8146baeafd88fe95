"""Keypoint record used throughout feature extraction and matching."""

from __future__ import annotations

from dataclasses import dataclass, replace


def cv_round(value: float) -> int:
    """Round to the nearest integer, with ties going to the even neighbour."""
    return int(round(float(value)))


@dataclass(frozen=True)
class KeyPoint:
    """An image feature: position, patch size, orientation, score and pyramid level."""

    x: float
    y: float
    size: float = 0.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> tuple[float, float]:
        """The position as an ``(x, y)`` pair."""
        return (self.x, self.y)

    def scaled(self, factor: float) -> KeyPoint:
        """Return a copy whose position is multiplied by ``factor``."""
        return replace(self, x=self.x * factor, y=self.y * factor)

    def shifted(self, dx: float, dy: float) -> KeyPoint:
        """Return a copy whose position is moved by ``(dx, dy)``."""
        return replace(self, x=self.x + dx, y=self.y + dy)