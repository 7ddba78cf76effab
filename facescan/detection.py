"""
Typed view over a single decoded BlazeFace detection row.

A row is 17 values: [ymin, xmin, ymax, xmax, 6 x (y, x) keypoints, score].
Coordinates are whatever space the row is in (normalised or pixels).
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import torch

from facescan.config import KEYPOINT_NAMES

DETECTION_SIZE = 17


@dataclass(frozen=True)
class KeyPoint:
    y: float
    x: float

    def as_xy(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class BoundingBox:
    y_min: float
    x_min: float
    y_max: float
    x_max: float

    @property
    def width(self) -> float:
        return self.x_max - self.x_min

    @property
    def height(self) -> float:
        return self.y_max - self.y_min

    def centre(self) -> KeyPoint:
        return KeyPoint((self.y_min + self.y_max) / 2.0, (self.x_min + self.x_max) / 2.0)


@dataclass(frozen=True)
class Landmarks:
    right_eye: KeyPoint
    left_eye: KeyPoint
    nose: KeyPoint
    mouth: KeyPoint
    right_ear: KeyPoint
    left_ear: KeyPoint

    def eye_midpoint(self) -> KeyPoint:
        return KeyPoint(
            (self.right_eye.y + self.left_eye.y) / 2.0,
            (self.right_eye.x + self.left_eye.x) / 2.0,
        )


@dataclass(frozen=True)
class Center:
    """Face centre and where it came from.

    Use the constructors rather than the fields: from_landmarks for the eye
    midpoint, from_box for the bounding box centre.
    """
    point: KeyPoint
    from_eyes: bool

    @classmethod
    def from_landmarks(cls, eye_midpoint: KeyPoint) -> "Center":
        return cls(eye_midpoint, True)

    @classmethod
    def from_box(cls, box_centre: KeyPoint) -> "Center":
        return cls(box_centre, False)

    def distance_to(self, other: "Center") -> float:
        return math.hypot(self.point.y - other.point.y, self.point.x - other.point.x)


@dataclass(frozen=True)
class Detection:
    bbox: BoundingBox
    landmarks: Optional[Landmarks]
    score: float

    @classmethod
    def from_tensor(cls, row: torch.Tensor) -> "Detection":
        """Build from a 17-value row; non-finite keypoints leave landmarks unset."""
        values: Sequence[float] = row.detach().cpu().tolist()
        if len(values) != DETECTION_SIZE:
            raise ValueError(f"expected {DETECTION_SIZE} values, got {len(values)}")

        bbox = BoundingBox(*values[:4])
        points = [KeyPoint(values[4 + 2 * k], values[5 + 2 * k]) for k in range(len(KEYPOINT_NAMES))]
        if all(math.isfinite(p.y) and math.isfinite(p.x) for p in points):
            landmarks = Landmarks(*points)
        else:
            landmarks = None
        return cls(bbox, landmarks, float(values[16]))

    def center(self) -> Center:
        if self.landmarks is not None:
            return Center.from_landmarks(self.landmarks.eye_midpoint())
        return Center.from_box(self.bbox.centre())
