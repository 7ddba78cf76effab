"""
Persisted and derived records used across the pipeline.

Pixel coordinates are (x, y) image coordinates. Normalised detector output
uses (y, x) and lives in facescan.detection.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple


class FaceId(int):
    def __repr__(self):
        return f"FaceId({int(self)})"


class PersonId(int):
    def __repr__(self):
        return f"PersonId({int(self)})"


class PictureId(int):
    def __repr__(self):
        return f"PictureId({int(self)})"


Point = Tuple[float, float]


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float


@dataclass
class Face:
    """A face found in a picture.

    The extractor creates these without ``face_id`` or ``detected_at``; the
    repository fills both in when the face is stored.

    BlazeFace reports a single mouth point and both ears, so ``mouth``,
    ``right_ear`` and ``left_ear`` are set for its faces while the mouth
    corners stay None. Left and right are from the subject's perspective.
    """
    picture_id: PictureId
    bounds: Rect
    thumbnail_path: Path
    bounds_path: Path
    confidence: float
    model_name: str

    right_eye: Optional[Point] = None
    left_eye: Optional[Point] = None
    nose: Optional[Point] = None
    right_mouth_corner: Optional[Point] = None
    left_mouth_corner: Optional[Point] = None
    mouth: Optional[Point] = None
    right_ear: Optional[Point] = None
    left_ear: Optional[Point] = None

    face_id: Optional[FaceId] = None
    person_id: Optional[PersonId] = None
    is_confirmed: bool = False
    is_ignored: bool = False
    detected_at: Optional[datetime] = None

    def __post_init__(self):
        if self.is_confirmed and self.person_id is None:
            raise ValueError("a confirmed face must belong to a person")
        if self.is_confirmed and self.is_ignored:
            raise ValueError("a face cannot be both confirmed and ignored")


@dataclass(frozen=True)
class Person:
    person_id: PersonId
    name: str
    thumbnail_path: Optional[Path] = None
    recognized_at: Optional[datetime] = None


@dataclass(frozen=True)
class FaceScan:
    picture_id: PictureId
    is_broken: bool
    face_count: int
    scan_ts: datetime


@dataclass(frozen=True)
class FaceDetectionCandidate:
    picture_id: PictureId
    path: Path


@dataclass(frozen=True)
class DetectedFace:
    """A stored face as seen by the recogniser."""
    face_id: FaceId
    picture_id: PictureId
    face_path: Path
    thumbnail_path: Path
    detected_at: datetime
    bounds: Rect
    confidence: float

    right_eye: Optional[Point] = None
    left_eye: Optional[Point] = None
    nose: Optional[Point] = None
    right_mouth_corner: Optional[Point] = None
    left_mouth_corner: Optional[Point] = None
    mouth: Optional[Point] = None
    right_ear: Optional[Point] = None
    left_ear: Optional[Point] = None

    def mouth_point(self) -> Optional[Point]:
        """Mouth centre, falling back to the midpoint of the mouth corners."""
        if self.mouth is not None:
            return self.mouth
        if self.right_mouth_corner is not None and self.left_mouth_corner is not None:
            return (
                (self.right_mouth_corner[0] + self.left_mouth_corner[0]) / 2.0,
                (self.right_mouth_corner[1] + self.left_mouth_corner[1]) / 2.0,
            )
        return None


@dataclass(frozen=True)
class PersonForRecognition:
    person_id: PersonId
    recognized_at: Optional[datetime]
    face: DetectedFace
