"""
Face recognition: match unknown faces against one reference face per known
person.

Two feature extractors are available:
- LandmarkFeatures (default): pose-normalised landmark geometry, no model
  file needed.
- SFaceFeatures: OpenCV's SFace embedding (face_recognition_sface_2021dec.onnx),
  compared with the FR_NORM_L2 distance.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import cv2
import numpy as np

from facescan.errors import ConfigurationError
from facescan.model import DetectedFace, PersonForRecognition, PersonId, Point

logger = logging.getLogger(__name__)


# =============================================================================
# Feature extractors
# =============================================================================

class LandmarkFeatures:
    """
    Landmark geometry in a face-centred frame.

    Points are translated to the eye midpoint, rotated so the eyes lie on
    the x axis and scaled by the inter-eye distance. The distance between
    two faces is the RMS of the point differences over the points both
    faces have, so faces with and without ears stay comparable.
    """
    default_threshold = 0.35

    REQUIRED = ('right_eye', 'left_eye', 'nose', 'mouth')
    OPTIONAL = ('right_ear', 'left_ear')

    def features(self, face: DetectedFace) -> Optional[Dict[str, np.ndarray]]:
        points = {
            'right_eye': face.right_eye,
            'left_eye': face.left_eye,
            'nose': face.nose,
            'mouth': face.mouth_point(),
            'right_ear': face.right_ear,
            'left_ear': face.left_ear,
        }
        if any(points[name] is None for name in self.REQUIRED):
            return None

        right_eye = np.asarray(points['right_eye'], dtype=np.float64)
        left_eye = np.asarray(points['left_eye'], dtype=np.float64)
        eye_vector = left_eye - right_eye
        eye_distance = float(np.hypot(*eye_vector))
        if eye_distance < 1e-6:
            return None

        origin = (right_eye + left_eye) / 2.0
        angle = math.atan2(eye_vector[1], eye_vector[0])
        cos_a, sin_a = math.cos(-angle), math.sin(-angle)
        rotation = np.array([[cos_a, -sin_a], [sin_a, cos_a]])

        normalised = {}
        for name, point in points.items():
            if point is None:
                continue
            shifted = np.asarray(point, dtype=np.float64) - origin
            normalised[name] = rotation @ shifted / eye_distance
        return normalised

    def distance(self, a: Dict[str, np.ndarray], b: Dict[str, np.ndarray]) -> float:
        shared = [name for name in a if name in b]
        diffs = np.stack([a[name] - b[name] for name in shared])
        return float(np.sqrt((diffs ** 2).sum(axis=1).mean()))


class SFaceFeatures:
    """
    OpenCV SFace embeddings.

    The face crop (bounds image) is aligned with the five SFace landmarks
    before embedding. BlazeFace gives a single mouth point, which stands in
    for both mouth corners when they are missing.
    """
    default_threshold = 1.128

    def __init__(self, model_path: Union[str, Path]):
        self.model_path = Path(model_path)
        if not self.model_path.is_file():
            raise ConfigurationError(f"SFace model not found: {self.model_path}")
        self._local = threading.local()

    def _recognizer(self):
        # One instance per thread; cv2.FaceRecognizerSF is not thread safe.
        recognizer = getattr(self._local, 'recognizer', None)
        if recognizer is None:
            try:
                recognizer = cv2.FaceRecognizerSF.create(str(self.model_path), "")
            except cv2.error as exc:
                raise ConfigurationError(f"could not load SFace model {self.model_path}: {exc}") from exc
            self._local.recognizer = recognizer
        return recognizer

    def features(self, face: DetectedFace) -> Optional[np.ndarray]:
        if alignment_points(face) is None:
            return None

        img = cv2.imread(str(face.face_path), cv2.IMREAD_COLOR)
        if img is None:
            logger.warning("Could not read face crop %s", face.face_path)
            return None

        face_box = alignment_box(face, img.shape[1], img.shape[0])
        recognizer = self._recognizer()
        aligned = recognizer.alignCrop(img, face_box)
        return recognizer.feature(aligned).copy()

    def distance(self, a: np.ndarray, b: np.ndarray) -> float:
        return float(self._recognizer().match(a, b, cv2.FaceRecognizerSF_FR_NORM_L2))


def alignment_points(face: DetectedFace) -> Optional[List[Point]]:
    """Eyes, nose and mouth corners in SFace order. The single mouth point fills in for missing corners."""
    right_mouth = face.right_mouth_corner or face.mouth
    left_mouth = face.left_mouth_corner or face.mouth
    points = [face.right_eye, face.left_eye, face.nose, right_mouth, left_mouth]
    if any(p is None for p in points):
        return None
    return points


def alignment_box(face: DetectedFace, crop_width: int, crop_height: int) -> Optional[np.ndarray]:
    """
    Face row in the (1, 15) layout FaceRecognizerSF.alignCrop expects, with
    landmarks relative to the saved bounds crop.

    Returns None when the face lacks the eyes, nose or mouth.
    """
    points = alignment_points(face)
    if points is None:
        return None

    # The bounds crop is clamped to the picture, so it never starts below 0.
    origin_x = max(int(face.bounds.x), 0)
    origin_y = max(int(face.bounds.y), 0)
    row = [0.0, 0.0, float(crop_width), float(crop_height)]
    for x, y in points:
        row.extend([x - origin_x, y - origin_y])
    row.append(face.confidence)
    return np.asarray([row], dtype=np.float32)


# =============================================================================
# Recogniser
# =============================================================================

@dataclass(frozen=True)
class _Reference:
    person: PersonForRecognition
    features: object


class FaceRecognizer:
    """
    Assigns unknown faces to known people.

    A face matches the closest eligible person when the distance is within
    the threshold and no other person is within ambiguity_epsilon of that
    distance. Ties are treated as no match.
    """

    def __init__(self, references: List[_Reference], extractor, threshold: float,
                 ambiguity_epsilon: float = 0.02):
        self.references = references
        self.extractor = extractor
        self.threshold = threshold
        self.ambiguity_epsilon = ambiguity_epsilon

    @classmethod
    def build(
        cls,
        people: List[PersonForRecognition],
        extractor=None,
        threshold: Optional[float] = None,
        ambiguity_epsilon: float = 0.02,
    ) -> "FaceRecognizer":
        """Compute reference features for every person that has usable landmarks."""
        extractor = extractor or LandmarkFeatures()
        if threshold is None:
            threshold = extractor.default_threshold

        references = []
        for person in people:
            features = extractor.features(person.face)
            if features is None:
                logger.warning("Person %s has no usable reference face, skipping", int(person.person_id))
                continue
            references.append(_Reference(person, features))

        logger.info("Face recognizer built with %d of %d people", len(references), len(people))
        return cls(references, extractor, threshold, ambiguity_epsilon)

    def recognize(self, face: DetectedFace) -> Optional[PersonId]:
        """Best matching person, or None for no match, an ambiguous match or unusable landmarks."""
        features = self.extractor.features(face)
        if features is None:
            return None

        scored = []
        for reference in self.references:
            recognized_at = reference.person.recognized_at
            if recognized_at is not None and recognized_at > face.detected_at:
                continue
            scored.append((self.extractor.distance(reference.features, features), reference.person.person_id))

        if not scored:
            return None

        scored.sort(key=lambda item: item[0])
        best_distance, best_person = scored[0]
        if best_distance > self.threshold:
            return None

        if len(scored) > 1 and scored[1][0] - best_distance <= self.ambiguity_epsilon:
            logger.debug(
                "Face %s is ambiguous between person %s (%.4f) and person %s (%.4f)",
                int(face.face_id), int(best_person), best_distance, int(scored[1][1]), scored[1][0],
            )
            return None

        logger.debug("Face %s matches person %s at %.4f", int(face.face_id), int(best_person), best_distance)
        return best_person
