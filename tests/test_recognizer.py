"""
Unit tests for landmark features and the face recogniser.
"""
import dataclasses
import math
import unittest
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np

from facescan.errors import ConfigurationError
from facescan.model import DetectedFace, FaceId, PersonForRecognition, PersonId, PictureId, Rect
from facescan.recognizer import FaceRecognizer, LandmarkFeatures, SFaceFeatures, alignment_box

T0 = datetime(2024, 1, 1, 12, 0, 0)

# Landmarks of a frontal face with eyes 40px apart, centred on the origin.
BASE_POINTS = {
    "right_eye": (-20.0, 0.0),
    "left_eye": (20.0, 0.0),
    "nose": (0.0, 20.0),
    "mouth": (0.0, 40.0),
    "right_ear": (-45.0, 10.0),
    "left_ear": (45.0, 10.0),
}


def _face(face_id, points=None, offset=(100.0, 100.0), scale=1.0, angle=0.0, detected_at=T0, **changes):
    points = dict(BASE_POINTS, **changes) if points is None else points
    cos_a, sin_a = math.cos(angle), math.sin(angle)
    placed = {}
    for name, point in points.items():
        if point is None:
            placed[name] = None
            continue
        x, y = point
        placed[name] = (
            offset[0] + scale * (x * cos_a - y * sin_a),
            offset[1] + scale * (x * sin_a + y * cos_a),
        )
    return DetectedFace(
        face_id=FaceId(face_id),
        picture_id=PictureId(1),
        face_path=Path(f"{face_id}_original.png"),
        thumbnail_path=Path(f"{face_id}_thumbnail.png"),
        detected_at=detected_at,
        bounds=Rect(0.0, 0.0, 100.0, 100.0),
        confidence=0.9,
        **placed,
    )


def _person(person_id, face, recognized_at=None):
    return PersonForRecognition(PersonId(person_id), recognized_at, face)


class TestLandmarkFeatures(unittest.TestCase):

    def setUp(self):
        self.features = LandmarkFeatures()

    def test_pose_invariant(self):
        """Translation, scale and in-plane rotation don't change the features."""
        reference = self.features.features(_face(1))
        moved = self.features.features(_face(2, offset=(400.0, 30.0), scale=2.5, angle=0.4))

        self.assertAlmostEqual(self.features.distance(reference, moved), 0.0, places=6)

    def test_different_geometry(self):
        reference = self.features.features(_face(1))
        other = self.features.features(_face(2, nose=(0.0, 35.0), mouth=(0.0, 60.0)))

        self.assertGreater(self.features.distance(reference, other), 0.2)

    def test_missing_required_point(self):
        self.assertIsNone(self.features.features(_face(1, nose=None)))

    def test_coincident_eyes(self):
        self.assertIsNone(self.features.features(_face(1, left_eye=(-20.0, 0.0))))

    def test_ears_optional(self):
        with_ears = self.features.features(_face(1))
        without_ears = self.features.features(_face(2, right_ear=None, left_ear=None))

        self.assertNotIn("right_ear", without_ears)
        self.assertAlmostEqual(self.features.distance(with_ears, without_ears), 0.0, places=6)


class TestFaceRecognizer(unittest.TestCase):

    def test_match_within_threshold(self):
        alice = _person(1, _face(10))
        bob = _person(2, _face(11, nose=(0.0, 35.0), mouth=(0.0, 60.0)))
        recognizer = FaceRecognizer.build([alice, bob])

        self.assertEqual(recognizer.recognize(_face(20, offset=(300.0, 50.0), scale=1.5)), PersonId(1))
        self.assertEqual(recognizer.recognize(_face(21, nose=(0.0, 34.0), mouth=(0.0, 59.0))), PersonId(2))

    def test_no_match_beyond_threshold(self):
        recognizer = FaceRecognizer.build([_person(1, _face(10))], threshold=0.05)
        stranger = _face(20, nose=(0.0, 35.0), mouth=(0.0, 60.0))

        self.assertIsNone(recognizer.recognize(stranger))

    def test_ambiguous_match(self):
        """Two people equally close means no match."""
        recognizer = FaceRecognizer.build([_person(1, _face(10)), _person(2, _face(11, offset=(0.0, 0.0)))])

        self.assertIsNone(recognizer.recognize(_face(20)))

    def test_skips_people_recognized_after_detection(self):
        face = _face(20, detected_at=T0)
        later = _person(1, _face(10), recognized_at=T0 + timedelta(seconds=1))
        earlier = _person(2, _face(11), recognized_at=T0 - timedelta(seconds=1))

        self.assertIsNone(FaceRecognizer.build([later]).recognize(face))
        self.assertEqual(FaceRecognizer.build([later, earlier]).recognize(face), PersonId(2))

    def test_person_without_usable_face_is_skipped(self):
        recognizer = FaceRecognizer.build([_person(1, _face(10, nose=None))])

        self.assertEqual(recognizer.references, [])
        self.assertIsNone(recognizer.recognize(_face(20)))

    def test_unusable_unknown_face(self):
        recognizer = FaceRecognizer.build([_person(1, _face(10))])
        self.assertIsNone(recognizer.recognize(_face(20, right_eye=None)))


class TestSFaceFeatures(unittest.TestCase):

    def test_missing_model(self):
        with self.assertRaises(ConfigurationError):
            SFaceFeatures(Path("no/such/face_recognition_sface.onnx"))

    def test_alignment_box_relative_to_crop(self):
        face = dataclasses.replace(_face(1), bounds=Rect(30.7, 40.2, 100.0, 100.0))

        box = alignment_box(face, 100, 120)

        self.assertEqual(box.shape, (1, 15))
        np.testing.assert_allclose(box[0, :4], [0.0, 0.0, 100.0, 120.0])
        # right eye, left eye, nose, then the mouth point twice
        np.testing.assert_allclose(
            box[0, 4:14], [50.0, 60.0, 90.0, 60.0, 70.0, 80.0, 70.0, 100.0, 70.0, 100.0])
        self.assertAlmostEqual(float(box[0, 14]), 0.9, places=6)

    def test_alignment_box_clamps_origin_at_picture_edge(self):
        face = dataclasses.replace(_face(1), bounds=Rect(-10.0, -20.0, 140.0, 150.0))

        box = alignment_box(face, 130, 130)

        np.testing.assert_allclose(box[0, 4:6], [80.0, 100.0])

    def test_alignment_box_needs_landmarks(self):
        self.assertIsNone(alignment_box(_face(1, nose=None), 100, 100))


if __name__ == "__main__":
    unittest.main()
