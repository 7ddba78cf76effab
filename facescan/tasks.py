"""
Batch tasks run by the orchestrator: face detection over pictures and face
recognition over unknown faces.

Both fan out over a thread pool, check the shared cancel flag before each
item and report one progress step per finished item.
"""
from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional

import cv2
from sqlalchemy.exc import SQLAlchemyError

from facescan.config import FaceScanConfig
from facescan.errors import ConfigurationError, DecodeError, InferenceError
from facescan.extractor import FaceExtractor
from facescan.model import DetectedFace, FaceDetectionCandidate, PictureId
from facescan.progress import NullProgressSink, ProgressSink
from facescan.recognizer import FaceRecognizer, LandmarkFeatures, SFaceFeatures
from facescan.repository import Repository

logger = logging.getLogger(__name__)


class ItemOutcome(enum.Enum):
    SCANNED = "scanned"
    BROKEN = "broken"
    SKIPPED = "skipped"


class ExtractorPool:
    """One FaceExtractor per worker thread, created on first use."""

    def __init__(self, factory: Callable[[], FaceExtractor]):
        self._factory = factory
        self._local = threading.local()

    def get(self) -> FaceExtractor:
        extractor = getattr(self._local, 'extractor', None)
        if extractor is None:
            extractor = self._factory()
            self._local.extractor = extractor
        return extractor


# =============================================================================
# Detection
# =============================================================================

class DetectFacesTask:
    """
    Detects faces in pictures and stores them.

    A picture that can't be decoded, or whose inference fails, is recorded
    as a broken scan and the batch carries on. Configuration errors from the
    extractor factory propagate and end the run.
    """
    name = "detect_faces"

    def __init__(
        self,
        repository: Repository,
        extractor_factory: Callable[[], FaceExtractor],
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressSink] = None,
        workers: int = 1,
    ):
        self.repository = repository
        self.pool = ExtractorPool(extractor_factory)
        self.cancel = cancel or threading.Event()
        self.progress = progress or NullProgressSink()
        self.workers = max(1, workers)

    @classmethod
    def from_config(cls, config: FaceScanConfig, repository: Repository, **kwargs) -> "DetectFacesTask":
        """Task whose workers share one set of models, loaded on first use."""
        lock = threading.Lock()
        loaded: List[FaceExtractor] = []

        def factory() -> FaceExtractor:
            with lock:
                if not loaded:
                    loaded.append(FaceExtractor.build(config))
            shared = loaded[0]
            return FaceExtractor(config, shared.primary, shared.secondary)

        return cls(repository, factory, workers=config.workers, **kwargs)

    def run(self) -> int:
        """Scan every picture that has no face scan yet. Returns the number of pictures processed."""
        return self._run_candidates(self.repository.find_need_face_scan())

    def run_one(self, picture_id: PictureId) -> int:
        """Rescan one picture, replacing any faces it had."""
        candidate = self.repository.get_face_detection_candidate(picture_id)
        if candidate is None:
            logger.warning("Picture %s not found, nothing to scan", int(picture_id))
            return 0
        self.repository.delete_faces(candidate.picture_id)
        return self._run_candidates([candidate])

    def _run_candidates(self, candidates: List[FaceDetectionCandidate]) -> int:
        if not candidates:
            logger.info("No pictures need a face scan")
            return 0

        # Build one extractor up front so bad weights fail before any fan-out.
        self.pool.get()

        logger.info("Scanning %d pictures for faces", len(candidates))
        self.progress.start("Detecting faces", len(candidates))

        outcomes = []
        try:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = [executor.submit(self.scan_picture, c) for c in candidates]
                try:
                    for future in as_completed(futures):
                        outcomes.append(future.result())
                except BaseException:
                    for f in futures:
                        f.cancel()
                    raise
        finally:
            self.progress.complete()
        scanned = sum(1 for o in outcomes if o is ItemOutcome.SCANNED)
        broken = sum(1 for o in outcomes if o is ItemOutcome.BROKEN)
        logger.info("Face scan finished: %d scanned, %d broken, %d skipped",
                    scanned, broken, len(outcomes) - scanned - broken)
        return scanned + broken

    def scan_picture(self, candidate: FaceDetectionCandidate) -> ItemOutcome:
        """Detect and store one picture's faces. Per-picture failures mark it broken."""
        if self.cancel.is_set():
            return ItemOutcome.SKIPPED

        try:
            faces = self.pool.get().extract_faces(candidate.picture_id, candidate.path)
            self.repository.add_face_scans(candidate.picture_id, faces)
            return ItemOutcome.SCANNED
        except ConfigurationError:
            raise
        except (DecodeError, InferenceError, OSError, SQLAlchemyError) as exc:
            logger.error("Failed detecting faces in %s: %s", candidate.path, exc)
            self.repository.mark_face_scan_broken(candidate.picture_id)
            return ItemOutcome.BROKEN
        except Exception:
            logger.exception("Unexpected error detecting faces in %s", candidate.path)
            self.repository.mark_face_scan_broken(candidate.picture_id)
            return ItemOutcome.BROKEN
        finally:
            self.progress.advance()


# =============================================================================
# Recognition
# =============================================================================

def recognizer_factory(config: FaceScanConfig):
    """Builder for FaceRecognizer using the feature extractor the config selects."""
    if config.sface_model_path is not None:
        features = SFaceFeatures(config.sface_model_path)
        threshold = None
    else:
        features = LandmarkFeatures()
        threshold = config.recognition_threshold

    def build(people):
        return FaceRecognizer.build(people, features, threshold, config.ambiguity_epsilon)
    return build


class RecognizeFacesTask:
    """
    Assigns unknown faces to known people as unconfirmed matches.

    Only faces detected after the oldest recognized_at across people are
    considered. After a complete pass every person is stamped with a new
    recognized_at, so a rerun with no new faces does nothing.
    """
    name = "recognize_faces"

    def __init__(
        self,
        repository: Repository,
        build_recognizer: Callable = FaceRecognizer.build,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressSink] = None,
        workers: int = 1,
    ):
        self.repository = repository
        self.build_recognizer = build_recognizer
        self.cancel = cancel or threading.Event()
        self.progress = progress or NullProgressSink()
        self.workers = max(1, workers)

    @classmethod
    def from_config(cls, config: FaceScanConfig, repository: Repository, **kwargs) -> "RecognizeFacesTask":
        return cls(repository, recognizer_factory(config), workers=config.workers, **kwargs)

    def run(self) -> int:
        """Returns the number of faces matched to a person."""
        people = self.repository.find_people_for_recognition()
        if not people:
            logger.info("No confirmed people, skipping face recognition")
            return 0

        if any(p.recognized_at is None for p in people):
            watermark = None
        else:
            watermark = min(p.recognized_at for p in people)

        unknown = self.repository.find_unknown_faces(detected_after=watermark)
        logger.info("Recognizing %d unknown faces against %d people (watermark %s)",
                    len(unknown), len(people), watermark)

        matched = 0
        if unknown:
            recognizer = self.build_recognizer(people)
            self.progress.start("Recognizing faces", len(unknown))
            try:
                with ThreadPoolExecutor(max_workers=self.workers) as executor:
                    futures = [executor.submit(self.recognize_face, recognizer, f) for f in unknown]
                    for future in as_completed(futures):
                        if future.result():
                            matched += 1
            finally:
                self.progress.complete()

        if self.cancel.is_set():
            logger.info("Face recognition cancelled, watermark left unchanged")
            return matched

        for person in people:
            try:
                self.repository.mark_face_recognition_complete(person.person_id)
            except SQLAlchemyError as exc:
                logger.error("Failed marking recognition complete for person %s: %s",
                             int(person.person_id), exc)

        logger.info("Face recognition matched %d faces", matched)
        return matched

    def recognize_face(self, recognizer: FaceRecognizer, face: DetectedFace) -> bool:
        if self.cancel.is_set():
            return False

        try:
            person_id = recognizer.recognize(face)
            if person_id is None:
                return False
            self.repository.mark_as_person_unconfirmed(face.face_id, person_id)
            return True
        except (SQLAlchemyError, cv2.error, OSError) as exc:
            logger.error("Failed recognizing face %s: %s", int(face.face_id), exc)
            return False
        finally:
            self.progress.advance()
