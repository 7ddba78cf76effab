"""
Batch orchestrator: runs the library pipeline as an ordered queue of stages.

States: IDLE -> RUNNING -> (IDLE | STOPPING -> IDLE).

Main pipeline order:
    scan, enrich, thumbnail, clean, extract_motion,
    detect_faces, recognize_faces, tidy

Non-face stages are supplied by the caller as callables returning an item
count. Face stages are DetectFacesTask and RecognizeFacesTask, sharing the
orchestrator's cancel flag and progress sink.
"""
from __future__ import annotations

import collections
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Mapping, Optional, Union

from facescan.config import FaceScanConfig
from facescan.errors import ConfigurationError
from facescan.model import PictureId
from facescan.progress import NullProgressSink, ProgressSink
from facescan.repository import Repository
from facescan.tasks import DetectFacesTask, RecognizeFacesTask

logger = logging.getLogger(__name__)

MAIN_STAGES = (
    "scan",
    "enrich",
    "thumbnail",
    "clean",
    "extract_motion",
    "detect_faces",
    "recognize_faces",
    "tidy",
)

FACE_STAGES = ("detect_faces", "recognize_faces")


class State(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class StageStarted:
    name: str


@dataclass(frozen=True)
class StageCompleted:
    name: str
    count: int


@dataclass(frozen=True)
class StageFailed:
    name: str
    error: BaseException


@dataclass(frozen=True)
class Stopped:
    pass


OrchestratorEvent = Union[StageStarted, StageCompleted, StageFailed, Stopped]


@dataclass(frozen=True)
class Stage:
    name: str
    run: Callable[[], int]


def _log_event(event: OrchestratorEvent) -> None:
    logger.info("%s", event)


# =============================================================================
# Orchestrator
# =============================================================================

class BatchOrchestrator:
    """
    Runs queued stages one after another on a background thread.

    Args:
        stages: callables for the main pipeline stages, by name. Missing
            stages complete immediately with a count of 0.
        listener: receives StageStarted / StageCompleted / StageFailed /
            Stopped events, called from the worker thread
        face_detection_enabled: when False, face stages are no-ops
        run_in_background: run stages on a worker thread (False runs them
            on the calling thread, which returns once the queue is empty)
    """

    def __init__(
        self,
        stages: Optional[Mapping[str, Callable[[], int]]] = None,
        listener: Optional[Callable[[OrchestratorEvent], None]] = None,
        face_detection_enabled: bool = True,
        run_in_background: bool = True,
        cancel: Optional[threading.Event] = None,
    ):
        self.stages: Dict[str, Callable[[], int]] = dict(stages or {})
        self.listener = listener or _log_event
        self.face_detection_enabled = face_detection_enabled
        self.run_in_background = run_in_background
        self.cancel = cancel or threading.Event()

        self.detect_task: Optional[DetectFacesTask] = None
        self.recognize_task: Optional[RecognizeFacesTask] = None

        self._lock = threading.Lock()
        self._queue: Deque[Stage] = collections.deque()
        self._state = State.IDLE
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def for_library(
        cls,
        config: FaceScanConfig,
        repository: Repository,
        stages: Optional[Mapping[str, Callable[[], int]]] = None,
        progress: Optional[ProgressSink] = None,
        **kwargs,
    ) -> "BatchOrchestrator":
        """Orchestrator with face stages wired to the repository and config.

        Detector weights are loaded the first time detection runs, so a bad
        weight file surfaces as a StageFailed event rather than here.
        """
        orchestrator = cls(stages, face_detection_enabled=config.face_detection_enabled, **kwargs)
        progress = progress or NullProgressSink()
        orchestrator.detect_task = DetectFacesTask.from_config(
            config, repository, cancel=orchestrator.cancel, progress=progress)
        orchestrator.recognize_task = RecognizeFacesTask.from_config(
            config, repository, cancel=orchestrator.cancel, progress=progress)
        return orchestrator

    @property
    def state(self) -> State:
        with self._lock:
            return self._state

    # =========================================================================
    # Requests
    # =========================================================================

    def start(self) -> None:
        """Queue the whole pipeline."""
        self._enqueue(self._stage(name) for name in MAIN_STAGES)

    def scan_picture_for_faces(self, picture_id: PictureId) -> None:
        """Rescan one picture (its old faces are deleted first), then run recognition."""
        self._enqueue([
            Stage("detect_faces", self._face_stage(lambda: self._require_detect().run_one(picture_id))),
            self._stage("recognize_faces"),
        ])

    def scan_pictures_for_faces(self) -> None:
        """Scan every picture lacking a face scan, then run recognition."""
        self._enqueue(self._stage(name) for name in FACE_STAGES)

    def stop(self) -> None:
        """Drop pending stages and ask running workers to stop after their current item."""
        with self._lock:
            if self._state is State.IDLE:
                return
            self._queue.clear()
            self.cancel.set()
            self._state = State.STOPPING
        logger.info("Stop requested")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker thread finishes. Returns False on timeout."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # =========================================================================
    # Stages
    # =========================================================================

    def _require_detect(self) -> DetectFacesTask:
        if self.detect_task is None:
            raise ConfigurationError("no face detection task configured")
        return self.detect_task

    def _require_recognize(self) -> RecognizeFacesTask:
        if self.recognize_task is None:
            raise ConfigurationError("no face recognition task configured")
        return self.recognize_task

    def _face_stage(self, run: Callable[[], int]) -> Callable[[], int]:
        def guarded() -> int:
            if not self.face_detection_enabled:
                logger.info("Face detection disabled, skipping")
                return 0
            return run()
        return guarded

    def _stage(self, name: str) -> Stage:
        if name in self.stages:
            return Stage(name, self.stages[name])
        if name == "detect_faces":
            return Stage(name, self._face_stage(lambda: self._require_detect().run()))
        if name == "recognize_faces":
            return Stage(name, self._face_stage(lambda: self._require_recognize().run()))
        return Stage(name, lambda: 0)

    # =========================================================================
    # Worker
    # =========================================================================

    def _enqueue(self, stages: Iterable[Stage]) -> None:
        with self._lock:
            if self._state is State.STOPPING:
                logger.info("Ignoring request while stopping")
                return
            self._queue.extend(stages)
            if self._state is State.RUNNING:
                return
            self._state = State.RUNNING

        if self.run_in_background:
            self._thread = threading.Thread(target=self._drain, name="batch-orchestrator", daemon=True)
            self._thread.start()
        else:
            self._drain()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if self.cancel.is_set() or not self._queue:
                    stopped = self.cancel.is_set()
                    self._queue.clear()
                    self.cancel.clear()
                    self._state = State.IDLE
                    break
                stage = self._queue.popleft()

            self.listener(StageStarted(stage.name))
            try:
                count = stage.run()
            except ConfigurationError as exc:
                logger.error("Stage %s failed, aborting run: %s", stage.name, exc)
                self._abort()
                self.listener(StageFailed(stage.name, exc))
                continue
            except Exception as exc:
                logger.exception("Stage %s raised, aborting run", stage.name)
                self._abort()
                self.listener(StageFailed(stage.name, exc))
                continue
            self.listener(StageCompleted(stage.name, count))

        if stopped:
            logger.info("Pipeline stopped")
            self.listener(Stopped())

    def _abort(self) -> None:
        with self._lock:
            self._queue.clear()
