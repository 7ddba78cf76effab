"""
facescan: BlazeFace face detection and recognition for photo libraries.
"""
from facescan.blazeface import BlazeFaceBack, BlazeFaceFront, ModelType, build_model
from facescan.config import FaceScanConfig, cfg_back, cfg_front, configure_logging
from facescan.errors import (
    ConfigurationError,
    DecodeError,
    FaceScanError,
    ImageNotFoundError,
    InferenceError,
    UnsupportedImageError,
)
from facescan.extractor import FaceExtractor
from facescan.orchestrator import BatchOrchestrator
from facescan.recognizer import FaceRecognizer
from facescan.repository import SqlRepository
from facescan.tasks import DetectFacesTask, RecognizeFacesTask

__version__ = "0.1.0"

__all__ = [
    "BatchOrchestrator",
    "BlazeFaceBack",
    "BlazeFaceFront",
    "ConfigurationError",
    "DecodeError",
    "DetectFacesTask",
    "FaceExtractor",
    "FaceRecognizer",
    "FaceScanConfig",
    "FaceScanError",
    "ImageNotFoundError",
    "InferenceError",
    "ModelType",
    "RecognizeFacesTask",
    "SqlRepository",
    "UnsupportedImageError",
    "build_model",
    "cfg_back",
    "cfg_front",
    "configure_logging",
]
