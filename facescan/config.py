# config.py
"""
Configuration for the facescan pipeline.

Two layers:
- cfg_front / cfg_back: fixed per-variant detector constants (input size,
  decode scales, score thresholds) in the same dict style as the detector
  configs they come from.
- FaceScanConfig: runtime settings for a library (paths, worker count,
  feature switches), with optional FACESCAN_* environment overrides.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from facescan.errors import ConfigurationError


# =============================================================================
# BlazeFace Front Configuration (128x128 input, short range)
# =============================================================================
cfg_front = {
    'name': 'blaze_face_front',
    'input_size': 128,
    'anchor_strides': [8, 16, 16, 16],
    'feature_maps': [[16, 16], [8, 8]],
    'anchors_per_cell': [2, 6],
    'num_anchors': 896,
    'num_coords': 16,
    'num_classes': 1,
    'num_keypoints': 6,

    # Decode divisors: raw regression values are in input-pixel units
    'x_scale': 128.0,
    'y_scale': 128.0,
    'h_scale': 128.0,
    'w_scale': 128.0,

    'score_clipping_thresh': 100.0,
    'min_score_thresh': 0.75,
    'min_suppression_threshold': 0.3,
}

# =============================================================================
# BlazeFace Back Configuration (256x256 input, long range)
# =============================================================================
cfg_back = {
    'name': 'blaze_face_back',
    'input_size': 256,
    'anchor_strides': [16, 32, 32, 32],
    'feature_maps': [[16, 16], [8, 8]],
    'anchors_per_cell': [2, 6],
    'num_anchors': 896,
    'num_coords': 16,
    'num_classes': 1,
    'num_keypoints': 6,

    'x_scale': 256.0,
    'y_scale': 256.0,
    'h_scale': 256.0,
    'w_scale': 256.0,

    'score_clipping_thresh': 100.0,
    'min_score_thresh': 0.65,
    'min_suppression_threshold': 0.3,
}

# MediaPipe SSD anchor options shared by both variants (fixed anchor size).
anchor_options = {
    'num_layers': 4,
    'min_scale': 0.1484375,
    'max_scale': 0.75,
    'offset_x': 0.5,
    'offset_y': 0.5,
    'aspect_ratios': [1.0],
    'reduce_boxes_in_lowest_layer': False,
    'interpolated_scale_aspect_ratio': 1.0,
    'fixed_anchor_size': True,
}

# Keypoint order in the 16-value regression vector, after the 4 box values.
KEYPOINT_NAMES = ('right_eye', 'left_eye', 'nose', 'mouth', 'right_ear', 'left_ear')


def variant_config(name: str, **overrides) -> dict:
    """Return a copy of a variant config with selected keys replaced.

    Args:
        name: 'blaze_face_front' or 'blaze_face_back'
        **overrides: keys to replace, e.g. min_score_thresh=0.9

    Raises:
        ConfigurationError: unknown variant or unknown key
    """
    if name == cfg_front['name']:
        cfg = dict(cfg_front)
    elif name == cfg_back['name']:
        cfg = dict(cfg_back)
    else:
        raise ConfigurationError(f"unknown model variant {name!r}")

    for key, value in overrides.items():
        if key not in cfg:
            raise ConfigurationError(f"unknown config key {key!r} for {name}")
        cfg[key] = value
    return cfg


# =============================================================================
# Runtime settings
# =============================================================================

@dataclass
class FaceScanConfig:
    """Settings for one photo library.

    Attributes
    ----------
    data_dir:
        Root for generated files. Face crops go under ``data_dir/photo_faces``.
    weights_dir:
        Directory holding ``<variant>.pth`` weights and ``<variant>_anchors.npy``.
    database_path:
        SQLite file for the repository. ``None`` means in-memory.
    workers:
        Thread pool size for per-picture work. Defaults to the CPU count.
    """
    data_dir: Path = Path(".")
    weights_dir: Path = Path("weights")
    database_path: Optional[Path] = None
    device: str = "cpu"
    workers: int = field(default_factory=lambda: os.cpu_count() or 1)

    front_min_score_thresh: float = cfg_front['min_score_thresh']
    back_min_score_thresh: float = cfg_back['min_score_thresh']
    min_suppression_threshold: float = 0.3

    dedup_distance_px: float = 20.0
    thumbnail_scale: float = 1.6
    thumbnail_size: int = 200

    enable_fallback_detector: bool = False
    fallback_min_score: float = 0.95
    fallback_tile_overlap: float = 0.25

    face_detection_enabled: bool = True

    recognition_threshold: float = 0.35
    ambiguity_epsilon: float = 0.02
    sface_model_path: Optional[Path] = None

    @property
    def faces_dir(self) -> Path:
        return Path(self.data_dir) / "photo_faces"

    def model_config(self, name: str) -> dict:
        """Variant config with this library's thresholds applied."""
        if name == cfg_front['name']:
            thresh = self.front_min_score_thresh
        else:
            thresh = self.back_min_score_thresh
        return variant_config(
            name,
            min_score_thresh=thresh,
            min_suppression_threshold=self.min_suppression_threshold,
        )

    @classmethod
    def from_env(cls, environ=None, **kwargs) -> "FaceScanConfig":
        """Build a config, letting FACESCAN_* environment variables override fields.

        Recognised variables: FACESCAN_DATA_DIR, FACESCAN_WEIGHTS_DIR,
        FACESCAN_DATABASE, FACESCAN_DEVICE, FACESCAN_WORKERS,
        FACESCAN_FALLBACK (1/0), FACESCAN_FACE_DETECTION (1/0).
        """
        env = os.environ if environ is None else environ
        config = cls(**kwargs)
        updates = {}
        if "FACESCAN_DATA_DIR" in env:
            updates["data_dir"] = Path(env["FACESCAN_DATA_DIR"])
        if "FACESCAN_WEIGHTS_DIR" in env:
            updates["weights_dir"] = Path(env["FACESCAN_WEIGHTS_DIR"])
        if "FACESCAN_DATABASE" in env:
            updates["database_path"] = Path(env["FACESCAN_DATABASE"])
        if "FACESCAN_DEVICE" in env:
            updates["device"] = env["FACESCAN_DEVICE"]
        if "FACESCAN_WORKERS" in env:
            try:
                updates["workers"] = max(1, int(env["FACESCAN_WORKERS"]))
            except ValueError as exc:
                raise ConfigurationError(
                    f"FACESCAN_WORKERS must be an integer, got {env['FACESCAN_WORKERS']!r}"
                ) from exc
        if "FACESCAN_FALLBACK" in env:
            updates["enable_fallback_detector"] = _env_flag(env["FACESCAN_FALLBACK"])
        if "FACESCAN_FACE_DETECTION" in env:
            updates["face_detection_enabled"] = _env_flag(env["FACESCAN_FACE_DETECTION"])
        return replace(config, **updates)


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def configure_logging(level=logging.INFO) -> None:
    """Basic console logging for applications embedding the pipeline."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
