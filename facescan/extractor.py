"""
Face extraction: run the detector variants over a picture, merge their
results and save a crop of each face.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
import torch

from facescan.blazedetector import denormalize_detections, resize_pad
from facescan.blazeface import BlazeFace, ModelType, build_model
from facescan.config import FaceScanConfig
from facescan.detection import Detection
from facescan.images import ImageLoader, crop, save_png, square_crop, thumbnail
from facescan.model import Face, PictureId, Rect
from facescan.nms import stack_detections, weighted_non_max_suppression
from facescan.weights import WeightStore

logger = logging.getLogger(__name__)

FALLBACK_MODEL_NAME = "blaze_face_back_tiled"


def face_directory(faces_dir: Union[str, Path], picture_id: int) -> Path:
    """One directory per picture, grouped 1000 pictures to a partition."""
    partition = f"{int(picture_id) // 1000:04d}"
    return Path(faces_dir) / partition / str(int(picture_id))


def deduplicate(
    primary: List[Detection],
    secondary: List[Detection],
    max_distance: float = 20.0,
) -> List[Detection]:
    """
    Secondary detections whose centre is not within max_distance pixels of
    any primary detection's centre.

    The variants see the picture at different scales, so overlap is judged
    by centre distance rather than IoU.
    """
    kept_centres = [d.center() for d in primary]
    survivors = []
    for detection in secondary:
        centre = detection.center()
        if any(centre.distance_to(k) <= max_distance for k in kept_centres):
            logger.debug("Dropping duplicate detection at (%.1f, %.1f)", centre.point.x, centre.point.y)
            continue
        survivors.append(detection)
    return survivors


class FaceExtractor:
    """
    Finds faces in pictures and saves their crops.

    The front (128px) model is the primary detector, the back (256px) model
    the secondary. An optional tiled pass of the back model runs only when
    both find nothing.
    """

    def __init__(
        self,
        config: FaceScanConfig,
        primary: BlazeFace,
        secondary: BlazeFace,
        loader: Optional[ImageLoader] = None,
    ):
        self.config = config
        self.primary = primary
        self.secondary = secondary
        self.loader = loader or ImageLoader()

    @classmethod
    def build(cls, config: FaceScanConfig, weights: Optional[WeightStore] = None) -> "FaceExtractor":
        """Load both detector variants.

        Raises:
            ConfigurationError: weights or anchors are missing or malformed
        """
        weights = weights or WeightStore(config.weights_dir)
        primary = build_model(
            ModelType.FRONT, weights,
            cfg=config.model_config(ModelType.FRONT.value), device=config.device,
        )
        secondary = build_model(
            ModelType.BACK, weights,
            cfg=config.model_config(ModelType.BACK.value), device=config.device,
        )
        return cls(config, primary, secondary)

    # =========================================================================
    # Detection
    # =========================================================================

    def _detect(self, model: BlazeFace, img: np.ndarray, scale: float, pad: Tuple[int, int]) -> List[Detection]:
        detections = model.predict_on_image(img).cpu()
        detections = denormalize_detections(detections, scale, pad)
        return [Detection.from_tensor(row) for row in detections]

    def detect(self, img: np.ndarray) -> List[Tuple[Detection, str]]:
        """
        All faces in an RGB image, in pixel coordinates, tagged with the
        name of the model that found them.

        Raises:
            InferenceError: a detector failed
        """
        img256, img128, scale, pad = resize_pad(img)

        primary = self._detect(self.primary, img128, scale, pad)
        secondary = self._detect(self.secondary, img256, scale, pad)
        logger.debug("%s found %d, %s found %d",
                     self.primary.name, len(primary), self.secondary.name, len(secondary))

        secondary = deduplicate(primary, secondary, self.config.dedup_distance_px)

        found = [(d, self.primary.name) for d in primary]
        found += [(d, self.secondary.name) for d in secondary]

        if not found and self.config.enable_fallback_detector:
            found = [(d, FALLBACK_MODEL_NAME) for d in self._detect_tiled(img)]

        return found

    def _detect_tiled(self, img: np.ndarray) -> List[Detection]:
        """Back model over overlapping square tiles, keeping only very confident faces."""
        img_h, img_w = img.shape[:2]
        overlap = self.config.fallback_tile_overlap
        tile = int(min(max(img_h, img_w) / 2.0 * (1.0 + overlap), img_h, img_w))
        if tile <= 0:
            return []
        step = max(1, int(tile * (1.0 - overlap)))

        rows = []
        for y in _tile_offsets(img_h, tile, step):
            for x in _tile_offsets(img_w, tile, step):
                region = np.ascontiguousarray(img[y:y + tile, x:x + tile])
                img256, _, scale, pad = resize_pad(region)
                detections = self.secondary.predict_on_image(img256).cpu()
                detections = denormalize_detections(detections, scale, pad)
                if detections.numel() == 0:
                    continue
                detections[:, 0:16:2] += y
                detections[:, 1:16:2] += x
                rows.append(detections[detections[:, 16] >= self.config.fallback_min_score])

        if not rows:
            return []
        merged = weighted_non_max_suppression(
            torch.cat(rows, dim=0), self.config.min_suppression_threshold
        )
        logger.debug("Tiled fallback found %d faces", len(merged))
        return [Detection.from_tensor(row) for row in stack_detections(merged)]

    # =========================================================================
    # Extraction
    # =========================================================================

    def extract_faces(self, picture_id: PictureId, image_path: Union[str, Path]) -> List[Face]:
        """
        Detect faces in a picture and save a thumbnail and a bounds crop of each.

        Crops are written as <index>_<model>_thumbnail.png and
        <index>_<model>_original.png, where index counts faces per model.

        Returns:
            Unsaved Face records, an empty list when there are no faces.

        Raises:
            DecodeError: the picture could not be read
            InferenceError: a detector failed
        """
        logger.info("Detecting faces in %s", image_path)
        img = self.loader.decode(image_path)
        img_h, img_w = img.shape[:2]

        found = self.detect(img)
        logger.debug("Picture %s has %d faces", int(picture_id), len(found))
        if not found:
            return []

        base_path = face_directory(self.config.faces_dir, picture_id)
        base_path.mkdir(parents=True, exist_ok=True)

        faces = []
        counters = {}
        for detection, model_name in found:
            index = counters.get(model_name, 0)
            counters[model_name] = index + 1

            box = detection.bbox
            centre = detection.center().point.as_xy()

            x, y, edge = square_crop(
                centre, box.width, box.height, img_w, img_h, self.config.thumbnail_scale
            )
            thumbnail_path = base_path / f"{index}_{model_name}_thumbnail.png"
            save_png(thumbnail(crop(img, x, y, edge, edge), self.config.thumbnail_size), thumbnail_path)

            bounds = Rect(x=box.x_min, y=box.y_min, width=box.width, height=box.height)
            bounds_path = base_path / f"{index}_{model_name}_original.png"
            save_png(crop(img, bounds.x, bounds.y, bounds.width, bounds.height), bounds_path)

            faces.append(self._to_face(picture_id, detection, model_name, bounds,
                                       thumbnail_path, bounds_path))

        return faces

    @staticmethod
    def _to_face(picture_id, detection: Detection, model_name: str, bounds: Rect,
                 thumbnail_path: Path, bounds_path: Path) -> Face:
        landmarks = detection.landmarks
        points = {}
        if landmarks is not None:
            points = dict(
                right_eye=landmarks.right_eye.as_xy(),
                left_eye=landmarks.left_eye.as_xy(),
                nose=landmarks.nose.as_xy(),
                mouth=landmarks.mouth.as_xy(),
                right_ear=landmarks.right_ear.as_xy(),
                left_ear=landmarks.left_ear.as_xy(),
            )
        return Face(
            picture_id=PictureId(picture_id),
            bounds=bounds,
            thumbnail_path=thumbnail_path,
            bounds_path=bounds_path,
            confidence=detection.score,
            model_name=model_name,
            **points,
        )


def _tile_offsets(length: int, tile: int, step: int) -> List[int]:
    """Start offsets covering [0, length) with tiles of the given size."""
    if tile >= length:
        return [0]
    offsets = list(range(0, length - tile + 1, step))
    last = length - tile
    if offsets[-1] != last:
        offsets.append(last)
    return offsets
