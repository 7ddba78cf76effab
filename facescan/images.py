"""
Image decoding, cropping and saving for face extraction.

Images are handled as RGB uint8 arrays of shape (H, W, 3).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from facescan.errors import ImageNotFoundError, UnsupportedImageError

logger = logging.getLogger(__name__)


class ImageLoader:
    """Decodes pictures from disk.

    OpenCV handles the common formats. Pillow is tried next for anything
    OpenCV can't open (some TIFF/GIF/WebP variants).
    """

    def decode(self, path: Union[str, Path]) -> np.ndarray:
        """
        Args:
            path: picture file

        Returns:
            (H, W, 3) RGB uint8 array

        Raises:
            ImageNotFoundError: no file at path
            UnsupportedImageError: the file exists but can't be decoded
        """
        path = Path(path)
        if not path.is_file():
            raise ImageNotFoundError(path)

        try:
            img = cv2.imread(str(path), cv2.IMREAD_COLOR)
        except cv2.error as exc:
            raise UnsupportedImageError(path, str(exc)) from exc
        if img is not None:
            return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)

        logger.debug("OpenCV could not decode %s, trying Pillow", path)
        try:
            with Image.open(path) as pil_img:
                rgb = pil_img.convert("RGB")
                img = np.asarray(rgb, dtype=np.uint8).copy()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise UnsupportedImageError(path, str(exc)) from exc

        if img.ndim != 3 or img.shape[0] == 0 or img.shape[1] == 0:
            raise UnsupportedImageError(path, "empty image")
        return img


def square_crop(
    centre: Tuple[float, float],
    box_width: float,
    box_height: float,
    image_width: int,
    image_height: int,
    scale: float = 1.6,
) -> Tuple[int, int, int]:
    """
    Square region around a face, enlarged to take in the whole head.

    The edge is scale x the longer box side. It shrinks, staying centred,
    until it fits inside the image, and never starts at a negative offset.

    Args:
        centre: (x, y) face centre in pixels
        box_width, box_height: face bounding box size in pixels
        image_width, image_height: picture size

    Returns:
        (x, y, edge) in whole pixels; edge may be 0 for faces on the border
    """
    centre_x, centre_y = centre
    half = max(box_width, box_height) * scale / 2.0

    half = min(half, image_width - centre_x, image_height - centre_y, centre_x, centre_y)
    half = max(half, 0.0)

    x = max(centre_x - half, 0.0)
    y = max(centre_y - half, 0.0)
    edge = half * 2.0

    x_i = int(x)
    y_i = int(y)
    edge_i = int(min(edge, image_width - x_i, image_height - y_i))
    return x_i, y_i, max(edge_i, 0)


def crop(img: np.ndarray, x: float, y: float, width: float, height: float) -> np.ndarray:
    """Crop a pixel rectangle, clamped to the image bounds."""
    img_h, img_w = img.shape[:2]
    x0 = min(max(int(x), 0), img_w)
    y0 = min(max(int(y), 0), img_h)
    x1 = min(max(int(x + width), x0), img_w)
    y1 = min(max(int(y + height), y0), img_h)
    return img[y0:y1, x0:x1]


def thumbnail(img: np.ndarray, size: int = 200) -> np.ndarray:
    """Shrink to fit within size x size, keeping the aspect ratio. Never enlarges."""
    h, w = img.shape[:2]
    if h == 0 or w == 0 or (h <= size and w <= size):
        return img
    ratio = min(size / w, size / h)
    new_w = max(1, int(round(w * ratio)))
    new_h = max(1, int(round(h * ratio)))
    return cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)


def save_png(img: np.ndarray, path: Union[str, Path]) -> bool:
    """Write an RGB array as PNG. Returns False for empty crops or failed writes."""
    if img.size == 0:
        logger.warning("Not saving empty crop to %s", path)
        return False
    ok = cv2.imwrite(str(path), cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
    if not ok:
        logger.warning("Failed writing %s", path)
    return bool(ok)
