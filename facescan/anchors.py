"""
Anchor tables for the BlazeFace detectors.

Each variant uses 896 anchors: a 16x16 grid with 2 anchors per cell (512)
followed by an 8x8 grid with 6 anchors per cell (384). Rows are
(y_center, x_center, height, width) in normalised [0, 1] coordinates, which
is the order the decoder reads them in.

Tables ship as <variant>_anchors.npy. generate_anchors() rebuilds the same
table from the MediaPipe SSD anchor options when no file is available.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import torch

from facescan.config import anchor_options
from facescan.errors import ConfigurationError

logger = logging.getLogger(__name__)

NUM_ANCHORS = 896


def _calculate_scale(min_scale: float, max_scale: float, stride_index: int, num_strides: int) -> float:
    if num_strides == 1:
        return (min_scale + max_scale) * 0.5
    return min_scale + (max_scale - min_scale) * stride_index / (num_strides - 1.0)


def generate_anchors(cfg: dict, options: Optional[dict] = None) -> torch.Tensor:
    """
    Generate the SSD anchor table for a detector variant.

    Follows mediapipe/calculators/tflite/ssd_anchors_calculator.cc. Layers
    sharing a stride are merged into one grid, so strides [8, 16, 16, 16]
    on a 128px input give 2 anchors per 16x16 cell and 6 per 8x8 cell.

    Args:
        cfg: variant config with 'input_size' and 'anchor_strides'
        options: SSD anchor options (defaults to config.anchor_options)

    Returns:
        (896, 4) float32 tensor of (y_center, x_center, h, w)
    """
    options = options or anchor_options
    strides = cfg['anchor_strides']
    input_size = cfg['input_size']
    num_layers = len(strides)

    anchors: List[List[float]] = []
    layer_id = 0
    while layer_id < num_layers:
        anchor_height = []
        anchor_width = []
        aspect_ratios = []
        scales = []

        last_same_stride_layer = layer_id
        while (last_same_stride_layer < num_layers
               and strides[last_same_stride_layer] == strides[layer_id]):
            scale = _calculate_scale(options['min_scale'], options['max_scale'],
                                     last_same_stride_layer, num_layers)
            if last_same_stride_layer == 0 and options['reduce_boxes_in_lowest_layer']:
                aspect_ratios.extend([1.0, 2.0, 0.5])
                scales.extend([0.1, scale, scale])
            else:
                for aspect_ratio in options['aspect_ratios']:
                    aspect_ratios.append(aspect_ratio)
                    scales.append(scale)
                if options['interpolated_scale_aspect_ratio'] > 0.0:
                    if last_same_stride_layer == num_layers - 1:
                        scale_next = 1.0
                    else:
                        scale_next = _calculate_scale(options['min_scale'], options['max_scale'],
                                                      last_same_stride_layer + 1, num_layers)
                    scales.append(np.sqrt(scale * scale_next))
                    aspect_ratios.append(options['interpolated_scale_aspect_ratio'])
            last_same_stride_layer += 1

        for scale, aspect_ratio in zip(scales, aspect_ratios):
            ratio_sqrt = np.sqrt(aspect_ratio)
            anchor_height.append(scale / ratio_sqrt)
            anchor_width.append(scale * ratio_sqrt)

        stride = strides[layer_id]
        feature_map_size = int(np.ceil(input_size / stride))

        for y in range(feature_map_size):
            for x in range(feature_map_size):
                for anchor_id in range(len(anchor_height)):
                    x_center = (x + options['offset_x']) / feature_map_size
                    y_center = (y + options['offset_y']) / feature_map_size
                    if options['fixed_anchor_size']:
                        anchors.append([y_center, x_center, 1.0, 1.0])
                    else:
                        anchors.append([y_center, x_center,
                                        anchor_height[anchor_id], anchor_width[anchor_id]])

        layer_id = last_same_stride_layer

    table = torch.tensor(anchors, dtype=torch.float32)
    validate_anchors(table, source=f"generated anchors for {cfg['name']}")
    return table


def validate_anchors(anchors: torch.Tensor, source: str = "anchors") -> None:
    """Raise ConfigurationError unless the table is a finite (896, 4) float tensor."""
    if tuple(anchors.shape) != (NUM_ANCHORS, 4):
        raise ConfigurationError(
            f"{source}: expected anchor table of shape ({NUM_ANCHORS}, 4), got {tuple(anchors.shape)}"
        )
    if not torch.is_floating_point(anchors):
        raise ConfigurationError(f"{source}: anchor table must be floating point, got {anchors.dtype}")
    if not torch.isfinite(anchors).all():
        raise ConfigurationError(f"{source}: anchor table contains non-finite values")


def load_anchors(path: Union[str, Path], device: Union[str, torch.device] = "cpu") -> torch.Tensor:
    """
    Load and validate a shipped anchor table.

    Args:
        path: .npy file holding a (896, 4) array
        device: device to place the table on

    Raises:
        ConfigurationError: the file is missing, unreadable or has the wrong shape
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"anchor table not found: {path}")
    try:
        array = np.load(path)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"could not read anchor table {path}: {exc}") from exc

    anchors = torch.from_numpy(np.ascontiguousarray(array))
    validate_anchors(anchors, source=str(path))
    return anchors.float().to(device)


def anchors_for(cfg: dict, weights_dir: Optional[Union[str, Path]] = None,
                device: Union[str, torch.device] = "cpu") -> torch.Tensor:
    """Shipped table for a variant if present in weights_dir, generated otherwise."""
    if weights_dir is not None:
        path = Path(weights_dir) / f"{cfg['name']}_anchors.npy"
        if path.exists():
            return load_anchors(path, device)
        logger.debug("No anchor file at %s, generating anchors for %s", path, cfg['name'])
    return generate_anchors(cfg).to(device)
