# blazeface.py
"""
BlazeFace model architectures for face detection.

Two fixed topologies share one detection head layout:
- Front (128x128 input, short range): backbone1 (11 blocks) -> 16x16x88,
  backbone2 (5 blocks) -> 8x8x96
- Back (256x256 input, long range): backbone (31 blocks) -> 16x16x96,
  final reduction block -> 8x8x96

Both produce 512 anchors from the 16x16 map (2 per cell) followed by 384
from the 8x8 map (6 per cell), the same order as the anchor tables.
"""
from __future__ import annotations

import enum
from typing import Optional, Tuple, Union

import torch
import torch.nn as nn
import torch.nn.functional as F

from facescan.anchors import anchors_for
from facescan.blazebase import BlazeBlock, FinalBlazeBlock
from facescan.blazedetector import BlazeDetector
from facescan.config import cfg_back, cfg_front
from facescan.errors import ConfigurationError
from facescan.weights import WeightStore


class ModelType(enum.Enum):
    FRONT = cfg_front['name']
    BACK = cfg_back['name']


class _BlazeFaceHeads(BlazeDetector):
    """Classifier/regressor 1x1 convs and the 896-anchor concat."""

    def _build_heads(self, channels_8: int, channels_16: int) -> None:
        self.classifier_8 = nn.Conv2d(channels_8, 2, 1, bias=True)
        self.classifier_16 = nn.Conv2d(channels_16, 6, 1, bias=True)

        self.regressor_8 = nn.Conv2d(channels_8, 32, 1, bias=True)
        self.regressor_16 = nn.Conv2d(channels_16, 96, 1, bias=True)

    def _heads(self, x: torch.Tensor, h: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        b = x.shape[0]

        c1 = self.classifier_8(x)       # (b, 2, 16, 16)
        c1 = c1.permute(0, 2, 3, 1)     # (b, 16, 16, 2)
        c1 = c1.reshape(b, -1, 1)       # (b, 512, 1)

        c2 = self.classifier_16(h)      # (b, 6, 8, 8)
        c2 = c2.permute(0, 2, 3, 1)     # (b, 8, 8, 6)
        c2 = c2.reshape(b, -1, 1)       # (b, 384, 1)

        c = torch.cat((c1, c2), dim=1)  # (b, 896, 1)

        r1 = self.regressor_8(x)        # (b, 32, 16, 16)
        r1 = r1.permute(0, 2, 3, 1)     # (b, 16, 16, 32)
        r1 = r1.reshape(b, -1, 16)      # (b, 512, 16)

        r2 = self.regressor_16(h)       # (b, 96, 8, 8)
        r2 = r2.permute(0, 2, 3, 1)     # (b, 8, 8, 96)
        r2 = r2.reshape(b, -1, 16)      # (b, 384, 16)

        r = torch.cat((r1, r2), dim=1)  # (b, 896, 16)
        return r, c


class BlazeFaceFront(_BlazeFaceHeads):
    """BlazeFace short range detector, 128x128 input."""

    def __init__(self, cfg: Optional[dict] = None):
        super(BlazeFaceFront, self).__init__(cfg if cfg is not None else cfg_front)

        self.backbone1 = nn.Sequential(
            nn.Conv2d(in_channels=3, out_channels=24, kernel_size=5, stride=2, padding=0, bias=True),
            nn.ReLU(inplace=True),

            BlazeBlock(24, 24),
            BlazeBlock(24, 28),
            BlazeBlock(28, 32, stride=2),
            BlazeBlock(32, 36),
            BlazeBlock(36, 42),
            BlazeBlock(42, 48, stride=2),
            BlazeBlock(48, 56),
            BlazeBlock(56, 64),
            BlazeBlock(64, 72),
            BlazeBlock(72, 80),
            BlazeBlock(80, 88),
        )

        self.backbone2 = nn.Sequential(
            BlazeBlock(88, 96, stride=2),
            BlazeBlock(96, 96),
            BlazeBlock(96, 96),
            BlazeBlock(96, 96),
            BlazeBlock(96, 96),
        )

        self._build_heads(88, 96)

    def forward(self, x):
        # TFLite uses asymmetric "same" padding before the first conv.
        x = F.pad(x, (1, 2, 1, 2), "constant", 0)

        x = self.backbone1(x)           # (b, 88, 16, 16)
        h = self.backbone2(x)           # (b, 96, 8, 8)

        return self._heads(x, h)


class BlazeFaceBack(_BlazeFaceHeads):
    """BlazeFace long range detector, 256x256 input."""

    def __init__(self, cfg: Optional[dict] = None):
        super(BlazeFaceBack, self).__init__(cfg if cfg is not None else cfg_back)

        self.backbone = nn.Sequential(
            nn.Conv2d(in_channels=3, out_channels=24, kernel_size=5, stride=2, padding=0, bias=True),
            nn.ReLU(inplace=True),

            *[BlazeBlock(24, 24) for _ in range(7)],
            BlazeBlock(24, 24, stride=2),
            *[BlazeBlock(24, 24) for _ in range(7)],
            BlazeBlock(24, 48, stride=2),
            *[BlazeBlock(48, 48) for _ in range(7)],
            BlazeBlock(48, 96, stride=2),
            *[BlazeBlock(96, 96) for _ in range(7)],
        )

        self.final = FinalBlazeBlock(96)

        self._build_heads(96, 96)

    def forward(self, x):
        x = F.pad(x, (1, 2, 1, 2), "constant", 0)

        x = self.backbone(x)            # (b, 96, 16, 16)
        h = self.final(x)               # (b, 96, 8, 8)

        return self._heads(x, h)


BlazeFace = Union[BlazeFaceFront, BlazeFaceBack]


def build_model(
    model_type: ModelType,
    weights: Optional[WeightStore] = None,
    cfg: Optional[dict] = None,
    anchors: Optional[torch.Tensor] = None,
    device: Union[str, torch.device] = 'cpu',
) -> BlazeFace:
    """
    Construct a detector variant, load its weights and attach its anchors.

    Args:
        model_type: which topology to build
        weights: store to read the variant's tensors from. Without one the
            network keeps its random initialisation.
        cfg: variant config, defaults to cfg_front / cfg_back
        anchors: (896, 4) table. Loaded from the weight directory, or
            generated, when omitted.
        device: torch device

    Raises:
        ConfigurationError: bad weights, bad anchors or unusable device
    """
    if model_type is ModelType.FRONT:
        model = BlazeFaceFront(cfg)
    elif model_type is ModelType.BACK:
        model = BlazeFaceBack(cfg)
    else:
        raise ConfigurationError(f"unknown model type {model_type!r}")

    try:
        model = model.to(device)
    except (RuntimeError, AssertionError) as exc:
        raise ConfigurationError(f"cannot place {model.name} on device {device!r}: {exc}") from exc

    if weights is not None:
        model.load_weights(weights.load_weights(model.name))

    if anchors is None:
        weights_dir = weights.weights_dir if weights is not None else None
        anchors = anchors_for(model.cfg, weights_dir, device)
    model.load_anchors(anchors)
    model.eval()
    return model
