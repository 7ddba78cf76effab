import logging
from typing import Mapping

import torch
import torch.nn as nn
import torch.nn.functional as F

from facescan.errors import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Model Building Blocks
# =============================================================================

class BlazeBlock(nn.Module):
    """
    BlazeBlock with BatchNorm folded into the conv weights, matching the
    pretrained MediaPipe export.

    - DepthwiseConv2D 3x3 -> Conv2D 1x1 -> Add -> ReLU
    - stride 2: the depthwise conv input is padded (0, 2, 0, 2) and the
      residual branch is max-pooled from the unpadded input
    - extra output channels are zero-padded onto the residual, never learned
    """
    def __init__(self, in_channels, out_channels, kernel_size=3, stride=1):
        super(BlazeBlock, self).__init__()

        self.stride = stride
        self.kernel_size = kernel_size
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.channel_pad = out_channels - in_channels

        # TFLite uses slightly different padding than PyTorch
        # on the depthwise conv layer when the stride is 2.
        if stride == 2:
            self.max_pool = nn.MaxPool2d(kernel_size=stride, stride=stride)
            padding = 0
        else:
            padding = (kernel_size - 1) // 2

        self.convs = nn.Sequential(
            nn.Conv2d(in_channels=in_channels, out_channels=in_channels,
                      kernel_size=kernel_size, stride=stride, padding=padding,
                      groups=in_channels, bias=True),
            nn.Conv2d(in_channels=in_channels, out_channels=out_channels,
                      kernel_size=1, stride=1, padding=0, bias=True),
        )

        self.act = nn.ReLU(inplace=True)

    def forward(self, x):
        if self.stride == 2:
            h = F.pad(x, (0, 2, 0, 2), "constant", 0)
            x = self.max_pool(x)
        else:
            h = x

        if self.channel_pad > 0:
            x = F.pad(x, (0, 0, 0, 0, 0, self.channel_pad), "constant", 0)

        return self.act(self.convs(h) + x)


class FinalBlazeBlock(nn.Module):
    """Stride-2 depthwise + pointwise reduction with no residual (back model only)."""
    def __init__(self, channels, kernel_size=3):
        super(FinalBlazeBlock, self).__init__()

        self.convs = nn.Sequential(
            nn.Conv2d(in_channels=channels, out_channels=channels,
                      kernel_size=kernel_size, stride=2, padding=0,
                      groups=channels, bias=True),
            nn.Conv2d(in_channels=channels, out_channels=channels,
                      kernel_size=1, stride=1, padding=0, bias=True),
        )

        self.act = nn.ReLU(inplace=True)

    def forward(self, x):
        h = F.pad(x, (0, 2, 0, 2), "constant", 0)

        return self.act(self.convs(h))


# =============================================================================
# Base class
# =============================================================================

class BlazeBase(nn.Module):
    """ Base class for media pipe models. """

    def _device(self):
        """Which device (CPU or GPU) is being used by this model?"""
        return next(self.parameters()).device

    def load_weights(self, state: Mapping[str, torch.Tensor]) -> None:
        """
        Load a MediaPipe-exported state dict after checking every tensor.

        Each parameter the network declares must be present with exactly the
        declared shape, (out_ch, in_ch/groups, kh, kw) for conv weights and
        (out_ch,) for biases, and a floating point dtype. Names the network
        does not declare are rejected too. Nothing is zero-filled.

        Raises:
            ConfigurationError: on any missing, unexpected or mismatched tensor
        """
        expected = self.state_dict()
        problems = []

        for name, param in expected.items():
            if name not in state:
                problems.append(f"missing {name} {tuple(param.shape)}")
                continue
            tensor = state[name]
            if tuple(tensor.shape) != tuple(param.shape):
                problems.append(
                    f"{name}: expected shape {tuple(param.shape)}, got {tuple(tensor.shape)}"
                )
            elif not torch.is_floating_point(tensor):
                problems.append(f"{name}: expected a floating point tensor, got {tensor.dtype}")
            elif not torch.isfinite(tensor).all():
                problems.append(f"{name}: contains non-finite values")

        for name in state:
            if name not in expected:
                problems.append(f"unexpected {name}")

        if problems:
            raise ConfigurationError(
                f"{type(self).__name__} weights do not match the network: " + "; ".join(problems)
            )

        device = self._device()
        dtype = next(self.parameters()).dtype
        converted = {name: state[name].to(device=device, dtype=dtype) for name in expected}
        self.load_state_dict(converted, strict=True)
        self.eval()
        logger.debug("Loaded %d tensors into %s", len(converted), type(self).__name__)
