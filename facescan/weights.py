"""
Weight store: named tensors for each detector variant.

Weights are PyTorch state dicts saved as <weights_dir>/<variant>.pth using
the MediaPipe/BlazeFace-PyTorch export names (backbone1.0.weight,
backbone1.2.convs.0.weight, ..., classifier_8.weight, ...).
"""
from __future__ import annotations

import logging
import pickle
from pathlib import Path
from typing import Dict, Mapping, Tuple, Union

import torch

from facescan.errors import ConfigurationError

logger = logging.getLogger(__name__)


class WeightStore:
    """Loads state dicts by variant name and caches them for reuse across workers."""

    def __init__(self, weights_dir: Union[str, Path]):
        self.weights_dir = Path(weights_dir)
        self._cache: Dict[str, Dict[str, torch.Tensor]] = {}

    def path_for(self, variant_name: str) -> Path:
        return self.weights_dir / f"{variant_name}.pth"

    def load_weights(self, variant_name: str) -> Mapping[str, torch.Tensor]:
        """
        Load the state dict for a variant.

        Raises:
            ConfigurationError: missing file, unreadable file, or a file that
                does not hold a mapping of names to tensors
        """
        if variant_name in self._cache:
            return self._cache[variant_name]

        path = self.path_for(variant_name)
        if not path.is_file():
            raise ConfigurationError(f"weights for {variant_name} not found at {path}")

        try:
            state = torch.load(path, map_location='cpu', weights_only=True)
        except (OSError, RuntimeError, EOFError, ValueError, pickle.UnpicklingError) as exc:
            raise ConfigurationError(f"could not load weights from {path}: {exc}") from exc

        if not isinstance(state, Mapping):
            raise ConfigurationError(f"{path} does not contain a state dict")
        for name, tensor in state.items():
            if not isinstance(tensor, torch.Tensor):
                raise ConfigurationError(f"{path}: entry {name!r} is not a tensor")

        logger.info("Loaded %d tensors for %s from %s", len(state), variant_name, path)
        self._cache[variant_name] = dict(state)
        return self._cache[variant_name]

    def describe(self, variant_name: str) -> Dict[str, Tuple[Tuple[int, ...], torch.dtype]]:
        """Shape and dtype of every tensor in a variant's weights."""
        return {
            name: (tuple(tensor.shape), tensor.dtype)
            for name, tensor in self.load_weights(variant_name).items()
        }


class InMemoryWeightStore(WeightStore):
    """Weight store over state dicts already in memory."""

    def __init__(self, states: Mapping[str, Mapping[str, torch.Tensor]]):
        super().__init__(Path("."))
        self._cache = {name: dict(state) for name, state in states.items()}

    def load_weights(self, variant_name: str) -> Mapping[str, torch.Tensor]:
        if variant_name not in self._cache:
            raise ConfigurationError(f"no weights registered for {variant_name}")
        return self._cache[variant_name]
