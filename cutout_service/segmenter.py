"""
External segmenter interface and the bundled TorchScript implementation.

A segmenter is a caller-owned resource:
 - `initialize()` loads the model (long latency, awaited once),
 - `segment(pixels)` returns zero or more raw subject masks,
 - `dispose()` releases the model.

The pipeline never holds a global model instance; it receives the segmenter
it should use, which keeps tests free to inject fakes.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from pathlib import Path
from threading import Lock
from typing import List, Optional

import numpy as np
import torch
import torch.nn.functional as F

from .errors import SegmenterUnavailableError
from .external_mask import FlatFloatArray, RawMask
from .preprocessing import prepare_segmenter_input, validate_pixels

logger = logging.getLogger(__name__)


def select_device() -> torch.device:
    """CUDA, then Apple MPS, then CPU."""
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


class ExternalSegmenter(abc.ABC):
    """Produces raw subject masks for a Pixel Buffer."""

    @property
    @abc.abstractmethod
    def is_ready(self) -> bool:
        ...

    @abc.abstractmethod
    async def initialize(self) -> None:
        ...

    @abc.abstractmethod
    async def segment(self, pixels: np.ndarray) -> List[RawMask]:
        ...

    def dispose(self) -> None:
        """Release model resources. Default: nothing to release."""


class TorchScriptSegmenter(ExternalSegmenter):
    """
    Matting/segmentation network exported with TorchScript.

    The model takes a normalized (1, 3, H, W) tensor in [-1, 1] and returns a
    (1, 1, h, w) matte, or a tuple whose last element is that matte.
    """

    def __init__(
        self,
        model_path: Path,
        max_long_edge: int = 1024,
        device: Optional[torch.device] = None,
    ) -> None:
        self.model_path = Path(model_path)
        self.max_long_edge = max_long_edge
        self.device = device or select_device()
        self._model: Optional[torch.nn.Module] = None
        self._lock = Lock()

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    def _load(self) -> torch.nn.Module:
        if not self.model_path.exists():
            raise FileNotFoundError(f"Segmenter model not found at {self.model_path}")
        logger.info("Loading TorchScript segmenter from %s", self.model_path)
        model = torch.jit.load(str(self.model_path), map_location=self.device)
        model.eval()
        return model

    async def initialize(self) -> None:
        if self._model is not None:
            return
        model = await asyncio.to_thread(self._load)
        with self._lock:
            if self._model is None:
                self._model = model
        logger.info("Segmenter loaded on device: %s", self.device)

    def _infer(self, pixels: np.ndarray) -> List[RawMask]:
        model = self._model
        if model is None:
            raise SegmenterUnavailableError("segmenter used before initialize()")
        h, w = validate_pixels(pixels)
        prepared = prepare_segmenter_input(pixels, self.max_long_edge, self.device)
        with torch.no_grad():
            output = model(prepared.tensor)
        if isinstance(output, (tuple, list)):
            output = output[-1]
        if output.dim() == 3:
            output = output.unsqueeze(1)
        matte = F.interpolate(output, size=(h, w), mode="bilinear", align_corners=False)
        values = matte[0, 0].detach().cpu().numpy().astype(np.float32)
        logger.debug("segmenter: input %s -> matte mean %.4f", prepared.resized_size, float(values.mean()))
        return [FlatFloatArray(values=np.clip(values, 0.0, 1.0), width=w, height=h)]

    async def segment(self, pixels: np.ndarray) -> List[RawMask]:
        if not self.is_ready:
            raise SegmenterUnavailableError("segmenter used before initialize()")
        return await asyncio.to_thread(self._infer, pixels)

    def dispose(self) -> None:
        with self._lock:
            self._model = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        logger.info("Segmenter disposed")
