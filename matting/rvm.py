"""
Robust Video Matting model runner.

Holds the loaded graph, the four recurrent-state tensors and the downsample
ratio they were computed with. Changing the ratio between two ``predict``
calls resets the recurrent state before the next inference.
"""

import logging
import os
import urllib.request
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch
import torchvision.transforms.functional as TF

from matting import postprocess

logger = logging.getLogger(__name__)

RELEASE_URL = "https://github.com/PeterL1n/RobustVideoMatting/releases/download/v1.0.0/"
RELEASE_ARTIFACTS = (
    "rvm_mobilenetv3_fp32.torchscript",
    "rvm_mobilenetv3_fp16.torchscript",
    "rvm_resnet50_fp32.torchscript",
    "rvm_resnet50_fp16.torchscript",
)
HUB_REPO = "PeterL1n/RobustVideoMatting"
HUB_VARIANTS = ("mobilenetv3", "resnet50")
DEFAULT_MODEL = "models/rvm_mobilenetv3_fp32.torchscript"


class ModelLoadError(RuntimeError):
    """The model artifact is missing, unknown or could not be loaded."""


class InferenceError(RuntimeError):
    """A forward pass failed."""


@dataclass
class SegmentationConfig:
    """Model path, downsample ratio and output mode.

    ``mode`` is one of ``default`` (RGBA), ``alpha``, ``foreground`` or
    ``state`` (recurrent state ``r{state_index}`` as a debug tile).
    """

    model_path: str = DEFAULT_MODEL
    ratio: float = 0.5
    mode: str = "default"
    state_index: int = 1

    def __post_init__(self):
        validate_ratio(self.ratio)
        if self.mode not in postprocess.MODES:
            raise ValueError(f"Unknown segmentation mode: {self.mode!r}")
        if self.state_index not in (1, 2, 3, 4):
            raise ValueError(f"state_index must be 1..4, got {self.state_index}")


def validate_ratio(ratio: float) -> float:
    if not 0 < ratio <= 1:
        raise ValueError(f"downsample ratio must be in (0, 1], got {ratio}")
    return ratio


@dataclass
class RecurrentState:
    """Hidden tensors r1..r4 carried from one frame to the next.

    ``None`` in a slot is the zero baseline: the network expands a missing
    state into zeros of the right shape on its first step.
    """

    r1: Optional[torch.Tensor] = None
    r2: Optional[torch.Tensor] = None
    r3: Optional[torch.Tensor] = None
    r4: Optional[torch.Tensor] = None

    @classmethod
    def zeros(cls) -> "RecurrentState":
        return cls()

    def __getitem__(self, index: int) -> Optional[torch.Tensor]:
        if index not in (1, 2, 3, 4):
            raise IndexError(f"recurrent state index must be 1..4, got {index}")
        return getattr(self, f"r{index}")

    def as_list(self) -> list:
        return [self.r1, self.r2, self.r3, self.r4]

    def is_zero(self) -> bool:
        return all(r is None for r in self.as_list())

    def tensor_count(self) -> int:
        return sum(1 for r in self.as_list() if r is not None)


@dataclass
class Prediction:
    fgr: torch.Tensor
    pha: torch.Tensor
    state: RecurrentState


class RVMSession:
    """A loaded RVM graph plus the recurrent state it carries between frames."""

    def __init__(self, model, device: torch.device, ratio: float = 0.5, fp16: bool = False):
        self.model = model
        self.device = device
        self.fp16 = fp16 and device.type == "cuda"
        self.ratio = validate_ratio(ratio)
        self.state = RecurrentState.zeros()
        self.frames = 0

    def reset(self, ratio: Optional[float] = None):
        """Drop the current recurrent state (and optionally switch ratio)."""
        if ratio is not None:
            self.ratio = validate_ratio(ratio)
        self._replace_state(RecurrentState.zeros())
        logger.debug("Recurrent state reset (ratio=%.3f)", self.ratio)

    def _replace_state(self, new_state: RecurrentState):
        old, self.state = self.state, new_state
        del old

    def live_tensors(self) -> int:
        return self.state.tensor_count()

    def to_input(self, frame: np.ndarray) -> torch.Tensor:
        """HxWx3 uint8 RGB frame -> [1,3,H,W] float in [0,1] on the session device."""
        src = TF.to_tensor(frame).unsqueeze(0).to(self.device, non_blocking=True)
        if self.fp16:
            src = src.half()
        return src

    def predict(self, frame: np.ndarray, config: SegmentationConfig) -> Prediction:
        """Run one forward pass and carry the new recurrent state."""
        if config.ratio != self.ratio:
            logger.info("Downsample ratio %.3f -> %.3f, resetting recurrent state",
                        self.ratio, config.ratio)
            self.reset(config.ratio)

        src = self.to_input(frame)
        try:
            with torch.inference_mode():
                fgr, pha, *rec = self.model(src, *self.state.as_list(), self.ratio)
        except Exception as e:
            raise InferenceError(f"RVM forward pass failed: {e}") from e
        del src

        self._replace_state(RecurrentState(*rec))
        self.frames += 1
        return Prediction(fgr=fgr, pha=pha, state=self.state)

    def segment(self, frame: np.ndarray, config: SegmentationConfig) -> np.ndarray:
        """Predict and render ``config.mode`` to an HxWx4 uint8 buffer."""
        prediction = self.predict(frame, config)
        return postprocess.render(prediction, config)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def resolve_device(name: str = "auto") -> torch.device:
    if name == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(name)


def _download(artifact: str, target: str):
    os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
    url = RELEASE_URL + artifact
    logger.info("Downloading %s ...", url)
    try:
        urllib.request.urlretrieve(url, target)
    except OSError as e:
        raise ModelLoadError(f"Could not download {url}: {e}") from e
    logger.info("Model weights downloaded to %s", target)


def _load_graph(model_path: str, device: torch.device):
    if os.path.isfile(model_path):
        return torch.jit.load(model_path, map_location=device)

    if model_path in HUB_VARIANTS:
        return torch.hub.load(HUB_REPO, model_path).to(device)

    artifact = os.path.basename(model_path)
    if artifact in RELEASE_ARTIFACTS:
        _download(artifact, model_path)
        return torch.jit.load(model_path, map_location=device)

    raise ModelLoadError(
        f"Model not found: {model_path} "
        f"(expected a TorchScript file, one of {HUB_VARIANTS} or one of {RELEASE_ARTIFACTS})"
    )


def load(config: SegmentationConfig, device: Optional[torch.device] = None,
         fp16: bool = False) -> RVMSession:
    """Load the RVM graph named by ``config.model_path`` and start a session."""
    device = device or resolve_device()

    if device.type == "cuda":
        torch.backends.cudnn.benchmark = True
        logger.info("CUDA perf flags: cudnn.benchmark=True")

    try:
        model = _load_graph(config.model_path, device)
    except ModelLoadError:
        raise
    except Exception as e:
        raise ModelLoadError(f"Failed to load {config.model_path}: {e}") from e

    model = model.eval()
    if fp16 and device.type == "cuda":
        model = model.half()
    logger.info("RVM model %s loaded on %s (fp16=%s, ratio=%.3f)",
                config.model_path, device, fp16, config.ratio)
    return RVMSession(model, device, ratio=config.ratio, fp16=fp16)
