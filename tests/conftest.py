"""Shared fixtures for the matting demo test suite."""

import os
import sys
from typing import Optional, Tuple

import cv2
import numpy as np
import pytest
import torch

# Ensure project root on path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from matting.rvm import RVMSession, SegmentationConfig  # noqa: E402

STATE_CHANNELS = (16, 20, 40, 64)


class TinyMatting(torch.nn.Module):
    """Scriptable stand-in for the RVM graph.

    fgr is the source, pha its channel mean. Each recurrent output is the
    previous state plus one, so after n frames from the zero baseline every
    state value equals n. State resolution follows the downsample ratio.
    """

    def _next(self, r: Optional[torch.Tensor], channels: int, b: int, h: int, w: int) -> torch.Tensor:
        if r is None:
            return torch.ones([b, channels, h, w])
        return r + 1

    def forward(self, src: torch.Tensor,
                r1: Optional[torch.Tensor] = None, r2: Optional[torch.Tensor] = None,
                r3: Optional[torch.Tensor] = None, r4: Optional[torch.Tensor] = None,
                downsample_ratio: float = 0.25
                ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
        b = src.shape[0]
        h = max(1, int(src.shape[2] * downsample_ratio))
        w = max(1, int(src.shape[3] * downsample_ratio))
        fgr = src.clone()
        pha = src.mean(dim=1, keepdim=True)
        return (
            fgr, pha,
            self._next(r1, 16, b, h, w),
            self._next(r2, 20, b, h, w),
            self._next(r3, 40, b, h, w),
            self._next(r4, 64, b, h, w),
        )


class FailingMatting(torch.nn.Module):
    def forward(self, src, r1=None, r2=None, r3=None, r4=None, downsample_ratio=0.25):
        raise RuntimeError("graph exploded")


class FakeCapture:
    """Minimal ``cv2.VideoCapture`` replacement serving BGR frames from a list."""

    def __init__(self, source, frames, opened=True, backend="FAKE"):
        self.source = source
        self.frames = list(frames)
        self.opened = opened
        self.backend = backend
        self.released = False
        h, w = (self.frames[0].shape[:2] if self.frames else (0, 0))
        self.props = {
            cv2.CAP_PROP_FRAME_WIDTH: float(w),
            cv2.CAP_PROP_FRAME_HEIGHT: float(h),
            cv2.CAP_PROP_FPS: 30.0,
        }
        self.requested = {}

    def isOpened(self):
        return self.opened and not self.released

    def read(self):
        if not self.isOpened() or not self.frames:
            return False, None
        return True, self.frames.pop(0)

    def set(self, prop, value):
        self.requested[prop] = value
        return True

    def get(self, prop):
        return self.props.get(prop, 0.0)

    def getBackendName(self):
        return self.backend

    def release(self):
        self.released = True


class CaptureFactory:
    """Replaces ``cv2.VideoCapture``; remembers every capture it created."""

    def __init__(self, frames=(), opened=True):
        self.frames = list(frames)
        self.opened = opened
        self.created = []

    def __call__(self, source, *args):
        cap = FakeCapture(source, self.frames, opened=self.opened)
        self.created.append(cap)
        return cap


class FakeCanvas:
    def __init__(self):
        self.drawn = []
        self.status = ""
        self.overlay = ""
        self.closed = False
        self.keys = []

    def draw(self, image):
        self.drawn.append(image.shape)

    def set_status(self, text):
        self.status = text

    def set_overlay(self, text):
        self.overlay = text

    def poll(self, delay_ms=1):
        return self.keys.pop(0) if self.keys else None

    def close(self):
        self.closed = True


def make_bgr_frame(height=48, width=64, bgr=(10, 20, 30)):
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:] = bgr
    return frame


@pytest.fixture
def rgb_frame():
    """A 48×64 RGB frame with a bright square in the middle."""
    frame = np.full((48, 64, 3), 40, dtype=np.uint8)
    frame[12:36, 16:48] = 220
    return frame


@pytest.fixture
def config():
    return SegmentationConfig(model_path="unused", ratio=0.5)


@pytest.fixture
def session():
    """RVMSession on CPU around the scriptable stand-in graph."""
    return RVMSession(TinyMatting().eval(), torch.device("cpu"), ratio=0.5)


@pytest.fixture
def capture_factory(monkeypatch):
    """Patch cv2.VideoCapture with a factory serving 10 synthetic BGR frames."""
    factory = CaptureFactory(frames=[make_bgr_frame() for _ in range(10)])
    monkeypatch.setattr(cv2, "VideoCapture", factory)
    return factory


@pytest.fixture
def fake_canvas():
    return FakeCanvas()
