"""
Webcam / video-file acquisition on top of ``cv2.VideoCapture``.

A small stateful object: ``start`` opens the source, applies the requested
constraints and waits for the first frame; ``capture`` hands out RGB frames
while playing; ``pause`` / ``play`` / ``toggle`` drive the playing state and
notify listeners. Acquisition problems are logged, never raised.
"""

import logging
from dataclasses import dataclass, fields, replace
from typing import Callable, Optional, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)

FACING_DEVICES = {"front": 0, "back": 1}
DEFAULT_WIDTH = 640
DEFAULT_HEIGHT = 480
EVENTS = ("play", "pause", "stop", "ended")


@dataclass
class WebcamConfig:
    debug: bool = True
    mode: str = "front"
    crop: bool = False
    width: int = 0
    height: int = 0
    device: Optional[int] = None
    fps: int = 0

    @property
    def target_size(self):
        return (self.width if self.width > 0 else DEFAULT_WIDTH,
                self.height if self.height > 0 else DEFAULT_HEIGHT)


def crop_and_scale(frame: np.ndarray, width: int, height: int) -> np.ndarray:
    """Centre-crop ``frame`` to the aspect ratio of ``width x height`` and resize."""
    h, w = frame.shape[:2]
    if (w, h) == (width, height):
        return frame
    target_aspect = width / height
    if w / h > target_aspect:
        new_w = int(round(h * target_aspect))
        x0 = (w - new_w) // 2
        frame = frame[:, x0:x0 + new_w]
    else:
        new_h = int(round(w / target_aspect))
        y0 = (h - new_h) // 2
        frame = frame[y0:y0 + new_h, :]
    return cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)


class Webcam:
    """Camera or video source with a play / pause lifecycle."""

    def __init__(self, config: Optional[WebcamConfig] = None):
        self.config = config or WebcamConfig()
        self.source: Union[int, str, None] = None
        self._cap = None
        self._pending = None
        self._paused = True
        self._last_shape = None
        self._listeners: dict[str, list] = {event: [] for event in EVENTS}

    # ---- derived read-only properties ----

    @property
    def track(self):
        return self._cap

    @property
    def capabilities(self) -> Optional[dict]:
        if self._cap is None:
            return None
        return {
            "backend": self._backend_name(),
            "width": int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            "height": int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            "fps": float(self._cap.get(cv2.CAP_PROP_FPS)),
        }

    @property
    def constraints(self) -> Optional[dict]:
        if self._cap is None:
            return None
        width, height = self.config.target_size
        return {
            "facingMode": "user" if self.config.mode == "front" else "environment",
            "resizeMode": "crop-and-scale" if self.config.crop else "none",
            "width": width,
            "height": height,
            "fps": self.config.fps,
        }

    @property
    def settings(self) -> Optional[dict]:
        if self._cap is None:
            return None
        return {
            "width": int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            "height": int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            "frameRate": float(self._cap.get(cv2.CAP_PROP_FPS)),
        }

    @property
    def label(self) -> str:
        if self._cap is None:
            return ""
        return f"{self._backend_name()}:{self.source}"

    @property
    def paused(self) -> bool:
        return self._cap is None or self._paused

    @property
    def width(self) -> Optional[int]:
        return self._last_shape[1] if self._last_shape else None

    @property
    def height(self) -> Optional[int]:
        return self._last_shape[0] if self._last_shape else None

    def _backend_name(self) -> str:
        try:
            return self._cap.getBackendName()
        except cv2.error:
            return "unknown"

    # ---- events ----

    def on(self, event: str, callback: Callable[[], None]):
        if event not in self._listeners:
            raise ValueError(f"Unknown webcam event: {event!r} (expected one of {EVENTS})")
        self._listeners[event].append(callback)

    def _emit(self, event: str):
        if self.config.debug:
            logger.info("webcam %s", event)
        for callback in self._listeners[event]:
            callback()

    # ---- lifecycle ----

    def _resolve_source(self, source):
        if source is not None:
            return source
        if self.config.device is not None:
            return self.config.device
        return FACING_DEVICES.get(self.config.mode, 0)

    def start(self, source: Union[int, str, None] = None, config: Optional[dict] = None) -> bool:
        """Open ``source`` and start playing. Returns False if nothing could be opened."""
        if config:
            unknown = set(config) - {f.name for f in fields(WebcamConfig)}
            if unknown:
                logger.warning("webcam: unknown config key(s) %s", sorted(unknown))
                return False
            self.config = replace(self.config, **config)
        if self._cap is not None:
            self.stop()

        self.source = self._resolve_source(source)
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            logger.warning("webcam: no device available for source %r", self.source)
            cap.release()
            return False

        if isinstance(self.source, int):
            width, height = self.config.target_size
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            if self.config.fps > 0:
                cap.set(cv2.CAP_PROP_FPS, self.config.fps)

        # wait until the stream delivers data
        ok, frame = cap.read()
        if not ok or frame is None:
            logger.warning("webcam: source %r opened but delivered no stream", self.source)
            cap.release()
            return False

        self._cap = cap
        self._pending = frame
        self._paused = False
        self._emit("play")

        if self.config.debug:
            logger.info(
                "webcam started: label=%s settings=%s constraints=%s capabilities=%s",
                self.label, self.settings, self.constraints, self.capabilities,
            )
        return True

    def stop(self):
        if self._cap is not None:
            self._cap.release()
        self._cap = None
        self._pending = None
        self._paused = True
        self._emit("stop")

    def play(self):
        if self._cap is None or not self._paused:
            return
        self._paused = False
        self._emit("play")

    def pause(self):
        if self._cap is None or self._paused:
            return
        self._paused = True
        self._emit("pause")

    def toggle(self):
        """Pause when playing, resume when paused (the click handler)."""
        if self._cap is None:
            return
        if self._paused:
            self.play()
        else:
            self.pause()

    # ---- frames ----

    def capture(self) -> Optional[np.ndarray]:
        """Next HxWx3 uint8 RGB frame, or None when paused, stopped or ended."""
        if self.paused:
            return None
        if self._pending is not None:
            frame, self._pending = self._pending, None
        else:
            ok, frame = self._cap.read()
            if not ok or frame is None:
                logger.info("webcam: end of stream for source %r", self.source)
                self._paused = True
                self._emit("ended")
                return None

        frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        if self.config.crop:
            frame = crop_and_scale(frame, *self.config.target_size)
        self._last_shape = frame.shape[:2]
        return frame
