"""
The per-frame render loop: capture -> predict -> postprocess -> composite -> draw.

Frames are processed strictly one after another. While the source is paused
the loop only polls the canvas for input so that play can resume it.
"""

import logging
import time
from typing import Optional

from matting import compose, postprocess
from matting.controls import Controls
from matting.memory import LeakCheck
from matting.rvm import InferenceError, RVMSession
from matting.timing import FpsMeter, TimingStats
from matting.webcam import Webcam

logger = logging.getLogger(__name__)

SUMMARY_INTERVAL = 5.0


class RenderLoop:
    """Drive one webcam through one RVM session onto one canvas."""

    def __init__(self, webcam: Webcam, session: RVMSession, controls: Controls, canvas,
                 timing: Optional[TimingStats] = None, check_leaks: bool = False):
        self.webcam = webcam
        self.session = session
        self.controls = controls
        self.canvas = canvas
        self.timing = timing or TimingStats(max_samples=60)
        self.check_leaks = check_leaks
        self.fps = FpsMeter()
        self.frames = 0
        self.leaked = 0
        self.running = False
        self.error: Optional[Exception] = None
        self._last_summary = time.time()
        self._summary_frames = 0

        webcam.on("play", self._on_play)
        webcam.on("pause", self._on_pause)
        webcam.on("ended", self._on_ended)

    def _on_play(self):
        self.canvas.set_status("")

    def _on_pause(self):
        self.canvas.set_status("paused")

    def _on_ended(self):
        self.canvas.set_status("ended")
        self.stop()

    def info(self) -> dict:
        return {
            "fps": self.fps.fps,
            "frames": self.frames,
            "paused": self.webcam.paused,
            "timing": self.timing.get_average_timings(),
        }

    def step(self) -> bool:
        """Run one iteration. Returns False when no frame was produced."""
        if self.webcam.paused:
            return False
        if not self.check_leaks:
            return self._step()

        owned_before = self.session.live_tensors()
        with LeakCheck(f"frame {self.frames + 1}", warn=False) as check:
            produced = self._step()
        # growth of the session's own recurrent state is not a leak
        leaked = check.leaked - max(0, self.session.live_tensors() - owned_before)
        if leaked > 0:
            self.leaked += leaked
            logger.warning("frame %d leaked %d tensor(s)", self.frames, leaked)
        return produced

    def _step(self) -> bool:
        t0 = time.perf_counter()
        with self.timing.measure("capture"):
            frame = self.webcam.capture()
        if frame is None:
            return False

        config, options = self.controls.snapshot()
        with self.timing.measure("inference"):
            prediction = self.session.predict(frame, config)
        with self.timing.measure("postprocess"):
            rgba = postprocess.render(prediction, config)
            image = compose.composite(rgba, options.background, options.composite)
        del prediction, rgba
        with self.timing.measure("draw"):
            self.canvas.set_overlay(
                f"FPS:{self.fps.fps:5.1f} mode={config.mode} ratio={config.ratio:.2f}"
            )
            self.canvas.draw(image)

        self.timing.add_timing("total_frame", (time.perf_counter() - t0) * 1000)
        self.fps.tick()
        self.frames += 1
        self._summary_frames += 1
        logger.debug("frame %d drawn (%dx%d)", self.frames, image.shape[1], image.shape[0])
        self._maybe_log_summary()
        return True

    def _maybe_log_summary(self):
        now = time.time()
        if now - self._last_summary < SUMMARY_INTERVAL:
            return
        elapsed = now - self._last_summary
        logger.info("FPS=%.1f | frames=%d | %s", self._summary_frames / elapsed,
                    self.frames, self.timing.get_stats_summary())
        self._last_summary = now
        self._summary_frames = 0

    def stop(self):
        self.running = False

    def handle_key(self, key: Optional[int]):
        if key is None:
            return
        action = self.controls.handle_key(key)
        if action == "quit":
            self.stop()
        elif action == "toggle":
            self.webcam.toggle()

    def run(self, max_frames: Optional[int] = None, idle_delay_ms: int = 30) -> int:
        """Loop until the canvas closes, the stream ends, ``stop`` or ``max_frames``.

        Returns the number of frames drawn.
        """
        self.running = True
        logger.info("Render loop started (source=%s)", self.webcam.label)
        try:
            while self.running and not self.canvas.closed:
                if self.webcam.track is None:
                    logger.info("Source stopped, leaving render loop")
                    break
                if self.webcam.paused:
                    self.handle_key(self.canvas.poll(idle_delay_ms))
                    continue
                try:
                    self.step()
                except InferenceError as e:
                    logger.error("Inference failed: %s", e)
                    self.canvas.set_status(f"error: {e}")
                    self.error = e
                    break
                self.handle_key(self.canvas.poll(1))
                if max_frames is not None and self.frames >= max_frames:
                    break
        finally:
            self.running = False
        logger.info("Render loop stopped after %d frames", self.frames)
        return self.frames
