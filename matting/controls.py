"""
Live configuration shared by the render loop and the UI.

The render loop reads one ``snapshot()`` per frame; the window key handler
and the web form write through the setters from their own threads.
"""

import logging
import threading
from dataclasses import asdict, dataclass, replace
from typing import Mapping, Optional

from matting import compose, postprocess
from matting.rvm import SegmentationConfig

logger = logging.getLogger(__name__)

RATIO_STEP = 0.05
MIN_RATIO = 0.05
MAX_RATIO = 1.0

# key -> mode
MODE_KEYS = {ord("1"): "default", ord("2"): "alpha", ord("3"): "foreground", ord("4"): "state"}
KEY_QUIT = (ord("q"), 27)
KEY_TOGGLE = ord(" ")


@dataclass
class RenderOptions:
    background: str = "none"
    composite: str = "source-over"

    def __post_init__(self):
        if self.background not in compose.BACKGROUNDS:
            raise ValueError(f"Unknown background: {self.background!r}")
        if self.composite not in compose.OPERATIONS:
            raise ValueError(f"Unknown composite operation: {self.composite!r}")


def _cycle(options, current):
    options = list(options)
    return options[(options.index(current) + 1) % len(options)]


def _present(form: Mapping, key: str) -> bool:
    return key in form and form[key] not in ("", None)


def _number(value, kind, name):
    if isinstance(value, bool):
        raise ValueError(f"Invalid control value for {name}: {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid control value for {name}: {value!r}") from e


class Controls:
    """Thread-safe holder for the segmentation config and render options."""

    def __init__(self, config: Optional[SegmentationConfig] = None,
                 options: Optional[RenderOptions] = None):
        self._config = config or SegmentationConfig()
        self._options = options or RenderOptions()
        self._lock = threading.Lock()

    def snapshot(self):
        with self._lock:
            return self._config, self._options

    @property
    def config(self) -> SegmentationConfig:
        return self.snapshot()[0]

    @property
    def options(self) -> RenderOptions:
        return self.snapshot()[1]

    def _set_config(self, **changes):
        with self._lock:
            self._config = replace(self._config, **changes)
        logger.debug("config -> %s", changes)

    def _set_options(self, **changes):
        with self._lock:
            self._options = replace(self._options, **changes)
        logger.debug("options -> %s", changes)

    def set_mode(self, mode: str):
        self._set_config(mode=mode)

    def set_ratio(self, ratio: float):
        self._set_config(ratio=float(ratio))

    def set_state_index(self, index: int):
        self._set_config(state_index=int(index))

    def set_background(self, background: str):
        self._set_options(background=background)

    def set_composite(self, operation: str):
        self._set_options(composite=operation)

    def update(self, form: Mapping[str, str]):
        """Apply every recognized field of a submitted form.

        Raises ValueError on the first invalid value; nothing is applied then.
        """
        if not isinstance(form, Mapping):
            raise ValueError(f"Expected a mapping of control values, got {type(form).__name__}")
        config_changes = {}
        option_changes = {}
        if _present(form, "mode"):
            config_changes["mode"] = form["mode"]
        if _present(form, "ratio"):
            config_changes["ratio"] = _number(form["ratio"], float, "ratio")
        if _present(form, "state_index"):
            config_changes["state_index"] = _number(form["state_index"], int, "state_index")
        if _present(form, "background"):
            option_changes["background"] = form["background"]
        if _present(form, "composite"):
            option_changes["composite"] = form["composite"]

        with self._lock:
            config = replace(self._config, **config_changes)
            options = replace(self._options, **option_changes)
            self._config, self._options = config, options
        logger.info("Controls updated: %s", {**config_changes, **option_changes})

    def step_ratio(self, direction: int):
        config = self.config
        ratio = round(config.ratio + direction * RATIO_STEP, 2)
        ratio = min(MAX_RATIO, max(MIN_RATIO, ratio))
        if ratio != config.ratio:
            self.set_ratio(ratio)

    def handle_key(self, key: int) -> Optional[str]:
        """Apply a window key press.

        Returns ``"quit"`` or ``"toggle"`` for keys the caller must act on,
        otherwise None.
        """
        if key in KEY_QUIT:
            return "quit"
        if key == KEY_TOGGLE:
            return "toggle"
        if key in MODE_KEYS:
            self.set_mode(MODE_KEYS[key])
        elif key == ord("["):
            self.step_ratio(-1)
        elif key == ord("]"):
            self.step_ratio(+1)
        elif key == ord("r"):
            self.set_state_index(self.config.state_index % 4 + 1)
        elif key == ord("b"):
            self.set_background(_cycle(compose.BACKGROUNDS, self.options.background))
        elif key == ord("c"):
            self.set_composite(_cycle(compose.OPERATIONS, self.options.composite))
        return None

    def as_dict(self) -> dict:
        config, options = self.snapshot()
        return {**asdict(config), **asdict(options)}

    @staticmethod
    def choices() -> dict:
        return {
            "mode": list(postprocess.MODES),
            "state_index": [1, 2, 3, 4],
            "background": list(compose.BACKGROUNDS),
            "composite": list(compose.OPERATIONS),
        }
