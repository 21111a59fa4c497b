"""Live tensor accounting used to spot per-frame leaks."""

import gc
import logging
import warnings

import torch

logger = logging.getLogger(__name__)


def count_live_tensors() -> int:
    """Number of ``torch.Tensor`` objects currently alive in the process."""
    count = 0
    # touching lazy torch module proxies emits deprecation warnings
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        for obj in gc.get_objects():
            try:
                if torch.is_tensor(obj):
                    count += 1
            except ReferenceError:
                # dead weak proxies show up in gc.get_objects()
                continue
    return count


class LeakCheck:
    """Compare the live tensor count before and after a block.

    Usage::

        with LeakCheck("frame 12") as check:
            loop.step()
        if check.leaked:
            ...
    """

    def __init__(self, label: str = "block", warn: bool = True):
        self.label = label
        self.warn = warn
        self.before = 0
        self.after = 0

    @property
    def leaked(self) -> int:
        return max(0, self.after - self.before)

    def __enter__(self):
        gc.collect()
        self.before = count_live_tensors()
        return self

    def __exit__(self, exc_type, exc, tb):
        gc.collect()
        self.after = count_live_tensors()
        if self.warn and self.leaked:
            logger.warning(
                "%s leaked %d tensor(s) (live before=%d after=%d)",
                self.label, self.leaked, self.before, self.after,
            )
        return False
