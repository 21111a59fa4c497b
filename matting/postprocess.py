"""
Turn raw RVM outputs into drawable RGBA pixel buffers.

Public API:
    get_rgba  : foreground / alpha tensors to an HxWx4 uint8 buffer
    get_state : one recurrent-state tensor to a grey HxWx4 debug tile
    render    : dispatch on the segmentation mode
"""

from typing import Optional

import numpy as np
import torch

MODES = ("default", "alpha", "foreground", "state")


def _to_pixels(t: torch.Tensor) -> torch.Tensor:
    """[1,C,H,W] in [0,1] -> [H,W,C] int32 in [0,255]."""
    return (t.squeeze(0).permute(1, 2, 0).float() * 255).to(torch.int32)


def get_rgba(fgr: Optional[torch.Tensor], pha: Optional[torch.Tensor]) -> np.ndarray:
    """Build an RGBA buffer from the foreground and alpha predictions.

    Args:
        fgr: [1,3,H,W] foreground in [0,1], or None for a solid white fill.
        pha: [1,1,H,W] alpha in [0,1], or None for a fully opaque fill.

    Returns:
        HxWx4 uint8 array.
    """
    if fgr is None and pha is None:
        raise ValueError("get_rgba needs at least one of fgr / pha")

    with torch.inference_mode():
        if fgr is not None:
            rgb = _to_pixels(fgr)
        else:
            rgb = torch.full((pha.shape[2], pha.shape[3], 3), 255, dtype=torch.int32, device=pha.device)
        if pha is not None:
            a = _to_pixels(pha)
        else:
            a = torch.full((fgr.shape[2], fgr.shape[3], 1), 255, dtype=torch.int32, device=fgr.device)
        rgba = torch.cat([rgb, a.to(rgb.device)], dim=-1).clamp(0, 255).to(torch.uint8)
        return rgba.cpu().numpy()


def get_state(state: torch.Tensor) -> np.ndarray:
    """Lay out a [1,C,h,w] recurrent state as one grey tile.

    Channels are stacked vertically, the stack is cut into four bands that
    are placed side by side, so the tile is [C/4*h, 4*w]. Values in [-1,1]
    map to [0,255].
    """
    if state.dim() != 4 or state.shape[0] != 1:
        raise ValueError(f"expected a [1,C,h,w] state, got {tuple(state.shape)}")
    channels = state.shape[1]
    if channels % 4:
        raise ValueError(f"state channel count {channels} is not divisible by 4")

    with torch.inference_mode():
        planes = torch.unbind(state, dim=1)          # C x [1,h,w]
        column = torch.cat(planes, dim=1)            # [1,C*h,w]
        bands = torch.chunk(column, 4, dim=1)        # 4 x [1,C/4*h,w]
        tile = torch.cat(bands, dim=2).squeeze(0)    # [C/4*h,4*w]
        grey = ((tile.float().unsqueeze(-1) + 1) * 127.5).to(torch.int32).clamp(0, 255)
        rgb = grey.repeat(1, 1, 3)
        alpha = torch.full((rgb.shape[0], rgb.shape[1], 1), 255, dtype=torch.int32, device=rgb.device)
        return torch.cat([rgb, alpha], dim=-1).to(torch.uint8).cpu().numpy()


def render(prediction, config) -> np.ndarray:
    """Render a Prediction according to ``config.mode``."""
    mode = config.mode
    if mode == "default":
        return get_rgba(prediction.fgr, prediction.pha)
    if mode == "alpha":
        return get_rgba(None, prediction.pha)
    if mode == "foreground":
        return get_rgba(prediction.fgr, None)
    if mode == "state":
        state = prediction.state[config.state_index]
        if state is None:
            raise ValueError(f"recurrent state r{config.state_index} is not available")
        return get_state(state)
    raise ValueError(f"Unknown segmentation mode: {mode!r} (expected one of {MODES})")
