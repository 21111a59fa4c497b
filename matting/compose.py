"""
Flatten an RGBA matte onto a solid background for display.

The RGBA buffer is the source, the background colour is the destination.
Porter-Duff operators and the separable blend modes follow the W3C
compositing rules; the result is premultiplied onto a black page.
"""

import numpy as np

BACKGROUNDS = {
    "none": None,
    "black": (0, 0, 0),
    "white": (255, 255, 255),
    "green": (120, 255, 155),
}

# (Fa, Fb) as functions of (source alpha, destination alpha)
PORTER_DUFF = {
    "copy": lambda sa, da: (1.0, 0.0),
    "source-over": lambda sa, da: (1.0, 1.0 - sa),
    "destination-over": lambda sa, da: (1.0 - da, 1.0),
    "source-in": lambda sa, da: (da, 0.0),
    "destination-in": lambda sa, da: (0.0, sa),
    "source-out": lambda sa, da: (1.0 - da, 0.0),
    "destination-out": lambda sa, da: (0.0, 1.0 - sa),
    "lighter": lambda sa, da: (1.0, 1.0),
}

BLEND_MODES = {
    "multiply": lambda cb, cs: cb * cs,
    "screen": lambda cb, cs: cb + cs - cb * cs,
    "darken": np.minimum,
    "lighten": np.maximum,
    "difference": lambda cb, cs: np.abs(cb - cs),
}

OPERATIONS = tuple(PORTER_DUFF) + tuple(BLEND_MODES)


def composite(rgba: np.ndarray, background: str = "none", operation: str = "source-over") -> np.ndarray:
    """Composite an HxWx4 uint8 RGBA buffer onto ``background``.

    Returns:
        HxWx3 uint8 RGB image.
    """
    if background not in BACKGROUNDS:
        raise ValueError(f"Unknown background: {background!r} (expected one of {tuple(BACKGROUNDS)})")
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown composite operation: {operation!r} (expected one of {OPERATIONS})")
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"expected an HxWx4 buffer, got shape {rgba.shape}")

    src = rgba.astype(np.float32) / 255.0
    cs, sa = src[..., :3], src[..., 3:4]

    color = BACKGROUNDS[background]
    if color is None:
        cb = np.zeros_like(cs)
        da = np.zeros_like(sa)
    else:
        cb = np.broadcast_to(np.asarray(color, dtype=np.float32) / 255.0, cs.shape)
        da = np.ones_like(sa)

    if operation in BLEND_MODES:
        blended = (1.0 - da) * cs + da * BLEND_MODES[operation](cb, cs)
        out = sa * blended + (1.0 - sa) * da * cb
    else:
        fa, fb = PORTER_DUFF[operation](sa, da)
        out = fa * sa * cs + fb * da * cb

    return (np.clip(out, 0.0, 1.0) * 255 + 0.5).astype(np.uint8)
