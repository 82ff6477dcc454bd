"""Visual signatures: alpha-weighted brightness, mean colour, transparency.

A :class:`Signature` summarises a block of RGBA pixels in three numbers
that the planner and matcher can compare cheaply.  Everything works on
linear channel averages in [0, 1]; no gamma handling is attempted.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)

# Pixels with alpha below this (in [0, 1]) count as transparent
ALPHA_THRESHOLD = 0.1

# Coarsest sampling grid; every 4th pixel stays within sampling noise
MAX_STRIDE = 4


@dataclass(frozen=True)
class Signature:
    """Compact appearance summary of a pixel region.

    Attributes:
        brightness:         Alpha-weighted mean luma in [0, 1].
        color:              Alpha-weighted mean (r, g, b), each in [0, 1].
        transparency_ratio: Fraction of pixels below the alpha threshold.
    """

    brightness: float
    color: tuple[float, float, float]
    transparency_ratio: float = 0.0

    @property
    def rgb(self) -> np.ndarray:
        return np.asarray(self.color, dtype=np.float64)


NEUTRAL_SIGNATURE = Signature(0.5, (0.5, 0.5, 0.5), 0.0)


def luma(rgb: np.ndarray) -> float:
    """BT.601 luma of a single (3,) colour in [0, 1]."""
    return float(np.dot(np.asarray(rgb, dtype=np.float64), LUMA_WEIGHTS))


def empty_signature(transparent_as_white: bool, transparency_ratio: float = 1.0) -> Signature:
    """Signature of a region with no visible pixels."""
    v = 1.0 if transparent_as_white else 0.0
    return Signature(v, (v, v, v), transparency_ratio)


def as_rgba(pixels: np.ndarray) -> np.ndarray:
    """Normalise a (H, W), (H, W, 3) or (H, W, 4) uint8 array to RGBA."""
    arr = np.asarray(pixels)
    if arr.dtype != np.uint8:
        msg = f"Expected uint8 pixels, got {arr.dtype}"
        raise TypeError(msg)
    if arr.ndim == 2:
        arr = np.stack([arr, arr, arr], axis=-1)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        msg = f"Expected (H, W, 3|4) pixels, got shape {arr.shape}"
        raise ValueError(msg)
    if arr.shape[2] == 3:
        alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
        arr = np.concatenate([arr, alpha], axis=2)
    return arr


def sampling_stride(width: int, height: int, match_resolution: int) -> int:
    """Pixel stride aiming at *match_resolution* reads per axis, capped at :data:`MAX_STRIDE`."""
    return max(1, min(MAX_STRIDE, min(width, height) // max(1, match_resolution)))


def extract_signature(
    pixels: np.ndarray,
    region: tuple[int, int, int, int] | None = None,
    transparent_as_white: bool = False,
    stride: int = 1,
) -> Signature:
    """Summarise an RGBA buffer (or a sub-rectangle of it).

    Args:
        pixels: (H, W, 4) uint8; RGB input is treated as fully opaque.
        region: Optional ``(x0, y0, x1, y1)`` half-open pixel rectangle.
        transparent_as_white: Count transparent pixels as opaque white
            instead of skipping them.
        stride: Read every *stride*-th pixel on both axes, starting from
            the centre of the first stride block.

    Returns:
        The region's :class:`Signature`.  A region without visible pixels
        yields white (flag set) or black, never an error.
    """
    rgba = as_rgba(pixels)
    if region is not None:
        x0, y0, x1, y1 = region
        rgba = rgba[y0:y1, x0:x1]
    step = max(1, int(stride))
    start = min(step // 2, max(0, min(rgba.shape[:2]) - 1))
    flat = rgba[start::step, start::step].reshape(-1, 4).astype(np.float64) / 255.0

    total = len(flat)
    if total == 0:
        return empty_signature(transparent_as_white)

    rgb = flat[:, :3]
    alpha = flat[:, 3]
    transparent = alpha < ALPHA_THRESHOLD
    n_transparent = int(np.count_nonzero(transparent))
    ratio = n_transparent / total

    if transparent_as_white:
        rgb = rgb.copy()
        alpha = alpha.copy()
        rgb[transparent] = 1.0
        alpha[transparent] = 1.0
        visible = np.ones(total, dtype=bool)
    else:
        visible = ~transparent

    n_visible = int(np.count_nonzero(visible))
    if n_visible == 0:
        return empty_signature(transparent_as_white, ratio)

    weighted = rgb[visible] * alpha[visible, np.newaxis]
    color = np.clip(weighted.sum(axis=0) / n_visible, 0.0, 1.0)
    brightness = float(np.clip(np.sum(weighted @ LUMA_WEIGHTS) / n_visible, 0.0, 1.0))

    return Signature(
        brightness,
        (float(color[0]), float(color[1]), float(color[2])),
        ratio,
    )
