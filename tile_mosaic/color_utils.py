"""Colour-space conversion and perceptual match error."""

from __future__ import annotations

import numpy as np
from skimage.color import deltaE_cie76, rgb2lab


def rgb_to_lab(rgb: np.ndarray) -> np.ndarray:
    """Convert flat (N, 3) float RGB in [0, 1] → (N, 3) float64 CIELAB."""
    rgb = np.clip(np.asarray(rgb, dtype=np.float64), 0.0, 1.0)
    return rgb2lab(rgb.reshape(1, -1, 3)).reshape(-1, 3)


def mean_delta_e(
    targets: np.ndarray,
    matched: np.ndarray,
    weights: np.ndarray | None = None,
) -> float:
    """Average CIE76 distance between target colours and the tiles chosen for them.

    Matching itself runs in linear RGB; this is only a report of how the
    result reads to the eye.

    Args:
        targets: (N, 3) float RGB in [0, 1].
        matched: (N, 3) float RGB in [0, 1].
        weights: Optional (N,) weights, e.g. cells covered per footprint.
    """
    if len(targets) == 0:
        return 0.0
    d = deltaE_cie76(rgb_to_lab(targets), rgb_to_lab(matched))
    return float(np.average(d, weights=weights))
