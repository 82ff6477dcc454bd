"""Greedy nearest-tile matching with a capped repetition penalty."""

from __future__ import annotations

import logging
import math
from collections import Counter

import numpy as np
from scipy.spatial.distance import cdist

from tile_mosaic.signature import Signature
from tile_mosaic.tiles import TileLibrary

logger = logging.getLogger(__name__)

BRIGHTNESS_WEIGHT = 0.6
COLOR_WEIGHT = 0.4
USAGE_STEP = 0.01
USAGE_CAP = 0.1

_MAX_RGB_DISTANCE = math.sqrt(3.0)


class UsageCounter:
    """Placements per tile id within one layout pass.  Counts only grow."""

    def __init__(self, counts: Counter[str] | None = None) -> None:
        self._counts: Counter[str] = Counter(counts or {})

    def __getitem__(self, tile_id: str) -> int:
        return self._counts[tile_id]

    def __len__(self) -> int:
        return len(self._counts)

    def increment(self, tile_id: str) -> None:
        self._counts[tile_id] += 1

    def copy(self) -> UsageCounter:
        return UsageCounter(self._counts)

    def total(self) -> int:
        return sum(self._counts.values())

    def as_array(self, library: TileLibrary) -> np.ndarray:
        return np.array([self._counts[i] for i in library.ids], dtype=np.float64)


def usage_penalty(count: int | np.ndarray) -> float | np.ndarray:
    """``min(count * 0.01, 0.1)``: grows with use but never excludes a tile."""
    return np.minimum(np.asarray(count, dtype=np.float64) * USAGE_STEP, USAGE_CAP)


def base_scores(target: Signature, library: TileLibrary) -> np.ndarray:
    """Weighted brightness + normalised RGB distance to every tile.

    Returns:
        (N,) float64, lower is better.
    """
    b_diff = np.abs(library.brightness - target.brightness)
    c_dist = cdist(target.rgb[np.newaxis, :], library.colors)[0]
    return BRIGHTNESS_WEIGHT * b_diff + COLOR_WEIGHT * (c_dist / _MAX_RGB_DISTANCE)


def penalized_scores(
    target: Signature,
    library: TileLibrary,
    usage: UsageCounter | None = None,
) -> np.ndarray:
    scores = base_scores(target, library)
    if usage is not None and len(usage):
        scores = scores + usage_penalty(usage.as_array(library))
    return scores


def best_match(
    target: Signature,
    library: TileLibrary,
    usage: UsageCounter | None = None,
) -> int:
    """Index of the lowest penalised score; the earliest tile wins ties."""
    return int(np.argmin(penalized_scores(target, library, usage)))


def rank_alternatives(
    target: Signature,
    library: TileLibrary,
    usage: UsageCounter | None = None,
    exclude: int | None = None,
) -> np.ndarray:
    """Tile indices ordered best-first, optionally without *exclude*."""
    scores = penalized_scores(target, library, usage)
    order = np.argsort(scores, kind="stable")
    if exclude is not None:
        order = order[order != exclude]
    return order
