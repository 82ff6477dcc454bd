"""Variable-size footprint planning.

At each free grid origin the planner grows the footprint from 1x1 to 2x2
to 4x4 cells while the covered cells stay visually homogeneous.  A size
is only considered when every covered cell lies inside the grid and is
still unoccupied; growth never skips 2x2.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from tile_mosaic.grid import SignatureGrid
from tile_mosaic.signature import Signature

FOOTPRINT_SIZES = (1, 2, 4)

BRIGHTNESS_TOLERANCE = 0.1
COLOR_TOLERANCE = 0.15


@dataclass(frozen=True)
class FootprintPlan:
    """Accepted footprint side (cells) and the signature it stands for."""

    size: int
    signature: Signature


def block_is_free(
    occupied: np.ndarray | None, x: int, y: int, size: int, rows: int, columns: int,
) -> bool:
    """True if the size x size block at (x, y) is in bounds and unoccupied."""
    if x < 0 or y < 0 or x + size > columns or y + size > rows:
        return False
    if occupied is None:
        return True
    return not occupied[y:y + size, x:x + size].any()


def free_size(occupied: np.ndarray, x: int, y: int, max_size: int) -> int:
    """Largest footprint side that physically fits at (x, y)."""
    rows, columns = occupied.shape
    best = 1
    for size in FOOTPRINT_SIZES[1:]:
        if size > max_size or not block_is_free(occupied, x, y, size, rows, columns):
            break
        best = size
    return best


def aggregate_block(grid: SignatureGrid, x: int, y: int, size: int) -> Signature:
    """Mean signature of a size x size block; a single cell is returned as-is."""
    if size == 1:
        return grid[x, y]
    b = grid.brightness[y:y + size, x:x + size]
    c = grid.color[y:y + size, x:x + size].reshape(-1, 3).mean(axis=0)
    t = grid.transparency[y:y + size, x:x + size]
    return Signature(
        float(b.mean()),
        (float(c[0]), float(c[1]), float(c[2])),
        float(t.mean()),
    )


def block_deviation(grid: SignatureGrid, x: int, y: int, size: int) -> tuple[float, float]:
    """Max brightness and max RGB deviation of any cell from the block mean."""
    b = grid.brightness[y:y + size, x:x + size]
    c = grid.color[y:y + size, x:x + size].reshape(-1, 3)
    b_dev = float(np.max(np.abs(b - b.mean())))
    c_dev = float(np.max(np.linalg.norm(c - c.mean(axis=0), axis=1)))
    return b_dev, c_dev


def is_homogeneous(grid: SignatureGrid, x: int, y: int, size: int) -> bool:
    b_dev, c_dev = block_deviation(grid, x, y, size)
    return b_dev < BRIGHTNESS_TOLERANCE and c_dev < COLOR_TOLERANCE


def plan_footprint(
    grid: SignatureGrid,
    occupied: np.ndarray | None,
    x: int,
    y: int,
    max_size: int = 1,
) -> FootprintPlan:
    """Pick the largest homogeneous footprint at (x, y).

    Args:
        grid:     Cell signatures.
        occupied: (rows, columns) bool occupancy, or None for an empty grid.
        x, y:     Origin cell.
        max_size: Largest side permitted (1, 2 or 4).

    Returns:
        :class:`FootprintPlan` with the accepted side and aggregate signature.
    """
    size = 1
    for candidate in FOOTPRINT_SIZES[1:]:
        if candidate > max_size:
            break
        if not block_is_free(occupied, x, y, candidate, grid.rows, grid.columns):
            break
        if not is_homogeneous(grid, x, y, candidate):
            break
        size = candidate
    return FootprintPlan(size, aggregate_block(grid, x, y, size))
