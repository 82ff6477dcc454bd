"""Grid sampling: partition the target image and summarise every cell."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

from tile_mosaic.errors import GridTooSmallError
from tile_mosaic.signature import (
    LUMA_WEIGHTS,
    Signature,
    as_rgba,
    extract_signature,
    sampling_stride,
)

logger = logging.getLogger(__name__)

Rasterizer = Callable[[Any], Awaitable[np.ndarray]]


@dataclass
class SignatureGrid:
    """Per-cell signatures stored as parallel arrays.

    Attributes:
        brightness:   (rows, columns) float64.
        color:        (rows, columns, 3) float64.
        transparency: (rows, columns) float64.
        synthetic:    True when the grid is the gradient fallback.
    """

    brightness: np.ndarray
    color: np.ndarray
    transparency: np.ndarray
    synthetic: bool = False

    @property
    def rows(self) -> int:
        return self.brightness.shape[0]

    @property
    def columns(self) -> int:
        return self.brightness.shape[1]

    def __getitem__(self, xy: tuple[int, int]) -> Signature:
        x, y = xy
        c = self.color[y, x]
        return Signature(
            float(self.brightness[y, x]),
            (float(c[0]), float(c[1]), float(c[2])),
            float(self.transparency[y, x]),
        )

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.columns and 0 <= y < self.rows

    def to_rgb8(self) -> np.ndarray:
        """(rows, columns, 3) uint8 preview of the cell colours."""
        return np.round(np.clip(self.color, 0.0, 1.0) * 255).astype(np.uint8)

    @classmethod
    def from_signatures(cls, cells: list[list[Signature]]) -> SignatureGrid:
        """Build a grid from a row-major nested list of signatures."""
        brightness = np.array([[s.brightness for s in row] for row in cells], dtype=np.float64)
        color = np.array([[s.color for s in row] for row in cells], dtype=np.float64)
        transparency = np.array(
            [[s.transparency_ratio for s in row] for row in cells], dtype=np.float64,
        )
        return cls(brightness, color, transparency)


def compute_grid_shape(columns: int, width: float, height: float) -> tuple[int, int]:
    """Return ``(columns, rows)`` with rows following the image aspect ratio.

    Raises:
        GridTooSmallError: if either dimension ends up below one cell.
    """
    if columns < 1 or width <= 0 or height <= 0:
        msg = f"Cannot build a grid from {columns} columns on a {width}x{height} image"
        raise GridTooSmallError(msg)
    rows = round(columns * height / width)
    if rows < 1:
        msg = (
            f"Image {width}x{height} is too flat for {columns} columns "
            "(less than one row of cells)"
        )
        raise GridTooSmallError(msg)
    return columns, rows


def cell_bounds(
    x: int, y: int, columns: int, rows: int, width: int, height: int,
) -> tuple[int, int, int, int]:
    """Half-open pixel rectangle of cell (x, y), never empty."""
    x0 = min(x * width // columns, width - 1)
    y0 = min(y * height // rows, height - 1)
    x1 = max(x0 + 1, (x + 1) * width // columns)
    y1 = max(y0 + 1, (y + 1) * height // rows)
    return x0, y0, x1, y1


def sample_grid(
    pixels: np.ndarray,
    columns: int,
    rows: int,
    transparent_as_white: bool = False,
    match_resolution: int = 16,
) -> SignatureGrid:
    """Extract one signature per cell from an already rasterized image."""
    rgba = as_rgba(pixels)
    height, width = rgba.shape[:2]

    brightness = np.empty((rows, columns), dtype=np.float64)
    color = np.empty((rows, columns, 3), dtype=np.float64)
    transparency = np.empty((rows, columns), dtype=np.float64)

    for y in range(rows):
        for x in range(columns):
            x0, y0, x1, y1 = cell_bounds(x, y, columns, rows, width, height)
            stride = sampling_stride(x1 - x0, y1 - y0, match_resolution)
            sig = extract_signature(
                rgba, (x0, y0, x1, y1),
                transparent_as_white=transparent_as_white,
                stride=stride,
            )
            brightness[y, x] = sig.brightness
            color[y, x] = sig.color
            transparency[y, x] = sig.transparency_ratio

    return SignatureGrid(brightness, color, transparency)


def gradient_signature_grid(columns: int, rows: int) -> SignatureGrid:
    """Deterministic stand-in used when the image cannot be rasterized.

    Colour drifts linearly with the relative cell centre: red along x,
    green along y, blue along the diagonal, around a mid-grey base.
    """
    u = (np.arange(columns, dtype=np.float64) + 0.5) / columns
    v = (np.arange(rows, dtype=np.float64) + 0.5) / rows
    uu, vv = np.meshgrid(u, v)

    r = 0.5 + (uu - 0.5) * 0.5
    g = 0.5 + (vv - 0.5) * 0.5
    b = 0.5 + ((uu + vv) / 2 - 0.5) * 0.3
    color = np.clip(np.stack([r, g, b], axis=-1), 0.0, 1.0)
    brightness = np.clip(color @ LUMA_WEIGHTS, 0.0, 1.0)

    return SignatureGrid(
        brightness,
        color,
        np.zeros((rows, columns), dtype=np.float64),
        synthetic=True,
    )


async def sample_image(
    rasterize: Rasterizer,
    handle: Any,
    width: float,
    height: float,
    columns: int,
    transparent_as_white: bool = False,
    match_resolution: int = 16,
    timeout: float = 10.0,
) -> SignatureGrid:
    """Rasterize the target and sample it into a signature grid.

    Falls back to :func:`gradient_signature_grid` if rasterization fails
    or does not finish within *timeout* seconds.
    """
    columns, rows = compute_grid_shape(columns, width, height)
    logger.info("Grid: %dx%d = %d cells", columns, rows, columns * rows)

    t0 = time.perf_counter()
    try:
        pixels = as_rgba(await asyncio.wait_for(rasterize(handle), timeout))
        if pixels.size == 0:
            msg = "rasterizer returned an empty buffer"
            raise ValueError(msg)
    except asyncio.TimeoutError:
        logger.warning(
            "Image raster timed out after %.1f s; using gradient fallback", timeout,
        )
        return gradient_signature_grid(columns, rows)
    except Exception as exc:
        logger.warning("Image raster failed (%s); using gradient fallback", exc)
        return gradient_signature_grid(columns, rows)

    grid = sample_grid(pixels, columns, rows, transparent_as_white, match_resolution)
    logger.info("Image sampled  (%.2f s)", time.perf_counter() - t0)
    return grid
