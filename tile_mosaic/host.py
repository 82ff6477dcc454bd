"""File-system host: rasterize image files and paint placements on a canvas."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import numpy as np
from PIL import Image

from tile_mosaic.config import MosaicConfig
from tile_mosaic.tiles import Selection, SingleTile, TileCandidate, TileFamily

logger = logging.getLogger(__name__)

DEFAULT_VARIANT_STEM = "default"


def load_rgba(path: str | Path) -> np.ndarray:
    """Decode an image file into an (H, W, 4) uint8 array."""
    with Image.open(path) as img:
        return np.array(img.convert("RGBA"), dtype=np.uint8)


def image_size(path: str | Path) -> tuple[int, int]:
    """(width, height) without decoding the pixel data."""
    with Image.open(path) as img:
        return img.width, img.height


class ImageFileRasterizer:
    """Async rasterizer over image paths; decoding runs on a worker thread."""

    async def __call__(self, handle: str | Path) -> np.ndarray:
        return await asyncio.to_thread(load_rgba, handle)


def _collect_images(folder: Path, extensions: frozenset[str]) -> list[Path]:
    return sorted(
        f for f in folder.iterdir()
        if f.is_file() and f.suffix.lower() in extensions
    )


def _candidate(path: Path, root: Path) -> TileCandidate:
    rel = path.relative_to(root)
    name = rel.with_suffix("").as_posix()
    return TileCandidate(id=rel.as_posix(), name=name, handle=path)


def _fits(path: Path, tile_size: int | None) -> bool:
    if tile_size is None:
        return True
    w, h = image_size(path)
    return w == tile_size and h == tile_size


def discover_candidates(
    tiles_dir: str | Path,
    tile_size: int | None = None,
    extensions: frozenset[str] = MosaicConfig.SUPPORTED_EXTENSIONS,
) -> list[Selection]:
    """Scan a tile folder.

    Image files directly inside *tiles_dir* become :class:`SingleTile`
    selections; every sub-folder becomes a :class:`TileFamily` whose
    default variant is the file named ``default.*`` (else the first file).

    Args:
        tiles_dir:  Folder to scan.
        tile_size:  If given, keep only square tiles of exactly this size.
        extensions: Accepted file suffixes.
    """
    root = Path(tiles_dir)
    if not root.is_dir():
        return []

    selections: list[Selection] = []
    for path in _collect_images(root, extensions):
        if _fits(path, tile_size):
            selections.append(SingleTile(_candidate(path, root)))

    for folder in sorted(p for p in root.iterdir() if p.is_dir()):
        variants = tuple(
            _candidate(p, root)
            for p in _collect_images(folder, extensions)
            if _fits(p, tile_size)
        )
        if not variants:
            continue
        default_id = next(
            (v.id for v in variants if Path(v.id).stem.lower() == DEFAULT_VARIANT_STEM),
            None,
        )
        selections.append(TileFamily(folder.name, variants, default_id))

    logger.debug("Discovered %d tile selections in %s", len(selections), root)
    return selections


class CanvasSurface:
    """Pillow RGBA canvas that renders each placement as a resized tile.

    The canvas grows when a placement lands outside its current bounds,
    so stacked variations need no up-front sizing.
    """

    def __init__(
        self,
        width: int,
        height: int,
        tiles: dict[str, Path],
        background: tuple[int, int, int, int] = (0, 0, 0, 0),
    ) -> None:
        self.background = background
        self.tiles = tiles
        self.canvas = Image.new("RGBA", (max(1, width), max(1, height)), background)
        self.placed: list[tuple[str, int, int, int, int]] = []
        self._sources: dict[str, Image.Image] = {}
        self._resized: dict[tuple[str, int, int], Image.Image] = {}

    @classmethod
    def for_candidates(
        cls, width: int, height: int, candidates: list[TileCandidate],
    ) -> CanvasSurface:
        return cls(width, height, {c.id: Path(c.handle) for c in candidates})

    def _tile_image(self, tile_id: str, w: int, h: int) -> Image.Image:
        key = (tile_id, w, h)
        if key not in self._resized:
            if tile_id not in self._sources:
                with Image.open(self.tiles[tile_id]) as img:
                    self._sources[tile_id] = img.convert("RGBA")
            self._resized[key] = self._sources[tile_id].resize((w, h), Image.LANCZOS)
        return self._resized[key]

    def _ensure_size(self, right: int, bottom: int) -> None:
        if right <= self.canvas.width and bottom <= self.canvas.height:
            return
        size = (max(right, self.canvas.width), max(bottom, self.canvas.height))
        grown = Image.new("RGBA", size, self.background)
        grown.paste(self.canvas, (0, 0))
        self.canvas = grown

    def place(self, tile_id: str, x: float, y: float, width: float, height: float) -> int:
        # Round both edges so neighbouring tiles share a pixel boundary
        x0, y0 = round(x), round(y)
        x1, y1 = round(x + width), round(y + height)
        w, h = max(1, x1 - x0), max(1, y1 - y0)

        tile = self._tile_image(tile_id, w, h)
        self._ensure_size(x0 + w, y0 + h)
        self.canvas.alpha_composite(tile, (x0, y0))
        self.placed.append((tile_id, x0, y0, w, h))
        return len(self.placed) - 1

    def clear(self) -> None:
        self.canvas = Image.new("RGBA", self.canvas.size, self.background)
        self.placed.clear()

    def to_array(self) -> np.ndarray:
        return np.array(self.canvas, dtype=np.uint8)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        img = self.canvas
        if path.suffix.lower() in {".jpg", ".jpeg", ".bmp"}:
            img = img.convert("RGB")
        img.save(path)
