"""Centralised configuration via a frozen dataclass."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from tile_mosaic.errors import InvalidConfigError

# Size-variation mode -> largest footprint side in cells
SIZE_VARIATIONS: dict[str, int] = {
    "uniform": 1,
    "variable": 2,
    "highly-variable": 4,
}

MAX_VARIATIONS = 10


@dataclass(frozen=True)
class MosaicConfig:
    """All tuneable parameters for a mosaic run.

    Attributes:
        columns:              Grid column count; rows follow the aspect ratio.
        size_variation:       "uniform", "variable" or "highly-variable".
        scale:                Output width = image width * scale.
        match_resolution:     Max samples per axis when summarising a region.
        use_all_variants:     Use every variant of a tile family, not just its default.
        image_alpha_as_white: Treat transparent image pixels as white.
        tile_alpha_as_white:  Treat transparent tile pixels as white.
        variation_count:      Number of layouts to produce (clamped to 10).
        seed:                 Random seed for variations (None = non-deterministic).
        image_timeout:        Seconds to wait for the target image raster.
        tile_timeout:         Seconds to wait for each tile raster.
        variation_gap:        Vertical gap in pixels between stacked layouts.
        yield_every_rows:     Grid rows processed between event-loop yields.
        tile_size:            Only keep square tiles of this pixel size (None = all).
        output_format:        Image format for saved files.
        save_grid:            Persist the sampled signature grid as an image.
        save_comparison:      Generate a side-by-side comparison grid.
        save_placements:      Dump placements as JSON.
        output_dir:           Folder for results.
    """

    # Grid
    columns: int = 32
    size_variation: str = "uniform"  # see SIZE_VARIATIONS
    scale: int = 1
    match_resolution: int = 16

    # Tile library
    use_all_variants: bool = True
    tile_size: int | None = None

    # Transparency handling
    image_alpha_as_white: bool = False
    tile_alpha_as_white: bool = False

    # Variations
    variation_count: int = 1
    seed: int | None = 42
    variation_gap: int = 20

    # Host timeouts / scheduling
    image_timeout: float = 10.0
    tile_timeout: float = 5.0
    yield_every_rows: int = 4

    # Output
    output_format: str = "png"
    save_grid: bool = True
    save_comparison: bool = True
    save_placements: bool = False

    # Paths
    output_dir: Path = field(default_factory=lambda: Path("output"))

    SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(
        {".jpg", ".jpeg", ".png", ".bmp", ".tiff", ".tif", ".webp", ".gif"}
    )

    @property
    def max_tile_cells(self) -> int:
        """Largest footprint side allowed by :attr:`size_variation`."""
        return SIZE_VARIATIONS[self.size_variation]

    @property
    def effective_variation_count(self) -> int:
        return min(self.variation_count, MAX_VARIATIONS)

    def validate(self) -> MosaicConfig:
        """Raise :class:`InvalidConfigError` on out-of-range values."""
        if self.columns < 1:
            msg = f"columns must be >= 1, got {self.columns}"
            raise InvalidConfigError(msg)
        if self.size_variation not in SIZE_VARIATIONS:
            available = ", ".join(SIZE_VARIATIONS)
            msg = f"Unknown size variation '{self.size_variation}'. Available: {available}"
            raise InvalidConfigError(msg)
        if self.scale < 1:
            msg = f"scale must be >= 1, got {self.scale}"
            raise InvalidConfigError(msg)
        if self.match_resolution < 1:
            msg = f"match_resolution must be >= 1, got {self.match_resolution}"
            raise InvalidConfigError(msg)
        if self.variation_count < 1:
            msg = f"variation_count must be >= 1, got {self.variation_count}"
            raise InvalidConfigError(msg)
        if self.variation_gap < 0:
            msg = f"variation_gap must be >= 0, got {self.variation_gap}"
            raise InvalidConfigError(msg)
        if self.image_timeout <= 0 or self.tile_timeout <= 0:
            msg = "timeouts must be positive"
            raise InvalidConfigError(msg)
        if self.yield_every_rows < 1:
            msg = f"yield_every_rows must be >= 1, got {self.yield_every_rows}"
            raise InvalidConfigError(msg)
        return self
