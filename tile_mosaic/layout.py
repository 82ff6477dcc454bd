"""Layout engine: grid traversal, placement emission and variations.

One :class:`LayoutEngine` owns every piece of mutable state for a run
(signature grid, tile library, occupancy and usage counts).  Variations
work on cloned structures and never touch the primary layout.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

import numpy as np

from tile_mosaic.config import MosaicConfig
from tile_mosaic.errors import LayoutFailedError, MosaicError, NoCandidatesError
from tile_mosaic.grid import Rasterizer, SignatureGrid, sample_image
from tile_mosaic.matcher import UsageCounter, best_match, rank_alternatives
from tile_mosaic.planner import aggregate_block, free_size, plan_footprint
from tile_mosaic.tiles import TileCandidate, TileLibrary, TileSignatureCache

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

# Variations replace between 5 % and 10 % of the footprints
VARIATION_MIN_PCT = 5.0
VARIATION_MAX_PCT = 10.0
VARIATION_TOP_K = 3

PROGRESS_EVERY = 10


class RunState(enum.Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    EXTRACTING = "extracting"
    LAYING_OUT = "laying_out"
    GENERATING_VARIATIONS = "generating_variations"
    DONE = "done"
    FAILED = "failed"


class PlacementSurface(Protocol):
    """Where placements end up (a canvas, a scene graph, ...)."""

    def place(self, tile_id: str, x: float, y: float, width: float, height: float) -> Any:
        ...

    def clear(self) -> None:
        ...


@dataclass(frozen=True)
class Footprint:
    x: int
    y: int
    size: int

    def cells(self) -> list[tuple[int, int]]:
        return [
            (self.x + dx, self.y + dy)
            for dy in range(self.size)
            for dx in range(self.size)
        ]


@dataclass(frozen=True)
class Placement:
    """A tile instance in output pixels, tied to the footprint it covers."""

    x: float
    y: float
    width: float
    height: float
    tile_id: str
    footprint: Footprint


@dataclass
class Layout:
    """One complete mosaic: the primary (index 0) or a variation."""

    index: int
    offset_y: float
    placements: list[Placement]
    usage: UsageCounter
    skipped: list[int] = field(default_factory=list)
    replaced: list[int] = field(default_factory=list)

    @property
    def size_histogram(self) -> dict[int, int]:
        return dict(sorted(Counter(p.footprint.size for p in self.placements).items()))

    @property
    def distinct_tiles(self) -> int:
        return len({p.tile_id for p in self.placements})

    def covered_cells(self) -> int:
        return sum(p.footprint.size ** 2 for p in self.placements)


@dataclass
class LayoutResult:
    grid: SignatureGrid
    library: TileLibrary
    tile_base_size: float
    layouts: list[Layout]

    @property
    def primary(self) -> Layout:
        return self.layouts[0]

    @property
    def variations(self) -> list[Layout]:
        return self.layouts[1:]

    @property
    def layout_width(self) -> float:
        return self.grid.columns * self.tile_base_size

    @property
    def layout_height(self) -> float:
        return self.grid.rows * self.tile_base_size


class LayoutEngine:
    """Drives one mosaic run from rasterization to placed tiles.

    Args:
        config:      Run parameters (validated on entry).
        surface:     Receives every placement; cleared if the run aborts.
        rng:         Random source for variations.  Defaults to
                     ``np.random.default_rng(config.seed)``.
        on_progress: Optional ``(cells_done, cells_total)`` callback.
    """

    def __init__(
        self,
        config: MosaicConfig,
        surface: PlacementSurface,
        rng: np.random.Generator | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.config = config.validate()
        self.surface = surface
        self.rng = rng if rng is not None else np.random.default_rng(config.seed)
        self.on_progress = on_progress
        self.state = RunState.IDLE

    # -- full pipeline -------------------------------------------------

    async def run(
        self,
        image_rasterizer: Rasterizer,
        image_handle: Any,
        image_width: float,
        image_height: float,
        candidates: list[TileCandidate],
        tile_rasterizer: Rasterizer | None = None,
    ) -> LayoutResult:
        """Sample the image, extract tile signatures and lay out the mosaic."""
        cfg = self.config
        if not candidates:
            self.state = RunState.FAILED
            msg = "No tile candidates available"
            raise NoCandidatesError(msg)

        try:
            self.state = RunState.SAMPLING
            grid = await sample_image(
                image_rasterizer, image_handle, image_width, image_height,
                cfg.columns,
                transparent_as_white=cfg.image_alpha_as_white,
                match_resolution=cfg.match_resolution,
                timeout=cfg.image_timeout,
            )

            self.state = RunState.EXTRACTING
            cache = TileSignatureCache(
                tile_rasterizer or image_rasterizer,
                transparent_as_white=cfg.tile_alpha_as_white,
                match_resolution=cfg.match_resolution,
                timeout=cfg.tile_timeout,
            )
            library = await cache.build(candidates)
        except MosaicError:
            self.state = RunState.FAILED
            raise

        return await self.layout(grid, library, image_width * cfg.scale)

    async def layout(
        self,
        grid: SignatureGrid,
        library: TileLibrary,
        output_width: float,
    ) -> LayoutResult:
        """Lay out the primary mosaic plus any configured variations."""
        if len(library) == 0:
            self.state = RunState.FAILED
            msg = "No tile candidates available"
            raise NoCandidatesError(msg)

        base = output_width / grid.columns
        try:
            self.state = RunState.LAYING_OUT
            primary = await self._primary_pass(grid, library, base)
            result = LayoutResult(grid, library, base, [primary])

            n_variations = self.config.effective_variation_count - 1
            if n_variations > 0:
                self.state = RunState.GENERATING_VARIATIONS
                for i in range(1, n_variations + 1):
                    offset = i * (result.layout_height + self.config.variation_gap)
                    result.layouts.append(
                        await self._variation_pass(i, primary, grid, library, offset),
                    )
        except Exception as exc:
            self.state = RunState.FAILED
            logger.exception("Mosaic layout failed")
            try:
                self.surface.clear()
            except Exception:
                logger.exception("Could not remove the partial mosaic")
            msg = f"Mosaic layout failed: {exc}"
            raise LayoutFailedError(msg) from exc

        self.state = RunState.DONE
        logger.info(
            "Mosaic done | %d placements  %d/%d tiles used  sizes=%s",
            len(primary.placements), primary.distinct_tiles, len(library),
            primary.size_histogram,
        )
        return result

    # -- passes --------------------------------------------------------

    async def _primary_pass(
        self, grid: SignatureGrid, library: TileLibrary, base: float,
    ) -> Layout:
        rows, columns = grid.rows, grid.columns
        total_cells = rows * columns
        max_size = self.config.max_tile_cells

        occupied = np.zeros((rows, columns), dtype=bool)
        usage = UsageCounter()
        layout = Layout(0, 0.0, [], usage)
        covered = 0

        logger.info("Laying out %dx%d grid (max tile %dx%d) ...", columns, rows, max_size, max_size)
        t0 = time.perf_counter()

        for y in range(rows):
            for x in range(columns):
                if occupied[y, x]:
                    continue

                available = free_size(occupied, x, y, max_size)
                plan = plan_footprint(grid, occupied, x, y, available)
                tile = library.candidates[best_match(plan.signature, library, usage)]

                s = plan.size
                occupied[y:y + s, x:x + s] = True
                placement = Placement(
                    x * base, y * base, s * base, s * base,
                    tile.id, Footprint(x, y, s),
                )
                if not self._emit(placement):
                    layout.skipped.append(len(layout.placements))
                layout.placements.append(placement)
                usage.increment(tile.id)

                covered += s * s
                if len(layout.placements) % PROGRESS_EVERY == 0:
                    self._notify(covered, total_cells)

            if (y + 1) % self.config.yield_every_rows == 0:
                await asyncio.sleep(0)

        self._notify(covered, total_cells)
        logger.info(
            "Primary layout ready  (%d footprints, %.2f s)",
            len(layout.placements), time.perf_counter() - t0,
        )
        return layout

    async def _variation_pass(
        self,
        index: int,
        primary: Layout,
        grid: SignatureGrid,
        library: TileLibrary,
        offset_y: float,
    ) -> Layout:
        placements = list(primary.placements)
        usage = primary.usage.copy()
        total = len(placements)

        pct = self.rng.uniform(VARIATION_MIN_PCT, VARIATION_MAX_PCT) / 100.0
        count = min(total, round(pct * total))
        chosen = sorted(int(i) for i in self.rng.choice(total, size=count, replace=False))

        replaced: list[int] = []
        for i in chosen:
            fp = placements[i].footprint
            target = aggregate_block(grid, fp.x, fp.y, fp.size)
            current = library.index_of(placements[i].tile_id)
            ranked = rank_alternatives(target, library, usage, exclude=current)
            if len(ranked) == 0:
                continue
            top = ranked[:VARIATION_TOP_K]
            pick = library.candidates[int(top[self.rng.integers(len(top))])]
            placements[i] = replace(placements[i], tile_id=pick.id)
            usage.increment(pick.id)
            replaced.append(i)

        layout = Layout(
            index,
            offset_y,
            [replace(p, y=p.y + offset_y) for p in placements],
            usage,
            replaced=replaced,
        )
        for n, placement in enumerate(layout.placements):
            if not self._emit(placement):
                layout.skipped.append(n)
            if (n + 1) % (self.config.yield_every_rows * grid.columns) == 0:
                await asyncio.sleep(0)

        logger.info(
            "Variation %d: re-matched %d/%d footprints (%.1f%%)",
            index, len(replaced), total, pct * 100,
        )
        return layout

    # -- host interaction ----------------------------------------------

    def _emit(self, placement: Placement) -> bool:
        try:
            self.surface.place(
                placement.tile_id,
                placement.x, placement.y, placement.width, placement.height,
            )
        except Exception:
            fp = placement.footprint
            logger.exception(
                "Could not place tile %s at cell (%d, %d); leaving it empty",
                placement.tile_id, fp.x, fp.y,
            )
            return False
        return True

    def _notify(self, done: int, total: int) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(done, total)
        except Exception:
            logger.debug("Progress callback raised", exc_info=True)
