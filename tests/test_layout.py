"""Tests for the layout engine: traversal, placement and variations."""

from __future__ import annotations

import asyncio
from collections import Counter
from pathlib import Path

import numpy as np
import pytest
from PIL import Image
from typer.testing import CliRunner

from tile_mosaic import layout as layout_module
from tile_mosaic.cli import app
from tile_mosaic.config import MosaicConfig
from tile_mosaic.errors import GridTooSmallError, LayoutFailedError, NoCandidatesError
from tile_mosaic.grid import SignatureGrid
from tile_mosaic.layout import LayoutEngine, LayoutResult, RunState
from tile_mosaic.matcher import rank_alternatives
from tile_mosaic.planner import aggregate_block
from tile_mosaic.signature import Signature
from tile_mosaic.tiles import TileCandidate, TileLibrary

# -- Helpers -----------------------------------------------------------


class RecordingSurface:
    def __init__(self, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.placed: list[tuple[str, float, float, float, float]] = []
        self.cleared = 0

    def place(self, tile_id: str, x: float, y: float, width: float, height: float) -> int:
        if tile_id == self.fail_on:
            msg = f"cannot instantiate {tile_id}"
            raise RuntimeError(msg)
        self.placed.append((tile_id, x, y, width, height))
        return len(self.placed)

    def clear(self) -> None:
        self.cleared += 1
        self.placed.clear()


def grey(v: float) -> Signature:
    return Signature(v, (v, v, v), 0.0)


def library_of(*sigs: Signature) -> TileLibrary:
    cands = [TileCandidate(f"t{i}", f"tile {i}") for i in range(len(sigs))]
    return TileLibrary(cands, list(sigs))


def uniform_grid(rows: int, cols: int, v: float) -> SignatureGrid:
    return SignatureGrid.from_signatures([[grey(v)] * cols for _ in range(rows)])


def blocky_grid(rows: int, cols: int, seed: int) -> SignatureGrid:
    """Random flat patches so every footprint size shows up."""
    rng = np.random.default_rng(seed)
    coarse = rng.choice([0.1, 0.4, 0.7, 0.95], size=(rows // 4 + 1, cols // 4 + 1))
    level = np.kron(coarse, np.ones((4, 4)))[:rows, :cols]
    level = level + rng.uniform(-0.01, 0.01, size=level.shape)
    return SignatureGrid(
        level, np.repeat(level[..., None], 3, axis=2), np.zeros((rows, cols)),
    )


def coverage(result: LayoutResult, index: int = 0) -> np.ndarray:
    grid = result.grid
    counts = np.zeros((grid.rows, grid.columns), dtype=int)
    for p in result.layouts[index].placements:
        for x, y in p.footprint.cells():
            counts[y, x] += 1
    return counts


def run_layout(
    engine: LayoutEngine, grid: SignatureGrid, lib: TileLibrary, width: float,
) -> LayoutResult:
    return asyncio.run(engine.layout(grid, lib, width))


@pytest.fixture
def five_tiles() -> TileLibrary:
    return library_of(grey(0.1), grey(0.3), grey(0.5), grey(0.7), grey(0.9))


@pytest.fixture
def eight_tiles() -> TileLibrary:
    return library_of(*(grey(v) for v in (0.05, 0.2, 0.35, 0.45, 0.55, 0.65, 0.8, 0.95)))


# -- Primary pass ------------------------------------------------------

class TestPrimaryLayout:
    def test_two_tile_tie_alternates(self) -> None:
        grid = uniform_grid(4, 4, 0.5)
        lib = library_of(grey(0.25), grey(0.75))
        engine = LayoutEngine(MosaicConfig(columns=4), RecordingSurface())
        result = run_layout(engine, grid, lib, 400)

        tiles = [p.tile_id for p in result.primary.placements]
        assert tiles[0] == "t0"
        assert tiles[1] == "t1"
        assert tiles == ["t0", "t1"] * 8
        assert result.primary.usage["t0"] == 8
        assert result.primary.usage["t1"] == 8

    def test_placement_geometry(self) -> None:
        grid = uniform_grid(3, 4, 0.5)
        engine = LayoutEngine(MosaicConfig(columns=4), RecordingSurface())
        result = run_layout(engine, grid, library_of(grey(0.5)), 320)

        assert result.tile_base_size == 80
        p = next(p for p in result.primary.placements if (p.footprint.x, p.footprint.y) == (1, 2))
        assert (p.x, p.y, p.width, p.height) == (80, 160, 80, 80)
        assert result.layout_height == 240

    def test_row_major_order(self) -> None:
        grid = uniform_grid(3, 3, 0.5)
        engine = LayoutEngine(MosaicConfig(columns=3), RecordingSurface())
        result = run_layout(engine, grid, library_of(grey(0.5)), 30)
        cells = [(p.footprint.x, p.footprint.y) for p in result.primary.placements]
        assert cells == [(x, y) for y in range(3) for x in range(3)]

    def test_emits_to_surface(self) -> None:
        surface = RecordingSurface()
        grid = uniform_grid(2, 2, 0.5)
        engine = LayoutEngine(MosaicConfig(columns=2), surface)
        run_layout(engine, grid, library_of(grey(0.5)), 20)
        assert surface.placed == [
            ("t0", 0.0, 0.0, 10.0, 10.0),
            ("t0", 10.0, 0.0, 10.0, 10.0),
            ("t0", 0.0, 10.0, 10.0, 10.0),
            ("t0", 10.0, 10.0, 10.0, 10.0),
        ]

    def test_uniform_image_uses_largest_tiles(self) -> None:
        grid = uniform_grid(8, 8, 0.5)
        cfg = MosaicConfig(columns=8, size_variation="highly-variable")
        result = run_layout(LayoutEngine(cfg, RecordingSurface()), grid, library_of(grey(0.5)), 80)
        assert result.primary.size_histogram == {4: 4}
        assert all(p.width == 40 for p in result.primary.placements)

    def test_variable_caps_at_two(self) -> None:
        grid = uniform_grid(4, 6, 0.5)
        cfg = MosaicConfig(columns=6, size_variation="variable")
        result = run_layout(LayoutEngine(cfg, RecordingSurface()), grid, library_of(grey(0.5)), 60)
        assert result.primary.size_histogram == {2: 6}

    @pytest.mark.parametrize("mode", ["uniform", "variable", "highly-variable"])
    @pytest.mark.parametrize("shape", [(7, 10), (16, 16), (1, 5), (9, 3)])
    def test_footprints_partition_grid(
        self, mode: str, shape: tuple[int, int], five_tiles: TileLibrary,
    ) -> None:
        rows, cols = shape
        grid = blocky_grid(rows, cols, seed=rows * 31 + cols)
        cfg = MosaicConfig(columns=cols, size_variation=mode)
        result = run_layout(LayoutEngine(cfg, RecordingSurface()), grid, five_tiles, cols * 10)

        np.testing.assert_array_equal(coverage(result), np.ones((rows, cols), dtype=int))
        assert result.primary.covered_cells() == rows * cols
        assert max(result.primary.size_histogram) <= cfg.max_tile_cells

    def test_mixed_sizes_appear(self, five_tiles: TileLibrary) -> None:
        grid = blocky_grid(16, 16, seed=5)
        cfg = MosaicConfig(columns=16, size_variation="highly-variable")
        result = run_layout(LayoutEngine(cfg, RecordingSurface()), grid, five_tiles, 160)
        assert 4 in result.primary.size_histogram

    def test_usage_counts_match_placements(self, five_tiles: TileLibrary) -> None:
        grid = blocky_grid(10, 10, seed=1)
        result = run_layout(
            LayoutEngine(MosaicConfig(columns=10), RecordingSurface()), grid, five_tiles, 100,
        )
        counted = Counter(p.tile_id for p in result.primary.placements)
        for tile_id, n in counted.items():
            assert result.primary.usage[tile_id] == n

    def test_state_done(self) -> None:
        engine = LayoutEngine(MosaicConfig(columns=2), RecordingSurface())
        assert engine.state is RunState.IDLE
        run_layout(engine, uniform_grid(2, 2, 0.5), library_of(grey(0.5)), 20)
        assert engine.state is RunState.DONE


# -- Failure handling --------------------------------------------------

class TestFailures:
    def test_placement_error_skips_region(self) -> None:
        surface = RecordingSurface(fail_on="t1")
        grid = uniform_grid(2, 4, 0.5)
        lib = library_of(grey(0.25), grey(0.75))
        engine = LayoutEngine(MosaicConfig(columns=4), surface)
        result = run_layout(engine, grid, lib, 40)

        assert engine.state is RunState.DONE
        assert len(result.primary.placements) == 8
        assert result.primary.skipped == [1, 3, 5, 7]
        assert len(surface.placed) == 4
        assert surface.cleared == 0

    def test_unexpected_error_aborts_and_clears(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = {"n": 0}
        real_best_match = layout_module.best_match

        def flaky(*args: object, **kwargs: object) -> int:
            calls["n"] += 1
            if calls["n"] == 3:
                msg = "boom"
                raise RuntimeError(msg)
            return real_best_match(*args, **kwargs)

        monkeypatch.setattr(layout_module, "best_match", flaky)
        surface = RecordingSurface()
        engine = LayoutEngine(MosaicConfig(columns=3), surface)
        with pytest.raises(LayoutFailedError):
            run_layout(engine, uniform_grid(3, 3, 0.5), library_of(grey(0.5)), 30)
        assert engine.state is RunState.FAILED
        assert surface.cleared == 1
        assert surface.placed == []

    def test_empty_library(self) -> None:
        engine = LayoutEngine(MosaicConfig(columns=2), RecordingSurface())
        with pytest.raises(NoCandidatesError):
            run_layout(engine, uniform_grid(2, 2, 0.5), library_of(), 20)
        assert engine.state is RunState.FAILED

    def test_progress_callback_errors_ignored(self) -> None:
        seen: list[tuple[int, int]] = []

        def on_progress(done: int, total: int) -> None:
            seen.append((done, total))
            msg = "ui went away"
            raise RuntimeError(msg)

        engine = LayoutEngine(MosaicConfig(columns=5), RecordingSurface(), on_progress=on_progress)
        run_layout(engine, uniform_grid(5, 5, 0.5), library_of(grey(0.5)), 50)
        assert seen[-1] == (25, 25)
        assert engine.state is RunState.DONE


# -- Full run ----------------------------------------------------------

class TestRun:
    @staticmethod
    def _rasterizer(buffers: dict[str, np.ndarray]):
        async def rasterize(handle: str) -> np.ndarray:
            await asyncio.sleep(0)
            return buffers[handle]
        return rasterize

    def test_end_to_end(self) -> None:
        buffers = {
            "image": np.full((100, 100, 4), 255, dtype=np.uint8),
            "dark": np.tile(np.array([30, 30, 30, 255], dtype=np.uint8), (8, 8, 1)),
            "light": np.tile(np.array([240, 240, 240, 255], dtype=np.uint8), (8, 8, 1)),
        }
        buffers["image"][..., :3] = 128
        cands = [TileCandidate("dark", "dark", "dark"), TileCandidate("light", "light", "light")]
        surface = RecordingSurface()
        engine = LayoutEngine(MosaicConfig(columns=4, scale=2), surface)
        result = asyncio.run(
            engine.run(self._rasterizer(buffers), "image", 100, 100, cands),
        )
        assert (result.grid.rows, result.grid.columns) == (4, 4)
        assert not result.grid.synthetic
        assert result.tile_base_size == 50
        assert len(surface.placed) == 16
        assert {p.tile_id for p in result.primary.placements} == {"dark", "light"}
        assert engine.state is RunState.DONE

    def test_image_failure_falls_back(self) -> None:
        async def rasterize(handle: str) -> np.ndarray:
            if handle == "image":
                raise OSError("export failed")
            return np.zeros((4, 4, 4), dtype=np.uint8) + 200

        engine = LayoutEngine(MosaicConfig(columns=6), RecordingSurface())
        result = asyncio.run(
            engine.run(rasterize, "image", 60, 30, [TileCandidate("a", "a", "a")]),
        )
        assert result.grid.synthetic
        assert result.primary.covered_cells() == 18

    def test_duplicate_candidates_collapse(self) -> None:
        rng = np.random.default_rng(3)
        buffers = {
            "image": rng.integers(0, 256, (40, 40, 4), dtype=np.uint8),
            "dark": np.tile(np.array([30, 30, 30, 255], dtype=np.uint8), (8, 8, 1)),
            "light": np.tile(np.array([240, 240, 240, 255], dtype=np.uint8), (8, 8, 1)),
        }
        buffers["image"][..., 3] = 255
        cands = [
            TileCandidate("a", "a", "dark"),
            TileCandidate("a", "a again", "light"),
            TileCandidate("b", "b", "light"),
        ]
        cfg = MosaicConfig(columns=10, variation_count=3)
        engine = LayoutEngine(cfg, RecordingSurface())
        result = asyncio.run(engine.run(self._rasterizer(buffers), "image", 40, 40, cands))

        assert result.library.ids == ["a", "b"]
        assert result.library.candidates[0].name == "a"
        for variation in result.variations:
            for i in variation.replaced:
                assert variation.placements[i].tile_id != result.primary.placements[i].tile_id

    def test_no_candidates(self) -> None:
        engine = LayoutEngine(MosaicConfig(), RecordingSurface())
        with pytest.raises(NoCandidatesError):
            asyncio.run(engine.run(self._rasterizer({}), "image", 100, 100, []))
        assert engine.state is RunState.FAILED

    def test_grid_too_small(self) -> None:
        buffers = {"image": np.zeros((1, 1000, 4), dtype=np.uint8)}
        engine = LayoutEngine(MosaicConfig(columns=32), RecordingSurface())
        with pytest.raises(GridTooSmallError):
            asyncio.run(
                engine.run(
                    self._rasterizer(buffers), "image", 1000, 1,
                    [TileCandidate("a", "a", "image")],
                ),
            )
        assert engine.state is RunState.FAILED


# -- Variations --------------------------------------------------------

class TestVariations:
    def _result(self, five_tiles: TileLibrary, count: int, seed: int = 7) -> LayoutResult:
        grid = blocky_grid(10, 10, seed=11)
        cfg = MosaicConfig(columns=10, variation_count=count, seed=seed)
        return run_layout(LayoutEngine(cfg, RecordingSurface()), grid, five_tiles, 100)

    def test_count_and_differences(self, five_tiles: TileLibrary) -> None:
        result = self._result(five_tiles, 3)
        assert len(result.layouts) == 3
        assert len(result.variations) == 2

        primary = [p.tile_id for p in result.primary.placements]
        assert len(primary) == 100
        for variation in result.variations:
            tiles = [p.tile_id for p in variation.placements]
            diffs = [i for i, (a, b) in enumerate(zip(primary, tiles)) if a != b]
            assert 5 <= len(diffs) <= 10
            assert len(set(variation.replaced)) == len(variation.replaced)
            assert diffs == sorted(variation.replaced)

    def test_structure_and_offset(self, five_tiles: TileLibrary) -> None:
        result = self._result(five_tiles, 3)
        gap = MosaicConfig().variation_gap
        for variation in result.variations:
            expected = variation.index * (result.layout_height + gap)
            assert variation.offset_y == expected
            for p, q in zip(result.primary.placements, variation.placements):
                assert q.footprint == p.footprint
                assert q.y == p.y + expected
                assert (q.x, q.width, q.height) == (p.x, p.width, p.height)

    def test_primary_untouched(self, five_tiles: TileLibrary) -> None:
        result = self._result(five_tiles, 4)
        assert all(p.y < result.layout_height for p in result.primary.placements)
        assert result.primary.replaced == []

    def test_replacements_come_from_top_three(self, eight_tiles: TileLibrary) -> None:
        grid = blocky_grid(10, 10, seed=11)
        for seed in range(5):
            cfg = MosaicConfig(columns=10, variation_count=2, seed=seed)
            result = run_layout(LayoutEngine(cfg, RecordingSurface()), grid, eight_tiles, 100)
            variation = result.variations[0]
            assert variation.replaced

            usage = result.primary.usage.copy()
            for i in variation.replaced:
                fp = result.primary.placements[i].footprint
                target = aggregate_block(result.grid, fp.x, fp.y, fp.size)
                current = eight_tiles.index_of(result.primary.placements[i].tile_id)
                chosen = eight_tiles.index_of(variation.placements[i].tile_id)
                top = list(rank_alternatives(target, eight_tiles, usage, exclude=current)[:3])
                assert chosen != current
                assert chosen in top
                usage.increment(variation.placements[i].tile_id)

    def test_choice_spreads_over_top_three(self, eight_tiles: TileLibrary) -> None:
        grid = blocky_grid(10, 10, seed=11)
        positions: set[int] = set()
        for seed in range(10):
            cfg = MosaicConfig(columns=10, variation_count=2, seed=seed)
            result = run_layout(LayoutEngine(cfg, RecordingSurface()), grid, eight_tiles, 100)
            variation = result.variations[0]
            usage = result.primary.usage.copy()
            for i in variation.replaced:
                fp = result.primary.placements[i].footprint
                target = aggregate_block(result.grid, fp.x, fp.y, fp.size)
                current = eight_tiles.index_of(result.primary.placements[i].tile_id)
                ranked = list(rank_alternatives(target, eight_tiles, usage, exclude=current))
                positions.add(ranked.index(eight_tiles.index_of(variation.placements[i].tile_id)))
                usage.increment(variation.placements[i].tile_id)
        assert positions <= {0, 1, 2}
        assert len(positions) > 1

    def test_clamped_to_ten(self, five_tiles: TileLibrary) -> None:
        assert len(self._result(five_tiles, 15).layouts) == 10

    def test_single_layout_by_default(self, five_tiles: TileLibrary) -> None:
        assert self._result(five_tiles, 1).variations == []

    def test_seeded_reproducible(self, five_tiles: TileLibrary) -> None:
        a = self._result(five_tiles, 3, seed=99)
        b = self._result(five_tiles, 3, seed=99)
        for la, lb in zip(a.layouts, b.layouts):
            assert [p.tile_id for p in la.placements] == [p.tile_id for p in lb.placements]

    def test_variations_emitted(self, five_tiles: TileLibrary) -> None:
        surface = RecordingSurface()
        grid = blocky_grid(10, 10, seed=11)
        cfg = MosaicConfig(columns=10, variation_count=3)
        run_layout(LayoutEngine(cfg, surface), grid, five_tiles, 100)
        assert len(surface.placed) == 300

    def test_single_tile_library_cannot_vary(self) -> None:
        grid = uniform_grid(10, 10, 0.5)
        cfg = MosaicConfig(columns=10, variation_count=2)
        result = run_layout(LayoutEngine(cfg, RecordingSurface()), grid, library_of(grey(0.5)), 100)
        assert result.variations[0].replaced == []


# -- CLI ---------------------------------------------------------------

class TestCli:
    @pytest.fixture
    def workspace(self, tmp_path: Path) -> Path:
        rng = np.random.default_rng(0)
        Image.fromarray(rng.integers(0, 256, (48, 64, 3), dtype=np.uint8)).save(
            tmp_path / "photo.png",
        )
        tiles = tmp_path / "tiles"
        tiles.mkdir()
        for name, rgb in {"black": (0, 0, 0), "white": (255, 255, 255), "red": (200, 30, 30)}.items():
            Image.new("RGBA", (8, 8), (*rgb, 255)).save(tiles / f"{name}.png")
        return tmp_path

    def test_create(self, workspace: Path) -> None:
        out = workspace / "out"
        res = CliRunner().invoke(app, [
            "create", str(workspace / "photo.png"), str(workspace / "tiles"),
            "--output", str(out), "--columns", "8", "--json", "--variations", "2",
        ])
        assert res.exit_code == 0, res.output
        mosaic = Image.open(out / "photo_mosaic.png")
        assert mosaic.width == 64
        assert mosaic.height == 48 * 2 + MosaicConfig().variation_gap
        assert (out / "photo_grid.png").exists()
        assert (out / "photo_comparison.png").exists()
        assert (out / "photo_placements.json").exists()

    def test_missing_tiles(self, workspace: Path) -> None:
        res = CliRunner().invoke(app, [
            "create", str(workspace / "photo.png"), str(workspace / "empty"),
        ])
        assert res.exit_code == 1

    def test_bad_size_variation(self, workspace: Path) -> None:
        res = CliRunner().invoke(app, [
            "create", str(workspace / "photo.png"), str(workspace / "tiles"),
            "--sizes", "huge",
        ])
        assert res.exit_code == 1

    def test_signatures(self, workspace: Path) -> None:
        res = CliRunner().invoke(app, ["signatures", str(workspace / "tiles")])
        assert res.exit_code == 0, res.output
        assert "black" in res.output
