"""Rich command-line interface powered by Typer."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

import numpy as np
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from tile_mosaic.color_utils import mean_delta_e
from tile_mosaic.config import SIZE_VARIATIONS, MosaicConfig
from tile_mosaic.errors import LayoutFailedError, MosaicError
from tile_mosaic.grid import compute_grid_shape
from tile_mosaic.host import (
    CanvasSurface,
    ImageFileRasterizer,
    discover_candidates,
    image_size,
)
from tile_mosaic.image_io import make_comparison_grid, save_placements, save_upscaled
from tile_mosaic.layout import LayoutEngine, LayoutResult
from tile_mosaic.planner import aggregate_block
from tile_mosaic.tiles import TileCandidate, TileSignatureCache, list_candidates

app = typer.Typer(
    name="tile-mosaic",
    help="Rebuild any image from a library of tile graphics.",
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=True)],
    )


def _fail(message: str) -> None:
    console.print(f"[red]✗ {message}[/red]")
    raise typer.Exit(1)


def _quality_metric(result: LayoutResult) -> float:
    """Cell-weighted CIE76 error between each footprint and its tile."""
    grid, library = result.grid, result.library
    targets, matched, weights = [], [], []
    for p in result.primary.placements:
        fp = p.footprint
        targets.append(aggregate_block(grid, fp.x, fp.y, fp.size).color)
        matched.append(library.colors[library.index_of(p.tile_id)])
        weights.append(fp.size ** 2)
    return mean_delta_e(np.array(targets), np.array(matched), np.array(weights))


def _load_candidates(
    tiles_dir: Path, use_all_variants: bool, tile_size: int | None,
) -> list[TileCandidate]:
    if not tiles_dir.is_dir():
        _fail(f"Tile folder {tiles_dir} does not exist")
    candidates = list_candidates(
        discover_candidates(tiles_dir, tile_size, MosaicConfig.SUPPORTED_EXTENSIONS),
        use_all_variants,
    )
    if not candidates:
        size_note = f" of size {tile_size}x{tile_size}" if tile_size else ""
        _fail(f"No tiles{size_note} found in {tiles_dir}/")
    return candidates


# Defaults come from MosaicConfig - single source of truth
_DEFAULTS = MosaicConfig()


# -- create command ----------------------------------------------------

@app.command()
def create(
    image: Path = typer.Argument(..., help="Path to the target image"),
    tiles_dir: Path = typer.Argument(..., help="Folder with tile images / variant folders"),
    output_dir: Path = typer.Option(
        _DEFAULTS.output_dir, "--output", "-o", help="Results folder",
    ),
    columns: int = typer.Option(
        _DEFAULTS.columns, "--columns", "-c", help="Grid columns (rows follow aspect ratio)",
    ),
    size_variation: str = typer.Option(
        _DEFAULTS.size_variation, "--sizes",
        help=f"Tile size variation: {', '.join(SIZE_VARIATIONS)}",
    ),
    scale: int = typer.Option(
        _DEFAULTS.scale, "--scale", "-x", help="Output width = image width x scale",
    ),
    match_resolution: int = typer.Option(
        _DEFAULTS.match_resolution, "--resolution", "-r",
        help="Max samples per axis when summarising a region",
    ),
    use_all_variants: bool = typer.Option(
        _DEFAULTS.use_all_variants, "--all-variants/--default-only",
        help="Use every variant of a tile family or only its default",
    ),
    image_alpha_as_white: bool = typer.Option(
        _DEFAULTS.image_alpha_as_white, "--image-alpha-white/--image-alpha-skip",
    ),
    tile_alpha_as_white: bool = typer.Option(
        _DEFAULTS.tile_alpha_as_white, "--tile-alpha-white/--tile-alpha-skip",
    ),
    variations: int = typer.Option(
        _DEFAULTS.variation_count, "--variations", "-n",
        help="Layouts to generate (max 10)",
    ),
    seed: int | None = typer.Option(
        _DEFAULTS.seed, "--seed", "-s", help="Random seed for variations",
    ),
    tile_size: int | None = typer.Option(
        None, "--tile-size", help="Only use square tiles of this pixel size",
    ),
    save_grid: bool = typer.Option(_DEFAULTS.save_grid, "--grid/--no-grid"),
    save_comparison: bool = typer.Option(
        _DEFAULTS.save_comparison, "--comparison/--no-comparison",
    ),
    save_json: bool = typer.Option(
        _DEFAULTS.save_placements, "--json/--no-json", help="Dump placements as JSON",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Build a tile mosaic of IMAGE from the tiles in TILES_DIR."""
    _setup_logging(verbose)
    logger = logging.getLogger("tile_mosaic")

    cfg = MosaicConfig(
        columns=columns,
        size_variation=size_variation,
        scale=scale,
        match_resolution=match_resolution,
        use_all_variants=use_all_variants,
        tile_size=tile_size,
        image_alpha_as_white=image_alpha_as_white,
        tile_alpha_as_white=tile_alpha_as_white,
        variation_count=variations,
        seed=seed,
        save_grid=save_grid,
        save_comparison=save_comparison,
        save_placements=save_json,
        output_dir=output_dir,
    )
    try:
        cfg.validate()
    except MosaicError as exc:
        _fail(str(exc))

    if not image.is_file():
        _fail(f"Image {image} does not exist")
    candidates = _load_candidates(tiles_dir, cfg.use_all_variants, cfg.tile_size)

    width, height = image_size(image)
    try:
        cols, rows = compute_grid_shape(cfg.columns, width, height)
    except MosaicError as exc:
        _fail(str(exc))

    out_w = width * cfg.scale
    layout_h = rows * out_w / cols

    console.print(Panel.fit(
        f"[bold]TILE MOSAIC[/bold]\n"
        f"Grid: {cols}x{rows}  |  Sizes: {cfg.size_variation}\n"
        f"Tiles: {len(candidates)}  |  Variations: {cfg.effective_variation_count}\n"
        f"Output: {out_w}x{round(layout_h)} px",
        border_style="cyan",
    ))

    output_dir.mkdir(parents=True, exist_ok=True)
    surface = CanvasSurface.for_candidates(out_w, round(layout_h), candidates)
    rasterizer = ImageFileRasterizer()

    t_total = time.perf_counter()
    with Progress(
        TextColumn("[cyan]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Placing tiles", total=cols * rows)

        def _on_progress(done: int, total: int) -> None:
            progress.update(task, completed=done, total=total)

        engine = LayoutEngine(cfg, surface, on_progress=_on_progress)
        try:
            result = asyncio.run(
                engine.run(rasterizer, image, width, height, candidates),
            )
        except MosaicError as exc:
            _fail(str(exc))
        except LayoutFailedError as exc:
            logger.debug("Layout failure", exc_info=exc)
            _fail("Mosaic generation failed; nothing was saved")

    stem = image.stem
    mosaic_path = output_dir / f"{stem}_mosaic.{cfg.output_format}"
    surface.save(mosaic_path)

    if cfg.save_grid:
        save_upscaled(
            result.grid.to_rgb8(),
            output_dir / f"{stem}_grid.{cfg.output_format}",
            max(1, round(result.tile_base_size)),
        )

    if cfg.save_comparison:
        primary = surface.canvas.crop(
            (0, 0, round(result.layout_width), round(result.layout_height)),
        )
        make_comparison_grid(
            image, result.grid.to_rgb8(), primary,
            output_dir / f"{stem}_comparison.{cfg.output_format}",
        )

    if cfg.save_placements:
        save_placements(result, output_dir / f"{stem}_placements.json")

    err = _quality_metric(result)
    elapsed = time.perf_counter() - t_total
    primary_layout = result.primary
    if result.grid.synthetic:
        console.print("  [yellow]! image could not be read; used gradient fallback[/yellow]")
    console.print(
        f"  [green]✓[/green] {mosaic_path.name}  "
        f"[dim]{len(primary_layout.placements)} tiles  "
        f"{primary_layout.distinct_tiles}/{len(result.library)} distinct  "
        f"sizes={primary_layout.size_histogram}  "
        f"ΔE={err:.1f}  time={elapsed:.1f}s[/dim]"
    )


# -- signatures command ------------------------------------------------

@app.command()
def signatures(
    tiles_dir: Path = typer.Argument(..., help="Folder with tile images / variant folders"),
    use_all_variants: bool = typer.Option(
        _DEFAULTS.use_all_variants, "--all-variants/--default-only",
    ),
    tile_alpha_as_white: bool = typer.Option(
        _DEFAULTS.tile_alpha_as_white, "--tile-alpha-white/--tile-alpha-skip",
    ),
    match_resolution: int = typer.Option(_DEFAULTS.match_resolution, "--resolution", "-r"),
    tile_size: int | None = typer.Option(None, "--tile-size"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """List the tile library and each tile's signature."""
    _setup_logging(verbose)

    candidates = _load_candidates(tiles_dir, use_all_variants, tile_size)
    cache = TileSignatureCache(
        ImageFileRasterizer(),
        transparent_as_white=tile_alpha_as_white,
        match_resolution=match_resolution,
        timeout=_DEFAULTS.tile_timeout,
    )
    library = asyncio.run(cache.build(candidates))

    table = Table(title=f"{len(library)} tiles in {tiles_dir}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Tile")
    table.add_column("Brightness", justify="right")
    table.add_column("RGB", justify="right")
    table.add_column("Transparent", justify="right")
    for i, (cand, sig) in enumerate(zip(library.candidates, library.signatures, strict=True)):
        r, g, b = (round(c * 255) for c in sig.color)
        swatch = f"[on rgb({r},{g},{b})]   [/]"
        note = " [yellow](fallback)[/yellow]" if cand.id in cache.failed else ""
        table.add_row(
            str(i),
            cand.name + note,
            f"{sig.brightness:.3f}",
            f"{swatch} {r:3d},{g:3d},{b:3d}",
            f"{sig.transparency_ratio:.0%}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
