"""Result files: grid previews, comparison grids and placement dumps."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from tile_mosaic.layout import LayoutResult


def save_upscaled(
    array: np.ndarray,
    path: str | Path,
    pixel_upscale: int = 12,
) -> None:
    """Save a small array as a nearest-neighbour-upscaled image."""
    img = Image.fromarray(array.astype(np.uint8))
    h, w = array.shape[:2]
    img = img.resize((w * pixel_upscale, h * pixel_upscale), Image.NEAREST)
    img.save(path)


def make_comparison_grid(
    original_path: str | Path,
    grid_rgb: np.ndarray,
    mosaic: Image.Image,
    output_path: str | Path,
) -> None:
    """Create a 3-panel comparison: Original | Grid | Mosaic.

    Every panel is scaled to the mosaic's pixel size.
    """
    panel_w, panel_h = mosaic.size
    rows, cols = grid_rgb.shape[:2]
    label_height = 36

    with Image.open(original_path) as src:
        original = src.convert("RGB").resize((panel_w, panel_h), Image.LANCZOS)
    grid_img = Image.fromarray(grid_rgb).resize((panel_w, panel_h), Image.NEAREST)

    flat = Image.new("RGB", mosaic.size, (30, 30, 30))
    flat.paste(mosaic, (0, 0), mosaic if mosaic.mode == "RGBA" else None)

    panels = [original, grid_img, flat]
    labels = ["Original", f"Grid {cols}x{rows}", "Mosaic"]

    gap = 8
    total_w = len(panels) * panel_w + (len(panels) - 1) * gap
    total_h = panel_h + label_height

    canvas = Image.new("RGB", (total_w, total_h), (30, 30, 30))
    draw = ImageDraw.Draw(canvas)

    try:
        font = ImageFont.truetype(
            "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf", 18,
        )
    except OSError:
        font = ImageFont.load_default()

    for i, (panel, label) in enumerate(zip(panels, labels, strict=False)):
        x = i * (panel_w + gap)
        canvas.paste(panel, (x, label_height))

        bbox = draw.textbbox((0, 0), label, font=font)
        text_w = bbox[2] - bbox[0]
        tx = x + (panel_w - text_w) // 2
        draw.text((tx, 6), label, fill=(220, 220, 220), font=font)

    canvas.save(output_path)


def save_placements(result: LayoutResult, path: str | Path) -> None:
    """Dump every layout's placements as JSON."""
    payload = {
        "columns": result.grid.columns,
        "rows": result.grid.rows,
        "tile_base_size": result.tile_base_size,
        "synthetic_grid": result.grid.synthetic,
        "tiles": [
            {"id": c.id, "name": c.name, "brightness": s.brightness, "color": list(s.color)}
            for c, s in zip(result.library.candidates, result.library.signatures, strict=True)
        ],
        "layouts": [
            {
                "index": layout.index,
                "offset_y": layout.offset_y,
                "replaced": layout.replaced,
                "skipped": layout.skipped,
                "placements": [
                    {
                        "tile_id": p.tile_id,
                        "x": p.x,
                        "y": p.y,
                        "width": p.width,
                        "height": p.height,
                        "cell": [p.footprint.x, p.footprint.y],
                        "size": p.footprint.size,
                    }
                    for p in layout.placements
                ],
            }
            for layout in result.layouts
        ],
    }
    Path(path).write_text(json.dumps(payload, indent=2))
