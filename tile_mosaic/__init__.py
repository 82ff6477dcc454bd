"""
Tile Mosaic Generator
=====================

Rebuild a target image from a library of tile graphics.  The image is
sampled into a grid of cells; each cell (or a homogeneous 2x2 / 4x4
block of cells) receives the tile whose brightness and colour match it
best, with a small penalty that discourages repeating the same tile.

Optional variations re-match a random 5-10 % of the footprints, picking
among the three nearest alternatives.
"""

__version__ = "1.0.0"

from tile_mosaic.config import MosaicConfig
from tile_mosaic.errors import (
    GridTooSmallError,
    InvalidConfigError,
    LayoutFailedError,
    MosaicError,
    NoCandidatesError,
)
from tile_mosaic.grid import (
    SignatureGrid,
    compute_grid_shape,
    gradient_signature_grid,
    sample_grid,
    sample_image,
)
from tile_mosaic.layout import (
    LayoutEngine,
    LayoutResult,
    Placement,
    PlacementSurface,
    RunState,
)
from tile_mosaic.matcher import UsageCounter, base_scores, best_match, rank_alternatives
from tile_mosaic.planner import FootprintPlan, plan_footprint
from tile_mosaic.signature import Signature, extract_signature
from tile_mosaic.tiles import (
    SingleTile,
    TileCandidate,
    TileFamily,
    TileLibrary,
    TileSignatureCache,
    expand_selection,
    list_candidates,
)

__all__ = [
    "FootprintPlan",
    "GridTooSmallError",
    "InvalidConfigError",
    "LayoutEngine",
    "LayoutFailedError",
    "LayoutResult",
    "MosaicConfig",
    "MosaicError",
    "NoCandidatesError",
    "Placement",
    "PlacementSurface",
    "RunState",
    "Signature",
    "SignatureGrid",
    "SingleTile",
    "TileCandidate",
    "TileFamily",
    "TileLibrary",
    "TileSignatureCache",
    "UsageCounter",
    "base_scores",
    "best_match",
    "compute_grid_shape",
    "expand_selection",
    "extract_signature",
    "gradient_signature_grid",
    "list_candidates",
    "plan_footprint",
    "rank_alternatives",
    "sample_grid",
    "sample_image",
]
