"""Tile candidates, selection expansion and the per-run signature cache."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Union

import numpy as np

from tile_mosaic.errors import NoCandidatesError
from tile_mosaic.grid import Rasterizer
from tile_mosaic.signature import (
    NEUTRAL_SIGNATURE,
    Signature,
    as_rgba,
    extract_signature,
    sampling_stride,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TileCandidate:
    """A placeable tile: unique id, display name and an opaque host handle."""

    id: str
    name: str
    handle: Any = field(default=None, compare=False)


@dataclass(frozen=True)
class SingleTile:
    tile: TileCandidate


@dataclass(frozen=True)
class TileFamily:
    """An ordered set of variants sharing one visual family.

    ``default_id`` names the representative variant; when it is missing
    (or not among the variants) the first variant is used.
    """

    name: str
    variants: tuple[TileCandidate, ...]
    default_id: str | None = None

    @property
    def default(self) -> TileCandidate | None:
        if not self.variants:
            return None
        for v in self.variants:
            if v.id == self.default_id:
                return v
        return self.variants[0]


Selection = Union[SingleTile, TileFamily]


def expand_selection(selection: Selection, use_all_variants: bool) -> list[TileCandidate]:
    """Turn one selected tile or family into its ordered candidate list."""
    if isinstance(selection, SingleTile):
        return [selection.tile]
    if use_all_variants:
        return list(selection.variants)
    default = selection.default
    return [default] if default is not None else []


def unique_by_id(candidates: Iterable[TileCandidate]) -> list[TileCandidate]:
    """Drop repeated ids, keeping the first occurrence and discovery order."""
    seen: set[str] = set()
    out: list[TileCandidate] = []
    for cand in candidates:
        if cand.id in seen:
            continue
        seen.add(cand.id)
        out.append(cand)
    return out


def list_candidates(
    selections: Iterable[Selection], use_all_variants: bool = True,
) -> list[TileCandidate]:
    """Expand every selection into one deduplicated candidate list."""
    return unique_by_id(
        cand for sel in selections for cand in expand_selection(sel, use_all_variants)
    )


@dataclass
class TileLibrary:
    """Candidates and their signatures, positionally aligned.

    The numpy views (:attr:`brightness`, :attr:`colors`) feed the matcher's
    vectorised scoring.
    """

    candidates: list[TileCandidate]
    signatures: list[Signature]

    def __post_init__(self) -> None:
        if len(self.candidates) != len(self.signatures):
            msg = "candidates and signatures must have the same length"
            raise ValueError(msg)
        self.brightness = np.array(
            [s.brightness for s in self.signatures], dtype=np.float64,
        )
        self.colors = np.array(
            [s.color for s in self.signatures], dtype=np.float64,
        ).reshape(-1, 3)
        self._index = {c.id: i for i, c in enumerate(self.candidates)}
        if len(self._index) != len(self.candidates):
            msg = "tile ids must be unique within a library"
            raise ValueError(msg)

    def __len__(self) -> int:
        return len(self.candidates)

    @property
    def ids(self) -> list[str]:
        return [c.id for c in self.candidates]

    def index_of(self, tile_id: str) -> int:
        return self._index[tile_id]


class TileSignatureCache:
    """Extracts every candidate's signature once per run.

    Rasterization requests are issued together and awaited together; each
    one has its own timeout and falls back to :data:`NEUTRAL_SIGNATURE`
    so a single bad tile never shrinks the library.
    """

    def __init__(
        self,
        rasterize: Rasterizer,
        transparent_as_white: bool = False,
        match_resolution: int = 16,
        timeout: float = 5.0,
    ) -> None:
        self._rasterize = rasterize
        self._transparent_as_white = transparent_as_white
        self._match_resolution = match_resolution
        self._timeout = timeout
        self._signatures: dict[str, Signature] = {}
        self.failed: list[str] = []

    def get(self, tile_id: str) -> Signature:
        return self._signatures[tile_id]

    async def _extract(self, candidate: TileCandidate) -> Signature:
        try:
            pixels = await asyncio.wait_for(
                self._rasterize(candidate.handle), self._timeout,
            )
            rgba = as_rgba(pixels)
            if rgba.size == 0:
                msg = "empty raster"
                raise ValueError(msg)
        except asyncio.TimeoutError:
            logger.warning(
                "Tile %s timed out after %.1f s; using neutral signature",
                candidate.name, self._timeout,
            )
            self.failed.append(candidate.id)
            return NEUTRAL_SIGNATURE
        except Exception as exc:
            logger.warning(
                "Tile %s could not be rasterized (%s); using neutral signature",
                candidate.name, exc,
            )
            self.failed.append(candidate.id)
            return NEUTRAL_SIGNATURE

        h, w = rgba.shape[:2]
        return extract_signature(
            rgba,
            transparent_as_white=self._transparent_as_white,
            stride=sampling_stride(w, h, self._match_resolution),
        )

    async def build(self, candidates: list[TileCandidate]) -> TileLibrary:
        """Extract all signatures concurrently and return the library.

        Candidates sharing an id are extracted once; the first one wins.
        """
        unique = unique_by_id(candidates)
        if not unique:
            msg = "No tile candidates available"
            raise NoCandidatesError(msg)
        if len(unique) < len(candidates):
            logger.warning(
                "Dropped %d duplicate tile id(s)", len(candidates) - len(unique),
            )
        candidates = unique

        logger.info("Extracting signatures for %d tiles ...", len(candidates))
        t0 = time.perf_counter()
        signatures = await asyncio.gather(*(self._extract(c) for c in candidates))
        for cand, sig in zip(candidates, signatures, strict=True):
            self._signatures[cand.id] = sig
            logger.debug(
                "  %s  brightness=%.3f  rgb=(%.3f, %.3f, %.3f)  alpha0=%.2f",
                cand.name, sig.brightness, *sig.color, sig.transparency_ratio,
            )
        logger.info(
            "Tile signatures ready  (%.2f s, %d fallback)",
            time.perf_counter() - t0, len(self.failed),
        )
        return TileLibrary(list(candidates), list(signatures))
