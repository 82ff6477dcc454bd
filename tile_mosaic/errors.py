"""Exceptions raised by a mosaic run."""

from __future__ import annotations


class MosaicError(ValueError):
    """Base class for errors that end a run before any output is produced."""


class InvalidConfigError(MosaicError):
    """A configuration value is out of range."""


class NoCandidatesError(MosaicError):
    """The selection yielded no usable tiles."""


class GridTooSmallError(MosaicError):
    """The image maps to fewer than one grid cell."""


class LayoutFailedError(RuntimeError):
    """An unexpected error aborted the layout after it had started."""
