#!/usr/bin/env python3
"""
main.py - Quick-start entry point.

    python main.py create photo.jpg tiles/

Or use the module directly:

    python -m tile_mosaic.cli create --help
    python -m tile_mosaic.cli signatures tiles/
"""

from tile_mosaic.cli import app

if __name__ == "__main__":
    app()
