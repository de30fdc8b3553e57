# src/cogtiles/services/coverage_service.py
from __future__ import annotations

"""
Tiles sintéticos de cobertura: marcan dónde hay datos sin decodificar el raster.
Se usan en zooms muy por debajo del overview más grueso.
"""

import numpy as np

from ..contracts.core import TileAddress
from ..contracts.geo import Bbox, tile_to_mercator_bbox

COVERAGE_MARKER = 255


def _to_pixel(value: float, origin: float, span: float, tile_size: int) -> int:
    px = int(np.floor((value - origin) / span * (tile_size - 1) + 0.5))
    return min(max(px, 0), tile_size - 1)


def coverage_window(address: TileAddress, raster_bbox: Bbox, tile_size: int) -> tuple[int, int, int, int] | None:
    """
    Rectángulo (row0, row1, col0, col1), inclusivo, del tile que cae dentro de `raster_bbox`.
    None si no hay intersección.
    """
    tile_bbox = tile_to_mercator_bbox(address)
    inter = tile_bbox.intersection(Bbox(*raster_bbox))
    if inter is None:
        return None
    col0 = _to_pixel(inter.west, tile_bbox.west, tile_bbox.width, tile_size)
    col1 = _to_pixel(inter.east, tile_bbox.west, tile_bbox.width, tile_size)
    # filas crecen hacia el sur
    row0 = _to_pixel(tile_bbox.north - inter.north, 0.0, tile_bbox.height, tile_size)
    row1 = _to_pixel(tile_bbox.north - inter.south, 0.0, tile_bbox.height, tile_size)
    return row0, row1, col0, col1


def generate(address: TileAddress, raster_bbox: Bbox, tile_size: int, bands: int = 1) -> np.ndarray:
    """Buffer uint8 (tile_size, tile_size, bands): COVERAGE_MARKER dentro del raster, 0 fuera."""
    out = np.zeros((tile_size, tile_size, bands), dtype=np.uint8)
    win = coverage_window(address, raster_bbox, tile_size)
    if win is not None:
        row0, row1, col0, col1 = win
        out[row0:row1 + 1, col0:col1 + 1, :] = COVERAGE_MARKER
    out.setflags(write=False)
    return out


__all__ = ["COVERAGE_MARKER", "coverage_window", "generate"]
