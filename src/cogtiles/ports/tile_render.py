# src/cogtiles/ports/tile_render.py
from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from ..contracts.metadata import CogMetadata

@runtime_checkable
class TileRendererPort(Protocol):
    """
    Colorización de un tile crudo -> RGBA uint8 (tile_size, tile_size, 4).
    Se inyecta por llamada (estrategia), no por registro global.
    """
    def render(self, buffer: np.ndarray, metadata: CogMetadata) -> np.ndarray: ...

__all__ = ["TileRendererPort"]
