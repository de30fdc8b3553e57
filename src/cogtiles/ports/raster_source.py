# src/cogtiles/ports/raster_source.py
from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from ..contracts.geo import Bbox
from ..contracts.metadata import SubImageInfo

SourceId = str

@runtime_checkable
class RasterHandle(Protocol):
    """
    Conexión abierta a un raster piramidal (COG).
    Reglas: solo lectura, compartida entre requests concurrentes del mismo source.
    `read_window` devuelve (height, width, bands) intercalado por píxel.
    """
    def sub_image_count(self) -> int: ...
    def sub_image_info(self, index: int) -> SubImageInfo: ...
    async def read_window(
        self, bbox: Bbox, width: int, height: int, fill_value: float,
        resampling: str = "nearest",
    ) -> np.ndarray: ...
    def close(self) -> None: ...

@runtime_checkable
class RasterSourcePort(Protocol):
    """Abre un raster remoto/local por identificador (URL o ruta)."""
    async def open(self, source_id: SourceId) -> RasterHandle: ...

__all__ = ["RasterHandle", "RasterSourcePort", "SourceId"]
