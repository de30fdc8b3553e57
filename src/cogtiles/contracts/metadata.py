# src/cogtiles/contracts/metadata.py
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .geo import Bbox

DTypeStr = Literal["uint8","int8","uint16","int16","uint32","int32","float32","float64"]

# Bits de NewSubfileType (TIFF)
SUBFILE_REDUCED = 1 << 0   # overview
SUBFILE_MASK = 1 << 2      # máscara de transparencia

ColorMap = Tuple[Tuple[int, int, int], ...]


@dataclass(frozen=True)
class SubImageInfo:
    """Descriptor de un sub-image (IFD) tal como lo expone la librería de acceso."""
    resolution: Tuple[float, float]          # (x, y) metros/píxel, y puede ser negativo
    bbox: Bbox                               # proyectado (3857)
    subfile_type: int = 0
    nodata: Optional[float] = None
    scale: Optional[float] = None
    offset: Optional[float] = None
    photometric: Optional[str] = None
    bits_per_sample: Tuple[int, ...] = ()
    color_map: Optional[ColorMap] = None
    band_count: int = 1
    dtype: DTypeStr = "uint8"
    artist: Optional[str] = None

    @property
    def is_overview(self) -> bool:
        return bool(self.subfile_type & SUBFILE_REDUCED)

    @property
    def is_mask(self) -> bool:
        return bool(self.subfile_type & SUBFILE_MASK)


class PyramidLevel(BaseModel):
    model_config = ConfigDict(frozen=True)
    zoom: int = Field(ge=0)
    is_overview: bool
    is_mask: bool


class CogMetadata(BaseModel):
    """
    Metadata normalizada de un COG (inmutable).
    - bbox: geográfico (grados); mercator_bbox: proyectado (metros).
    - min_zoom / max_zoom: sólo overviews que no son máscara.
    """
    model_config = ConfigDict(frozen=True)

    offset: float = 0.0
    scale: float = 1.0
    nodata: Optional[float] = None
    photometric: Optional[str] = None
    bits_per_sample: Tuple[int, ...] = ()
    color_map: Optional[ColorMap] = None
    artist: Optional[str] = None
    dtype: DTypeStr = "uint8"
    band_count: int = Field(1, ge=1)
    bbox: Bbox
    mercator_bbox: Bbox
    levels: Tuple[PyramidLevel, ...]
    min_zoom: int
    max_zoom: int

    @model_validator(mode="after")
    def _check_zoom_bounds(self) -> "CogMetadata":
        if self.min_zoom > self.max_zoom:
            raise ValueError(f"min_zoom={self.min_zoom} > max_zoom={self.max_zoom}")
        return self

    @property
    def has_finite_nodata(self) -> bool:
        return self.nodata is not None and math.isfinite(self.nodata)


__all__ = [
    "DTypeStr", "SUBFILE_REDUCED", "SUBFILE_MASK", "ColorMap",
    "SubImageInfo", "PyramidLevel", "CogMetadata",
]
