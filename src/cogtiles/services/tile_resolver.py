# src/cogtiles/services/tile_resolver.py
from __future__ import annotations

"""
Orquestador de tiles (contracts-first, sin dependencias duras fuera de *ports*).

Flujo por request:
  START -> METADATA_READY -> {DECODE | COVERAGE} -> DONE

  • metadata vía MetadataResolver (abre el handle si hace falta)
  • zoom < min_zoom - 1 con cobertura activa -> tile sintético (sin caché)
  • zoom < min_zoom - 1 sin cobertura -> buffer en ceros, sin leer
  • resto -> RasterTileCache (lectura + remuestreo nearest)

No hay reintentos en esta capa; los errores se propagan tipados
(ver errors.py) y la capa de render decide cómo mostrarlos.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
from pydantic import ValidationError

from ..config import Settings, get_settings
from ..contracts.core import TileAddress, TilePath
from ..contracts.geo import tile_to_mercator_bbox
from ..contracts.metadata import CogMetadata
from ..errors import InvalidRequestError
from ..ports.raster_source import RasterSourcePort, SourceId
from ..ports.tile_render import TileRendererPort
from . import coverage_service
from .metadata_service import MetadataResolver
from .raster_cache import RasterHandleCache, RasterTileCache

logger = logging.getLogger(__name__)

# Centinela de relleno: el adapter lo traduce a 0 en enteros (inf en flotantes)
FILL_EMPTY = math.inf

AddressLike = Union[TileAddress, tuple]


@dataclass(frozen=True)
class TileResult:
    buffer: np.ndarray
    metadata: CogMetadata
    path: TilePath


def fill_value_for(metadata: CogMetadata) -> float:
    return float(metadata.nodata) if metadata.has_finite_nodata else FILL_EMPTY


def empty_tile(metadata: CogMetadata, tile_size: int) -> np.ndarray:
    out = np.zeros((tile_size, tile_size, metadata.band_count), dtype=np.dtype(metadata.dtype))
    out.setflags(write=False)
    return out


@dataclass
class TileResolver:
    source: RasterSourcePort
    settings: Settings = field(default_factory=get_settings)

    def __post_init__(self) -> None:
        st = self.settings
        self.handles = RasterHandleCache(
            self.source, st.handle_cache_size, st.handle_cache_ttl_s,
            evict_failures=st.evict_failed_entries,
        )
        self.metadata = MetadataResolver(
            self.handles, st.metadata_cache_size, st.metadata_cache_ttl_s,
            evict_failures=st.evict_failed_entries,
        )
        self.tiles = RasterTileCache(
            st.tile_cache_size, st.tile_cache_ttl_s,
            evict_failures=st.evict_failed_entries,
        )

    # ---------- Helpers ----------
    def _coerce_address(self, address: AddressLike) -> TileAddress:
        if isinstance(address, TileAddress):
            return address
        try:
            zoom, column, row = address
            return TileAddress(zoom=zoom, column=column, row=row)
        except (TypeError, ValueError, ValidationError) as e:
            raise InvalidRequestError(f"dirección de tile inválida: {address!r}") from e

    def _check_tile_size(self, tile_size: int) -> int:
        if isinstance(tile_size, bool) or not isinstance(tile_size, int):
            raise InvalidRequestError(f"tile_size debe ser entero: {tile_size!r}")
        if not 1 <= tile_size <= self.settings.max_tile_size:
            raise InvalidRequestError(
                f"tile_size={tile_size} fuera de rango [1, {self.settings.max_tile_size}]"
            )
        return tile_size

    # ---------- Casos de uso ----------
    async def resolve_tile(
        self,
        source_id: SourceId,
        address: AddressLike,
        tile_size: Optional[int] = None,
        coverage: Optional[bool] = None,
    ) -> TileResult:
        addr = self._coerce_address(address)
        size = self._check_tile_size(self.settings.default_tile_size if tile_size is None else tile_size)
        md = await self.metadata.get(source_id)

        below_pyramid = addr.zoom < md.min_zoom - 1
        use_coverage = self.settings.coverage_enabled(source_id) if coverage is None else coverage
        if use_coverage and below_pyramid:
            logger.debug("tile %s %s: cobertura sintética", source_id, addr)
            buf = coverage_service.generate(addr, md.mercator_bbox, size, bands=1)
            return TileResult(buf, md, TilePath.COVERAGE)
        if below_pyramid:
            logger.debug("tile %s %s: bajo la pirámide, buffer vacío", source_id, addr)
            return TileResult(empty_tile(md, size), md, TilePath.EMPTY)

        buf = await self.tiles.get(
            lambda: self.handles.get(source_id),
            source_id, addr, tile_to_mercator_bbox(addr), size, fill_value_for(md),
        )
        return TileResult(buf, md, TilePath.DECODE)

    async def render_tile(
        self,
        source_id: SourceId,
        address: AddressLike,
        renderer: TileRendererPort,
        tile_size: Optional[int] = None,
        coverage: Optional[bool] = None,
    ) -> np.ndarray:
        """Resuelve y entrega (buffer, metadata) al renderer inyectado; valida el RGBA."""
        res = await self.resolve_tile(source_id, address, tile_size, coverage)
        rgba = np.asarray(renderer.render(res.buffer, res.metadata))
        h, w = res.buffer.shape[:2]
        if rgba.shape != (h, w, 4):
            raise ValueError(f"renderer devolvió shape {rgba.shape}, se esperaba ({h}, {w}, 4)")
        return rgba

    def close(self) -> None:
        """Vacía cachés (cierra handles) y cierra el adapter si expone close()."""
        self.tiles.clear()
        self.metadata.clear()
        self.handles.clear()
        close = getattr(self.source, "close", None)
        if callable(close):
            close()


__all__ = ["TileResolver", "TileResult", "FILL_EMPTY", "fill_value_for", "empty_tile"]
