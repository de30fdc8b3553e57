# src/cogtiles/services/metadata_service.py
from __future__ import annotations

import functools
import logging
import time
from typing import Callable, List

from ..contracts.geo import Bbox, mercator_to_geographic_bbox, zoom_from_resolution
from ..contracts.metadata import CogMetadata, PyramidLevel, SubImageInfo
from ..errors import MetadataError, TileEngineError
from ..ports.raster_source import RasterHandle, SourceId
from .raster_cache import ONE_HOUR_S, DedupCache, RasterHandleCache

logger = logging.getLogger(__name__)


def _level_from_info(index: int, info: SubImageInfo) -> PyramidLevel:
    res_x = info.resolution[0] if info.resolution else float("nan")
    try:
        zoom = zoom_from_resolution(res_x)
    except ValueError as e:
        raise MetadataError(f"sub-image {index} con resolución inválida: {info.resolution}") from e
    return PyramidLevel(zoom=zoom, is_overview=info.is_overview, is_mask=info.is_mask)


def build_metadata(handle: RasterHandle) -> CogMetadata:
    """
    Deriva la metadata normalizada desde un handle abierto.
    Falla con MetadataError si no hay overviews (no-máscara) utilizables.
    """
    count = handle.sub_image_count()
    if count < 1:
        raise MetadataError("el raster no tiene sub-images")
    first = handle.sub_image_info(0)
    mercator_bbox = Bbox(*first.bbox)
    if not mercator_bbox.is_valid():
        raise MetadataError(f"bbox inválido en sub-image 0: {mercator_bbox}")

    levels: List[PyramidLevel] = []
    for index in range(count):
        info = first if index == 0 else handle.sub_image_info(index)
        levels.append(_level_from_info(index, info))

    overviews = [lv.zoom for lv in levels if lv.is_overview and not lv.is_mask]
    if not overviews:
        raise MetadataError("el raster no tiene overviews utilizables (sin min/max de zoom)")

    return CogMetadata(
        offset=first.offset if first.offset is not None else 0.0,
        scale=first.scale if first.scale is not None else 1.0,
        nodata=first.nodata,
        photometric=first.photometric,
        bits_per_sample=first.bits_per_sample,
        color_map=first.color_map,
        artist=first.artist,
        dtype=first.dtype,
        band_count=first.band_count,
        bbox=mercator_to_geographic_bbox(mercator_bbox),
        mercator_bbox=mercator_bbox,
        levels=tuple(levels),
        min_zoom=min(overviews),
        max_zoom=max(overviews),
    )


class MetadataResolver:
    """Metadata por source, cacheada como futuro (una sola derivación en vuelo)."""

    def __init__(self, handles: RasterHandleCache, capacity: int = 16, ttl: float = ONE_HOUR_S,
                 *, evict_failures: bool = True, timer: Callable[[], float] = time.monotonic):
        self.handles = handles
        self._cache: DedupCache[SourceId, CogMetadata] = DedupCache(
            capacity, ttl, evict_failures=evict_failures, timer=timer, name="metadata",
        )

    async def get(self, source_id: SourceId) -> CogMetadata:
        return await self._cache.fetch(source_id, functools.partial(self._resolve, source_id))

    async def _resolve(self, source_id: SourceId) -> CogMetadata:
        handle = await self.handles.get(source_id)
        try:
            md = build_metadata(handle)
        except TileEngineError as e:
            e.source_id = e.source_id or source_id
            raise
        except Exception as e:
            raise MetadataError(f"descriptores de pirámide inválidos en {source_id}: {e}",
                                source_id=source_id) from e
        logger.info(
            "metadata %s: %d sub-images, zoom %d..%d, dtype=%s, bandas=%d, nodata=%s",
            source_id, len(md.levels), md.min_zoom, md.max_zoom, md.dtype, md.band_count, md.nodata,
        )
        return md

    def clear(self) -> None:
        self._cache.clear()


__all__ = ["MetadataResolver", "build_metadata"]
