# src/cogtiles/adapters/rasterio_cog_source.py
from __future__ import annotations

import asyncio
import functools
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import rasterio
from rasterio.enums import ColorInterp, MaskFlags, Resampling
from rasterio.errors import RasterioError
from rasterio.windows import from_bounds

from ..config import DEFAULT_GDAL_OPTIONS
from ..contracts.geo import Bbox
from ..contracts.metadata import SUBFILE_MASK, SUBFILE_REDUCED, ColorMap, SubImageInfo
from ..errors import SourceOpenError
from ..ports.raster_source import RasterHandle, RasterSourcePort

logger = logging.getLogger(__name__)

WEB_MERCATOR_EPSG = 3857


def resolve_fill(fill_value: float, dtype: str) -> float:
    """
    Relleno efectivo para lecturas boundless.
    inf (centinela "vacío") -> 0 en enteros; en flotantes se conserva.
    """
    if math.isinf(fill_value) and np.issubdtype(np.dtype(dtype), np.integer):
        return 0
    return fill_value


def _color_map(ds) -> Optional[ColorMap]:
    if ds.colorinterp and ds.colorinterp[0] == ColorInterp.palette:
        cmap = ds.colormap(1)
        return tuple(tuple(int(c) for c in cmap[i][:3]) for i in sorted(cmap))
    return None


def _bits_per_sample(ds) -> Tuple[int, ...]:
    # NBITS (1, 4, 12...) prevalece sobre el tamaño del dtype
    nbits = ds.tags(ns="IMAGE_STRUCTURE").get("NBITS")
    if nbits:
        return (int(nbits),) * ds.count
    return tuple(np.dtype(dt).itemsize * 8 for dt in ds.dtypes)


def describe_dataset(ds) -> List[SubImageInfo]:
    """
    Traduce un dataset rasterio al modelo de sub-images de un TIFF:
      0 -> imagen completa; luego un overview por factor (bit 0)
      si hay máscara interna: máscara completa (bit 2) y sus overviews (bits 0|2)
    """
    res_x, res_y = ds.res
    dtype = ds.dtypes[0]
    base = SubImageInfo(
        resolution=(float(res_x), float(res_y)),
        bbox=Bbox(*ds.bounds),
        subfile_type=0,
        nodata=float(ds.nodata) if ds.nodata is not None else None,
        scale=float(ds.scales[0]) if ds.scales else None,
        offset=float(ds.offsets[0]) if ds.offsets else None,
        photometric=ds.photometric.name if ds.photometric is not None else None,
        bits_per_sample=_bits_per_sample(ds),
        color_map=_color_map(ds),
        band_count=ds.count,
        dtype=dtype,
        artist=ds.tags().get("TIFFTAG_ARTIST"),
    )
    factors = ds.overviews(1) if ds.count else []
    infos = [base]
    for f in factors:
        infos.append(_derived(base, f, SUBFILE_REDUCED))

    if ds.count and MaskFlags.per_dataset in ds.mask_flag_enums[0]:
        infos.append(_derived(base, 1, SUBFILE_MASK))
        for f in factors:
            infos.append(_derived(base, f, SUBFILE_REDUCED | SUBFILE_MASK))
    return infos


def _derived(base: SubImageInfo, factor: int, subfile_type: int) -> SubImageInfo:
    rx, ry = base.resolution
    return SubImageInfo(
        resolution=(rx * factor, ry * factor),
        bbox=base.bbox,
        subfile_type=subfile_type,
        nodata=base.nodata,
        scale=base.scale,
        offset=base.offset,
        photometric=base.photometric,
        bits_per_sample=base.bits_per_sample,
        color_map=base.color_map,
        band_count=base.band_count,
        dtype=base.dtype,
        artist=base.artist,
    )


class RasterioHandle(RasterHandle):
    """
    Dataset rasterio abierto. Los datasets GDAL no admiten lecturas
    concurrentes: todas las lecturas pasan por un lock propio del handle.

    close() no bloquea: marca el handle y el dataset se cierra en el pool
    cuando termina la última lectura pendiente.
    """

    def __init__(self, dataset, pool: ThreadPoolExecutor, gdal_options: Mapping[str, str]):
        self._ds = dataset
        self._pool = pool
        self._env = dict(gdal_options)
        self._lock = threading.Lock()     # lecturas GDAL
        self._state = threading.Lock()    # contador de lecturas / cierre
        self._pending = 0
        self._closing = False
        self._infos = describe_dataset(dataset)

    def sub_image_count(self) -> int:
        return len(self._infos)

    def sub_image_info(self, index: int) -> SubImageInfo:
        return self._infos[index]

    async def read_window(self, bbox: Bbox, width: int, height: int, fill_value: float,
                          resampling: str = "nearest") -> np.ndarray:
        with self._state:
            if self._closing:
                raise RasterioError(f"handle cerrado: {self._ds.name}")
            self._pending += 1
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self._pool, functools.partial(self._read, bbox, width, height, fill_value, resampling)
            )
        finally:
            with self._state:
                self._pending -= 1
                drained = self._closing and self._pending == 0
            if drained:
                self._schedule_close()

    def _read(self, bbox: Bbox, width: int, height: int, fill_value: float, resampling: str) -> np.ndarray:
        method = Resampling[resampling]
        fill = resolve_fill(fill_value, self._infos[0].dtype)
        with self._lock, rasterio.Env(**self._env):
            if self._ds.closed:
                raise RasterioError(f"dataset cerrado: {self._ds.name}")
            window = from_bounds(*bbox, transform=self._ds.transform)
            data = self._ds.read(
                window=window,
                out_shape=(self._ds.count, height, width),
                resampling=method,
                boundless=True,
                fill_value=fill,
            )
        # (bandas, alto, ancho) -> (alto, ancho, bandas)
        return np.ascontiguousarray(np.moveaxis(data, 0, -1))

    def close(self) -> None:
        with self._state:
            if self._closing:
                return
            self._closing = True
            idle = self._pending == 0
        if idle:
            self._schedule_close()

    def _schedule_close(self) -> None:
        try:
            self._pool.submit(self._close_dataset)
        except RuntimeError:
            # pool ya apagado: no quedan lecturas en curso
            self._close_dataset()

    def _close_dataset(self) -> None:
        with self._lock:
            if not self._ds.closed:
                logger.debug("cerrando dataset %s", self._ds.name)
                self._ds.close()


class RasterioCogSource(RasterSourcePort):
    """Abre COG locales o remotos (http/s3 vía /vsicurl, /vsis3) con rasterio."""

    def __init__(self, gdal_options: Optional[Mapping[str, str]] = None, workers: int = 4):
        self.gdal_options: Dict[str, str] = dict(DEFAULT_GDAL_OPTIONS if gdal_options is None else gdal_options)
        self.pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cogtiles-io")

    async def open(self, source_id: str) -> RasterioHandle:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.pool, self._open, source_id)

    def _open(self, source_id: str) -> RasterioHandle:
        try:
            with rasterio.Env(**self.gdal_options):
                ds = rasterio.open(source_id)
        except RasterioError as e:
            raise SourceOpenError(f"no se pudo abrir {source_id}: {e}", source_id=source_id) from e
        crs = ds.crs
        epsg = crs.to_epsg() if crs else None
        if epsg != WEB_MERCATOR_EPSG:
            ds.close()
            raise SourceOpenError(
                f"{source_id}: CRS {crs} no soportado (se requiere EPSG:{WEB_MERCATOR_EPSG})",
                source_id=source_id,
            )
        logger.debug("abierto %s (%dx%d, %d bandas)", source_id, ds.width, ds.height, ds.count)
        return RasterioHandle(ds, self.pool, self.gdal_options)

    def close(self) -> None:
        self.pool.shutdown(wait=False)


__all__ = ["RasterioCogSource", "RasterioHandle", "describe_dataset", "resolve_fill"]
