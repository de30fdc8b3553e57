# tests/integration/adapters/test_rasterio_cog_source.py
import asyncio
import time
import numpy as np
import pytest
from pathlib import Path

rasterio = pytest.importorskip("rasterio")
from rasterio.enums import Resampling
from rasterio.errors import RasterioError
from rasterio.transform import from_origin

from cogtiles.adapters.rasterio_cog_source import RasterioCogSource, resolve_fill
from cogtiles.config import Settings
from cogtiles.contracts.core import TileAddress, TilePath
from cogtiles.contracts.geo import tile_to_mercator_bbox
from cogtiles.errors import SourceOpenError
from cogtiles.services.raster_cache import RasterHandleCache
from cogtiles.services.tile_resolver import TileResolver
from tests.factories import res_for_zoom

pytestmark = pytest.mark.integration  # corre sólo si hay rasterio

R10 = res_for_zoom(10)


def _write_cog(path: Path, crs="EPSG:3857", nodata=None, dtype="uint8", value=7) -> Path:
    # 512x512 px a resolución de zoom 10, esquina SO en (0, 0) -> tiles z10 x=512..513, y=510..511
    profile = dict(driver="GTiff", width=512, height=512, count=1, dtype=dtype, crs=crs,
                   transform=from_origin(0.0, 512 * R10, R10, R10), tiled=True,
                   blockxsize=256, blockysize=256, nodata=nodata)
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(np.full((512, 512), value, dtype=dtype), 1)
    with rasterio.open(path, "r+") as dst:
        dst.build_overviews([2, 4], Resampling.nearest)
    return path


def test_resolve_fill():
    assert resolve_fill(float("inf"), "uint8") == 0
    assert resolve_fill(float("inf"), "int16") == 0
    assert resolve_fill(float("inf"), "float32") == float("inf")
    assert resolve_fill(-9999.0, "int16") == -9999.0


def test_sub_images_from_overviews(tmp_path: Path):
    path = _write_cog(tmp_path / "cog.tif")
    source = RasterioCogSource(workers=1)
    try:
        handle = asyncio.run(source.open(str(path)))
        assert handle.sub_image_count() == 3
        infos = [handle.sub_image_info(i) for i in range(3)]
        assert [i.subfile_type for i in infos] == [0, 1, 1]
        assert infos[1].resolution[0] == pytest.approx(2 * R10)
        assert infos[0].dtype == "uint8" and infos[0].band_count == 1
        handle.close()
    finally:
        source.close()


def test_resolve_tiles_end_to_end(tmp_path: Path):
    path = str(_write_cog(tmp_path / "cog.tif"))
    engine = TileResolver(source=RasterioCogSource(workers=2), settings=Settings(coverage_sources=(path,)))
    try:
        async def run():
            md = await engine.metadata.get(path)
            inside = await engine.resolve_tile(path, (10, 512, 510))
            outside = await engine.resolve_tile(path, (10, 100, 100))
            cov = await engine.resolve_tile(path, (6, 32, 31))
            return md, inside, outside, cov
        md, inside, outside, cov = asyncio.run(run())
    finally:
        engine.close()
    assert (md.min_zoom, md.max_zoom) == (8, 9)
    assert md.levels[0].zoom == 10
    assert inside.path is TilePath.DECODE
    assert inside.buffer.shape == (256, 256, 1)
    assert (inside.buffer == 7).all()
    assert not outside.buffer.any()          # sin nodata -> relleno 0 en uint8
    assert cov.path is TilePath.COVERAGE


def test_non_mercator_rejected(tmp_path: Path):
    path = str(_write_cog(tmp_path / "utm.tif", crs="EPSG:32719"))
    source = RasterioCogSource(workers=1)
    try:
        with pytest.raises(SourceOpenError):
            asyncio.run(source.open(path))
        with pytest.raises(SourceOpenError):
            asyncio.run(source.open(str(tmp_path / "no-existe.tif")))
    finally:
        source.close()


def test_nbits_reported_as_bits_per_sample(tmp_path: Path):
    path = tmp_path / "nbits.tif"
    profile = dict(driver="GTiff", width=64, height=64, count=1, dtype="uint8", crs="EPSG:3857",
                   transform=from_origin(0.0, 64 * R10, R10, R10), nbits=4)
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(np.full((64, 64), 3, dtype="uint8"), 1)
    source = RasterioCogSource(workers=1)
    try:
        handle = asyncio.run(source.open(str(path)))
        assert handle.sub_image_info(0).bits_per_sample == (4,)
        handle.close()
    finally:
        source.close()


class _SlowDataset:
    """Envuelve un dataset rasterio y retrasa cada lectura."""
    def __init__(self, ds, delay):
        self._wrapped = ds
        self.delay = delay

    def __getattr__(self, name):
        return getattr(self._wrapped, name)

    def read(self, *args, **kwargs):
        time.sleep(self.delay)
        return self._wrapped.read(*args, **kwargs)


def test_evicting_busy_handle_keeps_loop_responsive(tmp_path: Path):
    a = str(_write_cog(tmp_path / "a.tif"))
    b = str(_write_cog(tmp_path / "b.tif"))
    source = RasterioCogSource(workers=4)
    handles = RasterHandleCache(source, capacity=1, ttl=60)
    addr = TileAddress(zoom=10, column=512, row=510)

    async def run():
        ha = await handles.get(a)
        ha._ds = _SlowDataset(ha._ds, 0.5)
        reads = [asyncio.ensure_future(ha.read_window(tile_to_mercator_bbox(addr), 256, 256, 0.0))
                 for _ in range(2)]
        await asyncio.sleep(0.05)          # la primera lectura ya ocupa el dataset
        t0 = time.perf_counter()
        await handles.get(b)               # desplaza a "a" mientras lee
        stall = time.perf_counter() - t0
        data = await asyncio.gather(*reads)
        return ha, stall, data

    try:
        ha, stall, data = asyncio.run(run())
    finally:
        source.pool.shutdown(wait=True)
    assert stall < 0.2
    assert all(d.shape == (256, 256, 1) and (d == 7).all() for d in data)
    assert ha._ds.closed                 # cerrado al drenar la última lectura
    with pytest.raises(RasterioError):
        asyncio.run(ha.read_window(tile_to_mercator_bbox(addr), 256, 256, 0.0))
