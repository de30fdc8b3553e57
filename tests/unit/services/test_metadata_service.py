import asyncio
import math
from dataclasses import replace
import pytest
from cogtiles.errors import MetadataError, SourceOpenError
from cogtiles.services.metadata_service import MetadataResolver, build_metadata
from cogtiles.services.raster_cache import RasterHandleCache
from tests.factories import FakeHandle, FakeSource, make_pyramid


def _resolver(handles):
    src = FakeSource(handles)
    return src, MetadataResolver(RasterHandleCache(src))


def test_levels_and_zoom_bounds_ignore_masks():
    md = build_metadata(FakeHandle(make_pyramid(base_zoom=7, overview_zooms=(6, 5), mask_zooms=(7, 3))))
    assert [lv.zoom for lv in md.levels] == [7, 6, 5, 7, 3]
    assert [lv.is_overview for lv in md.levels] == [False, True, True, False, True]
    assert [lv.is_mask for lv in md.levels] == [False, False, False, True, True]
    assert (md.min_zoom, md.max_zoom) == (5, 6)


def test_defaults_for_scale_offset():
    md = build_metadata(FakeHandle(make_pyramid(scale=None, offset=None)))
    assert md.scale == 1.0
    assert md.offset == 0.0
    md2 = build_metadata(FakeHandle(make_pyramid(scale=0.01, offset=-5.0)))
    assert (md2.scale, md2.offset) == (0.01, -5.0)


def test_geographic_bbox_and_descriptors():
    md = build_metadata(FakeHandle(make_pyramid(nodata=-9999.0, dtype="int16", bands=3)))
    assert md.bbox.is_valid()
    assert md.bbox.west == pytest.approx(-180 / 16)
    assert md.nodata == -9999.0
    assert (md.dtype, md.band_count, md.bits_per_sample) == ("int16", 3, (8, 8, 8))


def test_nan_nodata_preserved():
    md = build_metadata(FakeHandle(make_pyramid(nodata=math.nan)))
    assert math.isnan(md.nodata)
    assert not md.has_finite_nodata


def test_no_overviews_is_explicit_error():
    # sólo imagen base + máscara overview: no hay overviews de datos
    with pytest.raises(MetadataError, match="overviews"):
        build_metadata(FakeHandle(make_pyramid(overview_zooms=(), mask_zooms=(7, 4))))


def test_bad_resolution_is_metadata_error():
    infos = make_pyramid()
    infos[1] = replace(infos[1], resolution=(0.0, 0.0))
    with pytest.raises(MetadataError):
        build_metadata(FakeHandle(infos))


def test_resolver_caches_and_dedups():
    handle = FakeHandle(make_pyramid())
    src, resolver = _resolver({"cog": handle})
    async def run():
        a = await asyncio.gather(*(resolver.get("cog") for _ in range(4)))
        b = await resolver.get("cog")
        return a, b
    a, b = asyncio.run(run())
    assert src.open_calls == ["cog"]
    assert all(m is b for m in a)


def test_resolver_open_failure():
    src, resolver = _resolver({})
    async def run():
        with pytest.raises(SourceOpenError) as ei:
            await resolver.get("missing")
        assert isinstance(ei.value.__cause__, OSError)
        with pytest.raises(SourceOpenError):
            await resolver.get("missing")
    asyncio.run(run())
    # fallos retirados de la caché: se reintenta la apertura
    assert src.open_calls == ["missing", "missing"]


def test_resolver_metadata_error_carries_source():
    src, resolver = _resolver({"flat": FakeHandle(make_pyramid(overview_zooms=(), mask_zooms=()))})
    async def run():
        with pytest.raises(MetadataError) as ei:
            await resolver.get("flat")
        return ei.value
    err = asyncio.run(run())
    assert err.source_id == "flat"
