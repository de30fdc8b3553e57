# src/cogtiles/contracts/geo.py

from __future__ import annotations
import math
from typing import NamedTuple

from .core import MAX_ZOOM, TileAddress

# Esfera de Web Mercator (EPSG:3857)
EARTH_RADIUS_M = 6378137.0
HALF_WORLD_M = math.pi * EARTH_RADIUS_M          # 20037508.342789244
MAX_LATITUDE = 85.0511287798066                  # lat en y == HALF_WORLD_M
DEFAULT_TILE_SIZE = 256

class Bbox(NamedTuple):
    """[west, south, east, north]; metros (3857) o grados (4326) según contexto."""
    west: float; south: float; east: float; north: float

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south

    def is_valid(self) -> bool:
        return self.west < self.east and self.south < self.north

    def intersection(self, other: "Bbox") -> Bbox | None:
        w = max(self.west, other.west); s = max(self.south, other.south)
        e = min(self.east, other.east); n = min(self.north, other.north)
        if w >= e or s >= n:
            return None
        return Bbox(w, s, e, n)

# ---------- Pirámide de tiles (puro, sin I/O) ----------
def tile_size_m(zoom: int) -> float:
    """Lado de un tile en metros proyectados al nivel `zoom`."""
    return 2.0 * HALF_WORLD_M / float(2 ** zoom)

def tile_to_mercator_bbox(address: TileAddress) -> Bbox:
    size = tile_size_m(address.zoom)
    west = -HALF_WORLD_M + address.column * size
    north = HALF_WORLD_M - address.row * size
    return Bbox(west, north - size, west + size, north)

def _x_to_lon(x: float) -> float:
    return math.degrees(x / EARTH_RADIUS_M)

def _y_to_lat(y: float) -> float:
    return math.degrees(math.atan(math.sinh(y / EARTH_RADIUS_M)))

def _lon_to_x(lon: float) -> float:
    return EARTH_RADIUS_M * math.radians(lon)

def _lat_to_y(lat: float) -> float:
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))
    return EARTH_RADIUS_M * math.asinh(math.tan(math.radians(lat)))

def mercator_to_geographic_bbox(bbox: Bbox) -> Bbox:
    return Bbox(_x_to_lon(bbox.west), _y_to_lat(bbox.south),
                _x_to_lon(bbox.east), _y_to_lat(bbox.north))

def geographic_to_mercator_bbox(bbox: Bbox) -> Bbox:
    return Bbox(_lon_to_x(bbox.west), _lat_to_y(bbox.south),
                _lon_to_x(bbox.east), _lat_to_y(bbox.north))

def geographic_to_tile(lon: float, lat: float, zoom: int) -> TileAddress:
    """Cuantiza un punto (lon, lat) a la grilla de tiles de `zoom`."""
    if not 0 <= zoom <= MAX_ZOOM:
        raise ValueError(f"zoom fuera de rango: {zoom}")
    n = 2 ** zoom
    size = tile_size_m(zoom)
    col = math.floor((_lon_to_x(lon) + HALF_WORLD_M) / size)
    row = math.floor((HALF_WORLD_M - _lat_to_y(lat)) / size)
    # bordes este/sur caen en el último tile
    col = min(max(col, 0), n - 1)
    row = min(max(row, 0), n - 1)
    return TileAddress(zoom=zoom, column=col, row=row)

def zoom_from_resolution(resolution: float, tile_size: int = DEFAULT_TILE_SIZE) -> int:
    """
    Zoom cuya resolución nominal (m/px) es la más cercana a `resolution`.
    - Compara en espacio log2, así que no desborda con valores extremos.
    - Redondeo al más cercano (x.5 sube).
    - Nunca devuelve < 0.
    """
    res = abs(float(resolution))
    if not math.isfinite(res) or res == 0.0:
        raise ValueError(f"resolución inválida: {resolution}")
    z0_res = 2.0 * HALF_WORLD_M / float(tile_size)
    zoom = math.floor(math.log2(z0_res) - math.log2(res) + 0.5)
    return max(0, int(zoom))

__all__ = [
    "Bbox","EARTH_RADIUS_M","HALF_WORLD_M","MAX_LATITUDE","DEFAULT_TILE_SIZE",
    "tile_size_m","tile_to_mercator_bbox","mercator_to_geographic_bbox",
    "geographic_to_mercator_bbox","geographic_to_tile","zoom_from_resolution",
]
