# src/cogtiles/composition/di.py
from __future__ import annotations
from pathlib import Path
from typing import Optional

import yaml

from ..adapters.rasterio_cog_source import RasterioCogSource
from ..config import Settings, get_settings
from ..services.tile_resolver import TileResolver

def load_settings_from_yaml(path: Path) -> Settings:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: se esperaba un mapeo YAML")
    return Settings(**data)

def build_settings(config_path: Optional[Path] = None) -> Settings:
    """YAML explícito si existe; si no, entorno (COGTILES_*) vía get_settings()."""
    if config_path is not None:
        return load_settings_from_yaml(config_path)
    return get_settings()

def build_source(settings: Settings) -> RasterioCogSource:
    return RasterioCogSource(gdal_options=settings.gdal_options, workers=settings.decode_workers)

def build_resolver(settings: Optional[Settings] = None) -> TileResolver:
    st = settings or get_settings()
    return TileResolver(source=build_source(st), settings=st)
