# src/cogtiles/config.py
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ONE_HOUR_S = 60 * 60

# Opciones GDAL recomendadas para leer COG por HTTP (rangos de bytes)
DEFAULT_GDAL_OPTIONS: Dict[str, str] = {
    "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
    "GDAL_HTTP_MERGE_CONSECUTIVE_RANGES": "YES",
    "VSI_CACHE": "TRUE",
}

COVERAGE_ALL = "*"


class Settings(BaseSettings):
    """
    Config del motor de tiles. No toca disco ni red.
    Debe ser construida y provista por composition/di.py (CLI/servicios).
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="COGTILES_",
        env_nested_delimiter="__",
        extra="forbid",
        frozen=True,
    )

    # --- cachés (capacidad, TTL en segundos) ---
    handle_cache_size: int = Field(16, ge=1)
    handle_cache_ttl_s: float = Field(ONE_HOUR_S, gt=0)
    metadata_cache_size: int = Field(16, ge=1)
    metadata_cache_ttl_s: float = Field(ONE_HOUR_S, gt=0)
    tile_cache_size: int = Field(1024, ge=1)
    tile_cache_ttl_s: float = Field(ONE_HOUR_S, gt=0)
    evict_failed_entries: bool = True  # False: el fallo queda cacheado hasta expirar

    # --- tiles ---
    default_tile_size: int = Field(256, ge=1)
    max_tile_size: int = Field(4096, ge=1)
    coverage_sources: Tuple[str, ...] = ()  # "*" = todas las fuentes

    # --- lectura ---
    decode_workers: int = Field(4, ge=1)
    gdal_options: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_GDAL_OPTIONS))

    log_level: str = "INFO"

    # ----------------------------
    # Normalizadores / validadores
    # ----------------------------
    @field_validator("coverage_sources", mode="before")
    @classmethod
    def _split_sources(cls, v):
        if isinstance(v, str):
            v = [s for s in v.split(",")]
        return tuple(s.strip() for s in v if s and s.strip())

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        v2 = v.strip().upper()
        if not isinstance(logging.getLevelName(v2), int):
            raise ValueError(f"log_level inválido: {v}")
        return v2

    @model_validator(mode="after")
    def _tile_sizes(self) -> "Settings":
        if self.default_tile_size > self.max_tile_size:
            raise ValueError(
                f"default_tile_size={self.default_tile_size} > max_tile_size={self.max_tile_size}"
            )
        return self

    # ----------------------------
    # Helpers puros
    # ----------------------------
    def coverage_enabled(self, source_id: str) -> bool:
        return COVERAGE_ALL in self.coverage_sources or source_id in self.coverage_sources


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Instancia cacheada. Úsala SOLO desde composition/di.py o CLI.
    Para tests, recuerda limpiar:
        get_settings.cache_clear()
    """
    return Settings()
