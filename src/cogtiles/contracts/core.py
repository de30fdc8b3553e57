# src/cogtiles/contracts/core.py
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_ZOOM = 30

# -------------------------
# Dirección de tile
# -------------------------
class TileAddress(BaseModel):
    model_config = ConfigDict(frozen=True)
    zoom: int = Field(ge=0, le=MAX_ZOOM)
    column: int = Field(ge=0)
    row: int = Field(ge=0)

    @model_validator(mode="after")
    def _inside_grid(self) -> "TileAddress":
        n = 2 ** self.zoom
        if self.column >= n or self.row >= n:
            raise ValueError(
                f"tile {self.zoom}/{self.column}/{self.row} fuera de la grilla (máx {n - 1})"
            )
        return self

    def as_tuple(self) -> tuple[int, int, int]: return (self.zoom, self.column, self.row)
    def __str__(self) -> str: return f"{self.zoom}/{self.column}/{self.row}"

# -------------------------
# Resultado de resolución
# -------------------------
class TilePath(str, Enum):
    DECODE = "decode"
    COVERAGE = "coverage"
    EMPTY = "empty"

# -------------------------
# Errores tipados (para el renderer)
# -------------------------
class Stage(str, Enum):
    REQUEST = "request"
    OPEN = "open"
    METADATA = "metadata"
    DECODE = "decode"

class TileFailure(BaseModel):
    """Fallo de un tile, tal como lo recibe la capa de render (no pinta nada)."""
    model_config = ConfigDict(frozen=True)
    stage: Stage
    message: str
    detail: Optional[str] = None
    zoom: Optional[int] = None
    column: Optional[int] = None
    row: Optional[int] = None
