# src/cogtiles/errors.py
from __future__ import annotations

from typing import Optional

from .contracts.core import Stage, TileAddress, TileFailure


class TileEngineError(Exception):
    """Error base del motor. `stage` indica dónde falló la resolución."""
    stage: Stage = Stage.DECODE

    def __init__(self, message: str, *, source_id: Optional[str] = None):
        super().__init__(message)
        self.source_id = source_id


class SourceOpenError(TileEngineError):
    stage = Stage.OPEN


class MetadataError(TileEngineError):
    stage = Stage.METADATA


class DecodeError(TileEngineError):
    stage = Stage.DECODE


class InvalidRequestError(TileEngineError):
    stage = Stage.REQUEST


def describe_failure(exc: BaseException, address: Optional[TileAddress] = None) -> TileFailure:
    """
    Traduce una excepción a `TileFailure` para el colaborador de render.
    Errores ajenos al motor se reportan como DECODE.
    """
    stage = exc.stage if isinstance(exc, TileEngineError) else Stage.DECODE
    cause = exc.__cause__
    return TileFailure(
        stage=stage,
        message=str(exc) or type(exc).__name__,
        detail=f"{type(cause).__name__}: {cause}" if cause is not None else None,
        zoom=address.zoom if address else None,
        column=address.column if address else None,
        row=address.row if address else None,
    )


__all__ = [
    "TileEngineError", "SourceOpenError", "MetadataError", "DecodeError",
    "InvalidRequestError", "describe_failure",
]
