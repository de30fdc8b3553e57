# src/cogtiles/services/raster_cache.py
from __future__ import annotations

"""
Caché con de-duplicación de trabajo en vuelo (futuros como valor).

Se guarda la *tarea* (asyncio.Task) y no su resultado: N llamadas
concurrentes con la misma clave esperan la misma tarea y el productor
se invoca una sola vez.

  • DedupCache: primitiva genérica (LRU por capacidad + TTL por inserción).
  • RasterHandleCache: abre fuentes raster por identificador.
  • RasterTileCache: decodifica y remuestrea una ventana por tile.

Política de fallos: por defecto una tarea fallida se retira apenas falla
(`evict_failures=True`); quienes ya la esperaban ven la misma excepción,
la siguiente llamada reintenta. Con `evict_failures=False` el fallo queda
cacheado hasta que expire o sea desalojado.
"""

import asyncio
import functools
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

import numpy as np
from cachetools import TTLCache

from ..contracts.core import TileAddress
from ..contracts.geo import Bbox
from ..errors import DecodeError, SourceOpenError, TileEngineError
from ..ports.raster_source import RasterHandle, RasterSourcePort, SourceId

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Producer = Callable[[], Awaitable[V]]
EvictCallback = Callable[[Any, "asyncio.Future[Any]"], None]

ONE_HOUR_S = 60 * 60


class _EvictingTTLCache(TTLCache):
    """TTLCache que avisa de cada desalojo (LRU o expiración)."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float],
                 on_evict: Optional[EvictCallback] = None):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self._on_evict = on_evict

    def popitem(self):
        key, value = super().popitem()
        logger.debug("LRU desaloja %s", key)
        if self._on_evict is not None:
            self._on_evict(key, value)
        return key, value

    def expire(self, time=None):
        expired = super().expire(time)
        for key, value in expired:
            logger.debug("TTL expira %s", key)
            if self._on_evict is not None:
                self._on_evict(key, value)
        return expired


class DedupCache(Generic[K, V]):
    """
    Caché de futuros con capacidad y TTL.
    Reglas:
      - clave presente y vigente -> misma tarea (aunque siga pendiente)
      - ausente/expirada -> producer() una vez, se guarda antes de resolver
      - nunca más de `capacity` entradas
    """

    def __init__(
        self,
        capacity: int,
        ttl: float = ONE_HOUR_S,
        *,
        evict_failures: bool = True,
        on_evict: Optional[EvictCallback] = None,
        timer: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        if capacity < 1:
            raise ValueError("capacity debe ser >= 1")
        if ttl <= 0:
            raise ValueError("ttl debe ser > 0")
        self.capacity = capacity
        self.ttl = ttl
        self.evict_failures = evict_failures
        self.name = name
        self._on_evict = on_evict
        self._lock = threading.RLock()
        self._entries: _EvictingTTLCache = _EvictingTTLCache(capacity, ttl, timer, on_evict)

    def get(self, key: K, producer: Producer[V]) -> "asyncio.Future[V]":
        """Debe llamarse dentro de un event loop en ejecución."""
        with self._lock:
            self._entries.expire()
            task = self._entries.get(key)
            if task is not None:
                logger.debug("%s hit %s", self.name, key)
                return task
            logger.debug("%s miss %s", self.name, key)
            task = asyncio.ensure_future(producer())
            self._entries[key] = task
        if self.evict_failures:
            task.add_done_callback(functools.partial(self._drop_if_failed, key))
        return task

    async def fetch(self, key: K, producer: Producer[V]) -> V:
        # shield: cancelar a un llamador no cancela el trabajo compartido
        return await asyncio.shield(self.get(key, producer))

    def _drop_if_failed(self, key: K, task: "asyncio.Future[V]") -> None:
        if not task.cancelled() and task.exception() is None:
            return
        with self._lock:
            if self._entries.get(key) is task:
                del self._entries[key]
                logger.warning("%s: productor falló para %s, entrada retirada", self.name, key)

    def invalidate(self, key: K) -> bool:
        with self._lock:
            task = self._entries.pop(key, None)
        if task is None:
            return False
        if self._on_evict is not None:
            self._on_evict(key, task)
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries.expire()
            items = list(self._entries.items())
            # no usar TTLCache.clear(): pasa por popitem() y avisaría dos veces
            for key, _ in items:
                del self._entries[key]
        if self._on_evict is not None:
            for key, task in items:
                self._on_evict(key, task)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


# ----------------------
# Instancias concretas
# ----------------------

class RasterHandleCache:
    """Handles abiertos por source; se cierran al ser desalojados."""

    def __init__(self, source: RasterSourcePort, capacity: int = 16, ttl: float = ONE_HOUR_S,
                 *, evict_failures: bool = True, timer: Callable[[], float] = time.monotonic):
        self.source = source
        self._cache: DedupCache[SourceId, RasterHandle] = DedupCache(
            capacity, ttl, evict_failures=evict_failures, on_evict=self._release,
            timer=timer, name="handles",
        )

    async def get(self, source_id: SourceId) -> RasterHandle:
        return await self._cache.fetch(source_id, functools.partial(self._open, source_id))

    async def _open(self, source_id: SourceId) -> RasterHandle:
        logger.info("abriendo raster %s", source_id)
        try:
            return await self.source.open(source_id)
        except TileEngineError:
            raise
        except Exception as e:
            raise SourceOpenError(f"no se pudo abrir {source_id}: {e}", source_id=source_id) from e

    @staticmethod
    def _release(source_id: SourceId, task: "asyncio.Future[RasterHandle]") -> None:
        if not task.done():
            task.add_done_callback(lambda t: RasterHandleCache._close(source_id, t))
        else:
            RasterHandleCache._close(source_id, task)

    @staticmethod
    def _close(source_id: SourceId, task: "asyncio.Future[RasterHandle]") -> None:
        if task.cancelled() or task.exception() is not None:
            return
        logger.debug("cerrando handle %s", source_id)
        task.result().close()

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


def tile_key(source_id: SourceId, tile_size: int, address: TileAddress) -> str:
    return f"{source_id}/{tile_size}/{address.zoom}/{address.column}/{address.row}"


class RasterTileCache:
    """Buffers decodificados (tile_size x tile_size x bandas), solo lectura."""

    def __init__(self, capacity: int = 1024, ttl: float = ONE_HOUR_S,
                 *, evict_failures: bool = True, timer: Callable[[], float] = time.monotonic):
        self._cache: DedupCache[str, np.ndarray] = DedupCache(
            capacity, ttl, evict_failures=evict_failures, timer=timer, name="tiles",
        )

    async def get(
        self,
        handle_getter: Callable[[], Awaitable[RasterHandle]],
        source_id: SourceId,
        address: TileAddress,
        bbox: Bbox,
        tile_size: int,
        fill_value: float,
    ) -> np.ndarray:
        key = tile_key(source_id, tile_size, address)

        async def _decode() -> np.ndarray:
            handle = await handle_getter()
            try:
                data = await handle.read_window(bbox, tile_size, tile_size, fill_value, "nearest")
            except TileEngineError:
                raise
            except Exception as e:
                raise DecodeError(f"fallo al decodificar {key}: {e}", source_id=source_id) from e
            arr = np.asarray(data)
            if arr.ndim == 2:
                arr = arr[:, :, np.newaxis]
            if arr.shape[:2] != (tile_size, tile_size):
                raise DecodeError(
                    f"ventana {key} con shape {arr.shape}, se esperaba ({tile_size}, {tile_size}, n)",
                    source_id=source_id,
                )
            arr.setflags(write=False)
            return arr

        return await self._cache.fetch(key, _decode)

    def clear(self) -> None:
        self._cache.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)


__all__ = [
    "DedupCache", "RasterHandleCache", "RasterTileCache", "tile_key", "ONE_HOUR_S",
]
