# src/cogtiles/cli.py
from __future__ import annotations

"""
CLI de inspección para el motor de tiles COG.

Comandos:
  - info: imprime la metadata normalizada (JSON).
  - tile: resuelve un tile z/x/y y lo guarda como .npy.

Ejemplos rápidos:
  python -m cogtiles.cli info https://example.com/dem_3857.tif

  python -m cogtiles.cli tile https://example.com/dem_3857.tif 12 2048 1361 \
      --size 512 --out ./tile.npy
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import numpy as np

from .composition.di import build_resolver, build_settings
from .config import Settings
from .errors import TileEngineError

logger = logging.getLogger("cogtiles")


def _configure_logging(s: Settings, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ----------------------
# Comandos
# ----------------------

async def _info(s: Settings, source: str) -> dict:
    resolver = build_resolver(s)
    try:
        md = await resolver.metadata.get(source)
    finally:
        resolver.close()
    return md.model_dump(mode="json")


def cmd_info(args: argparse.Namespace, s: Settings) -> int:
    out = asyncio.run(_info(s, args.source))
    print(json.dumps(out, indent=2, ensure_ascii=False))
    return 0


async def _tile(s: Settings, args: argparse.Namespace):
    resolver = build_resolver(s)
    try:
        return await resolver.resolve_tile(args.source, (args.z, args.x, args.y), args.size, True if args.coverage else None)
    finally:
        resolver.close()


def cmd_tile(args: argparse.Namespace, s: Settings) -> int:
    res = asyncio.run(_tile(s, args))
    out_path = Path(args.out) if args.out else Path(f"tile_{args.z}_{args.x}_{args.y}.npy")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    np.save(out_path, res.buffer)
    logger.info("tile %d/%d/%d (%s) shape=%s dtype=%s",
                args.z, args.x, args.y, res.path.value, res.buffer.shape, res.buffer.dtype)
    print(str(out_path))
    return 0


# ----------------------
# Parser
# ----------------------

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cogtiles", description="Tiles desde COG remotos (motor de caché)")
    p.add_argument("--config", help="settings YAML (si no, variables COGTILES_*)")
    p.add_argument("-v", "--verbose", action="store_true", help="logging DEBUG")
    sub = p.add_subparsers(dest="cmd", required=True)

    pi = sub.add_parser("info", help="metadata normalizada del COG")
    pi.add_argument("source", help="URL o ruta del COG (EPSG:3857)")
    pi.set_defaults(func=cmd_info)

    pt = sub.add_parser("tile", help="resuelve un tile y lo guarda como .npy")
    pt.add_argument("source", help="URL o ruta del COG (EPSG:3857)")
    pt.add_argument("z", type=int)
    pt.add_argument("x", type=int)
    pt.add_argument("y", type=int)
    pt.add_argument("--size", type=int, default=None, help="lado del tile en píxeles (default Settings)")
    pt.add_argument("--coverage", action="store_true", help="tile de cobertura bajo la pirámide")
    pt.add_argument("--out", help="ruta .npy de salida")
    pt.set_defaults(func=cmd_tile)

    return p


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        s = build_settings(Path(args.config) if args.config else None)
        _configure_logging(s, args.verbose)
        return int(bool(args.func(args, s)))  # 0 si todo bien
    except KeyboardInterrupt:
        return 130
    except TileEngineError as ex:
        print(f"[ERROR:{ex.stage.value}] {ex}", file=sys.stderr)
        return 1
    except Exception as ex:
        print(f"[ERROR] {ex}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
