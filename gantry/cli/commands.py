"""
Command implementations; ``__main__`` handles arguments and output.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import sys
from pathlib import Path
from typing import List, Tuple

from gantry.asgi import Gantry
from gantry.db import Database, close_engines, get_engine
from gantry.models import ModelRegistry

logger = logging.getLogger("gantry.cli")


def load_app(path: str) -> Gantry:
    """
    Import ``module:attribute`` and return the ``Gantry`` app it names.

    Raises:
        ValueError: malformed path or the attribute is not a Gantry app
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"expected 'module:attribute', got {path!r}")

    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    module = importlib.import_module(module_name)
    try:
        app = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"module {module_name!r} has no attribute {attr!r}")
    if not isinstance(app, Gantry):
        raise ValueError(f"{path} is a {type(app).__name__}, not a Gantry app")
    return app


def serve(path: str, host: str, port: int, reload: bool, log_level: str) -> None:
    import uvicorn

    app = load_app(path)
    uvicorn.run(
        path if reload else app,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
    )


def migrate(path: str) -> List[str]:
    """Create or migrate every registered table and save seeds."""
    load_app(path)

    async def _run() -> List[str]:
        try:
            await get_engine().connect()
            return await ModelRegistry.bootstrap()
        finally:
            await close_engines()

    return asyncio.run(_run())


def routes(path: str) -> List[Tuple[str, str, str]]:
    app = load_app(path)
    return [(r.method, r.path, r.name) for r in app.router.routes()]


def cleanup(path: str, model_name: str) -> int:
    """Purge soft-deleted rows of ``model_name``; returns rows removed."""
    load_app(path)
    model = ModelRegistry.get(model_name)
    if model is None:
        raise ValueError(f"unknown model {model_name!r}")

    async def _run() -> int:
        try:
            return await Database(model).cleanup()
        finally:
            await close_engines()

    return asyncio.run(_run())
