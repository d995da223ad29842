"""
Process setup from configuration.

    from gantry.bootstrap import setup

    config = setup(["gantry.yaml"], env_file=".env")

Loads and activates the config, installs logging, registers the default
engine and every alias, and attaches the span journal when one is set.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .config import GantryConfig, configure_logging, load_config
from .db import configure_engine
from .trace import TraceJournal, get_recorder

logger = logging.getLogger("gantry.bootstrap")

__all__ = ["setup"]


def setup(
    paths: Optional[List[str]] = None,
    *,
    env_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> GantryConfig:
    config = load_config(paths=paths, env_file=env_file, overrides=overrides)
    configure_logging(config.logging)

    db = config.database
    configure_engine(db.url, alias="default", connect_retries=db.connect_retries)
    for alias, url in db.aliases.items():
        configure_engine(url, alias=alias, connect_retries=db.connect_retries)

    if config.logging.journal:
        get_recorder().set_journal(TraceJournal(config.logging.journal))
        logger.info(f"Span journal at {config.logging.journal}")

    logger.info(
        f"Configured mode={config.server.mode} database={db.url} "
        f"aliases={sorted(db.aliases)} cache={config.cache.backend}"
    )
    return config
