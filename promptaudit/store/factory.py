"""Prompt store factory — path selection and initialization.

LocalSQLiteBackend path, first match wins:
  1. PROMPTAUDIT_DB_PATH environment variable
  2. config.store.path
  3. ~/.promptaudit/promptaudit.db (default)

PRAGMA version guard:
  LocalSQLiteBackend.initialize() raises RuntimeError if PRAGMA user_version
  is not 0 (fresh) or 1 (expected). The FastAPI lifespan propagates this
  RuntimeError to refuse startup.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Optional

from promptaudit.store.protocol import PromptStore
from promptaudit.store.sqlite_backend import LocalSQLiteBackend
from promptaudit.utils.logger import get_logger

if TYPE_CHECKING:
    from promptaudit.config import Config

logger = get_logger(__name__)

_ENV_DB_PATH = "PROMPTAUDIT_DB_PATH"
_DEFAULT_DB_PATH = "~/.promptaudit/promptaudit.db"


def resolve_db_path(config: Optional["Config"] = None) -> str:
    """Return the database path after applying the environment override."""
    env_path = os.getenv(_ENV_DB_PATH)
    if env_path:
        return env_path
    if config is not None and config.store.path:
        return config.store.path
    return _DEFAULT_DB_PATH


async def create_prompt_store(config: Optional["Config"] = None) -> PromptStore:
    """Create and initialize the prompt store.

    Raises:
      RuntimeError: If PRAGMA user_version indicates an incompatible schema.
                    Propagated to the FastAPI lifespan → startup refused.

    Returns:
        Initialized PromptStore ready for use.
    """
    db_path = resolve_db_path(config)
    store = LocalSQLiteBackend(db_path=db_path)
    await store.initialize()

    logger.info(
        "prompt_store_selected",
        backend="LocalSQLiteBackend",
        db_path=store.db_path,
    )
    return store
