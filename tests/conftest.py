"""Root test configuration for PromptAudit.

Clears the PROMPTAUDIT_* environment overrides so a developer's shell cannot
leak into config or store selection, resets the shared rate limiter, and
provides an initialized LocalSQLiteBackend on a temporary database.
"""

from __future__ import annotations

from typing import AsyncIterator

import pytest

from promptaudit.scanner.definitions import DetectorRegistry, build_registry
from promptaudit.store.sqlite_backend import LocalSQLiteBackend


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove environment overrides that would change config or store paths."""
    for name in ("PROMPTAUDIT_CONFIG", "PROMPTAUDIT_PORT", "PROMPTAUDIT_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Prevents test-to-test rate limit bleed where many captures from the same
    test client address within one minute would trigger a 429.
    """
    from promptaudit.capture.limiter import limiter
    try:
        limiter._storage.reset()
    except Exception:
        pass  # not every limits storage backend implements reset()


@pytest.fixture
def registry() -> DetectorRegistry:
    return build_registry()


@pytest.fixture
async def store(tmp_path) -> AsyncIterator[LocalSQLiteBackend]:
    """Fresh, initialized SQLite store; closed after the test."""
    backend = LocalSQLiteBackend(db_path=str(tmp_path / "promptaudit.db"))
    await backend.initialize()
    yield backend
    await backend.close()
