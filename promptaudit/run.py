"""Programmatic uvicorn entry point for PromptAudit.

Reads host and port from the loaded config (127.0.0.1:3000 by default) and
starts uvicorn with conservative connection limits:

  --limit-concurrency 200  HTTP 503 beyond 200 concurrent connections
  --backlog 100            OS connection queue depth
  --timeout-keep-alive 5   Short keep-alive for extension clients

Usage:
    python -m promptaudit.run      # reads .promptaudit/config.yaml
    promptaudit                    # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from promptaudit.config import load_config

UVICORN_LIMIT_CONCURRENCY: int = 200

UVICORN_BACKLOG: int = 100

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the PromptAudit server.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "promptaudit.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
