"""Programmatic uvicorn entry point for nsfwgate.

Reads host and port from the loaded config (0.0.0.0:8080 by default) and
starts uvicorn with bounded concurrency and a graceful shutdown window, so
in-flight scans get up to 30 seconds to finish on SIGTERM.

Usage:
    python -m nsfwgate.run
    nsfwgate                 # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from nsfwgate.config import load_config
from nsfwgate.main import create_app

# Maximum number of concurrent connections accepted by uvicorn.
UVICORN_LIMIT_CONCURRENCY: int = 100

# OS-level TCP connection backlog queue size.
UVICORN_BACKLOG: int = 50

# HTTP keep-alive timeout in seconds.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5

# Seconds in-flight requests get to complete after a shutdown signal.
UVICORN_TIMEOUT_GRACEFUL_SHUTDOWN: int = 30


def main() -> None:
    """Start the nsfwgate server.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        create_app(config=config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        timeout_graceful_shutdown=UVICORN_TIMEOUT_GRACEFUL_SHUTDOWN,
    )


if __name__ == "__main__":
    main()
