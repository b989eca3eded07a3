#!/usr/bin/env python3
"""Wrapper script to run the Mindbody webhook receiver.

Starts the FastAPI app from webhooks.server using uvicorn, fixing imports when
run from the project root or as a daemon.
"""

import sys
from pathlib import Path

import uvicorn

# Ensure project root is on sys.path so that "webhooks.server" is importable
PROJECT_ROOT = Path(__file__).parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mindbody.config import settings  # noqa: E402


def main() -> None:
    uvicorn.run(
        "webhooks.server:create_app",
        factory=True,
        host=settings.webhook_host,
        port=settings.webhook_port,
        reload=settings.webhook_reload,
    )


if __name__ == "__main__":
    main()
