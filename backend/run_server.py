"""Standalone script to run the relay server.

    python backend/run_server.py

Host and port come from RELAY_HOST / RELAY_PORT (defaults 0.0.0.0:8000).
"""

import logging
import os
import sys
from pathlib import Path

import uvicorn

# Add backend directory to path
backend_dir = Path(__file__).resolve().parent
sys.path.insert(0, str(backend_dir))

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the relay with uvicorn."""
    host = os.getenv("RELAY_HOST", "0.0.0.0")
    port = int(os.getenv("RELAY_PORT", "8000"))
    logger.info("Starting chat relay on %s:%d", host, port)
    uvicorn.run("chatrelay.main:app", host=host, port=port, proxy_headers=True)


if __name__ == "__main__":
    main()
