#!/usr/bin/env python3
"""
Crannies API Startup Script

Starts the FastAPI server with auto-reload for local development.
"""

import logging
import sys
from pathlib import Path

import uvicorn

logger = logging.getLogger(__name__)


def main():
    """Start the Crannies API server."""
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting Crannies API server on http://localhost:8000 (docs at /docs)")

    # Check for environment file
    if not Path(".env").exists():
        logger.warning(
            "No .env file found. Set DATABASE_URL, JWT_SECRET, STRIPE_SECRET_KEY, "
            "STRIPE_PRICE_ID and STRIPE_WEBHOOK_SECRET in the environment."
        )

    try:
        uvicorn.run(
            "crannies.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["crannies"],
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Crannies API server")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
