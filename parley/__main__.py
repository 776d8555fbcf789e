"""
parley.__main__ — Entry point for ``python -m parley``
=======================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Serve the FastAPI app with uvicorn (seeding, the WebSocket hub and
   the reconciliation sweep start in the app lifespan).

Run with::

    python -m parley
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from parley.config import load_config
from parley.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("parley")


def main() -> None:
    """Bootstrap and serve the Parley API."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    try:
        cfg = load_config()
    except (FileNotFoundError, ValueError) as exc:
        logger.critical("%s", exc)
        sys.exit(1)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)
    engine.dispose()

    # 4. Serve.
    logger.info("Starting %s on port %d", cfg.service_name, cfg.api_port)
    uvicorn.run("parley.api.main:app", host="0.0.0.0", port=cfg.api_port, log_config=None)


if __name__ == "__main__":
    main()
