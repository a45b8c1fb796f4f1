import os

import uvicorn

from logging_config import setup_logging

# Setup logging before importing app
setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE"))

from app import app
from constants import STORAGE_BACKEND, VERSION
from logging_config import get_logger

logger = get_logger(__name__)


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    logger.info(f"Starting Ephemeral Chat {VERSION} on {host}:{port}, storage={STORAGE_BACKEND}")
    # one process only: rooms, sessions and broadcast topics are held in memory
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
