#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server with the loan servicing engine. Host, port, storage
and log level come from SERVICING_* environment variables.
"""

import sys

import uvicorn

from loan_servicing.config import get_config
from loan_servicing.logging_config import setup_logging


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_servicing.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level)
    logger.info("Starting loan servicing API on %s:%s (storage: %s)",
                config.api_host, config.api_port, config.storage_backend)

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down loan servicing API")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
