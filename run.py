#!/usr/bin/env python3
"""
Payroll Loans Entry Point

Starts the FastAPI server with settings from PAYROLL_LOANS_* environment
variables (or a .env file).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from payroll_loans.api import run_server
from payroll_loans.config import get_config
from payroll_loans.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )
    logger.info(
        f"Starting payroll loans API on {config.api_host}:{config.api_port} "
        f"({config.storage_backend} storage)"
    )

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        logger.info("Shutting down payroll loans API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
