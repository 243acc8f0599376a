#!/usr/bin/env python3
"""
AML Returns Service Entry Point

Starts the FastAPI server with the monthly returns system. Host, port,
database and logging come from AMLR_* environment variables.
"""

import sys

from aml_returns.api import run_server
from aml_returns.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting AML/CFT Returns Service...")
    print(f"Database: {config.database_path}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down AML/CFT Returns Service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
