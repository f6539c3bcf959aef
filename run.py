#!/usr/bin/env python3
"""
Microfinance Back-Office Entry Point

Starts the FastAPI server with host and port taken from configuration.
"""

import sys

from microfinance.api import run_server
from microfinance.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Microfinance Back-Office...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Microfinance Back-Office...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
