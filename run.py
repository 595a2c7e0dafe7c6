#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server on the configured host and port.
"""

import sys

from loan_ledger.api import run_server
from loan_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Ledger...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
