#!/usr/bin/env python3
"""
funds_core Entry Point

Starts the FastAPI server (port from FUNDS_CORE_API_PORT, default 8090).
"""

import sys

from funds_core.api import run_server


def main() -> None:
    print("Starting funds_core transfer service...")
    print("Audit trail active, all amounts use Decimal precision")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down funds_core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
