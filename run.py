#!/usr/bin/env python3
"""
Vault Core Entry Point

Starts the FastAPI server with host and port taken from VAULT_ settings.
"""

import sys

from vault_core.api import run_server
from vault_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Vault Core...")
    print(f"Environment: {config.environment}")
    print(f"Storage: {config.database_url.split('://')[0]}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Vault Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
