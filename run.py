#!/usr/bin/env python3
"""
Token Transfer Service Entry Point

Provisions the wallet table, seeds the well-known wallet and starts the
FastAPI server.
"""

import sys

from token_transfer.api import bootstrap, run_server
from token_transfer.config import get_config
from token_transfer.errors import LedgerError
from token_transfer.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, config.log_format, log_file=config.log_file)

    try:
        system = bootstrap(config)
        run_server(host=config.api_host, port=config.api_port, system=system)
    except KeyboardInterrupt:
        print("\nShutting down token transfer service...")
    except (LedgerError, ValueError) as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
