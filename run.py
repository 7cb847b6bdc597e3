#!/usr/bin/env python3
"""
P2P Lending Engine Entry Point

Starts the FastAPI server with the lending engine.
"""

import sys

from p2p_lending.api import run_server
from p2p_lending.config import get_config
from p2p_lending.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)

    print("🤝 Starting P2P Lending Engine...")
    print("⏱️  Offers expire after %d hours" % config.offer_ttl_hours)
    print("🔒 Audit trail active")
    print("💰 All financial calculations use Decimal precision")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down P2P Lending Engine...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
