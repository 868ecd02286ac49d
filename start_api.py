#!/usr/bin/env python3
"""
Merchant Analytics API Startup Script

Starts the FastAPI server for triggering and inspecting analytics runs.
Workers are started separately:

    python -m merchant_analytics.workers.start_arq_worker
    python -m merchant_analytics.workers.start_arq_worker --scheduler
"""

import os
import sys
from pathlib import Path

import uvicorn


def main():
    """Start the merchant analytics API server."""
    print("Starting Merchant Analytics API Server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("")

    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   REDIS_URL=redis://localhost:6379/0")
        print("   SALESFORCE_CLIENT_ID=... SALESFORCE_CLIENT_SECRET=...")
        print("")

    try:
        uvicorn.run(
            "merchant_analytics.main:app",
            host="0.0.0.0",
            port=int(os.getenv("PORT", "8000")),
            reload=os.getenv("ENVIRONMENT", "development") == "development",
            reload_dirs=["merchant_analytics"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down Merchant Analytics API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
