#!/usr/bin/env python3
"""
Attribution Engine API Startup Script

Starts the attribution engine's internal FastAPI server for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the attribution engine API server."""
    print("Starting Attribution Engine API Server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   INTERNAL_API_KEY=your-internal-key")
        print("")

    try:
        uvicorn.run(
            "attribution_engine.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["attribution_engine"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down attribution engine API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
