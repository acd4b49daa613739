#!/usr/bin/env python3
"""
Passkey gateway launcher
Starts the FastAPI server with uvicorn
"""

import argparse
import sys


def main():
    parser = argparse.ArgumentParser(description="Payments Maps passkey gateway")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--workers", type=int, default=1, help="Number of worker processes")

    args = parser.parse_args()

    if args.workers > 1:
        # Each worker keeps its own in-memory rate-limit counters
        print("Note: with several workers use RATE_LIMIT_BACKEND=redis to share rate limits")

    try:
        import uvicorn

        uvicorn.run(
            "passkey_gate.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=args.workers if not args.reload else 1,
            log_level="info",
            proxy_headers=True,
        )

    except KeyboardInterrupt:
        print("\n\nShutting down...")

    except ImportError as e:
        print("\nError: Missing dependencies. Please install the package:")
        print("  pip install -e .")
        print(f"\nDetails: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
