"""Main entry point for the modelhook API server."""

import signal
import sys

import uvicorn

from modelhook.config import settings


def signal_handler(signum: int, frame) -> None:
    """Handle shutdown signals gracefully."""
    print(f"Received shutdown signal {signum}")
    sys.exit(0)


def main() -> None:
    """Run the modelhook API server."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    uvicorn.run(
        "modelhook.app:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
