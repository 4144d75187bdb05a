"""
Run x402guard API

Helper script to start the FastAPI payment policy service.
"""

import uvicorn
from x402guard.config import settings


def main():
    """Start the API server."""
    print("=" * 60)
    print("  x402guard Payment Policy Engine")
    print("  Starting FastAPI server...")
    print("=" * 60)
    print(f"\n🌐 Service will run at: http://{settings.host}:{settings.port}")
    print(f"📊 API docs available at: http://{settings.host}:{settings.port}/docs")
    print("\nPress Ctrl+C to stop\n")

    uvicorn.run(
        "x402guard.server:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
