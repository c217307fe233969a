"""
Entry point for running the dev supervisor via `python -m devsupervisor`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import HOST, PORT


def main():
    """Run the dev supervisor server."""
    uvicorn.run(
        "devsupervisor.main:app",
        host=HOST,
        port=PORT,
        reload=False,
    )


if __name__ == "__main__":
    main()
