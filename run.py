"""Run the dev supervisor service."""

import uvicorn

from devsupervisor.config import config

if __name__ == "__main__":
    uvicorn.run(
        "devsupervisor.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
