"""HTTP service entrypoint that runs the background worker next to a health check."""

from __future__ import annotations

import asyncio
import contextlib
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from campaign_engine.worker import worker_loop

_worker_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _worker_task
    _worker_task = asyncio.create_task(worker_loop())
    try:
        yield
    finally:
        _worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _worker_task
        _worker_task = None


app = FastAPI(lifespan=lifespan)


@app.get("/health")
def health() -> dict:
    running = _worker_task is not None and not _worker_task.done()
    return {"status": "ok" if running else "degraded", "worker_running": running}


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")
    # nosec B104: the worker runs in a container and binds every interface.
    uvicorn.run("campaign_engine.worker_service:app", host=host, port=port)


if __name__ == "__main__":
    main()
