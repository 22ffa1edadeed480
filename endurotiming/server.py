"""
EnduroTiming — Server entry point.

Starts the FastAPI server with the REST API and the WebSocket endpoint.
Usage:
    python -m endurotiming.server
    python -m endurotiming.server --dev
    # or: uvicorn endurotiming.server:app --host 0.0.0.0 --port 8080 --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from endurotiming.core.database import get_connection, init_db
from endurotiming.core.simulator import LiveSimulator
from endurotiming.api.routes import router as api_router
from endurotiming.api.websocket import router as ws_router

logger = logging.getLogger("endurotiming")

PORT = 8080


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init database and the live simulator."""
    conn = get_connection()
    init_db(conn)
    conn.close()

    app.state.simulator = LiveSimulator()
    logger.info("EnduroTiming ready")

    yield


app = FastAPI(title="EnduroTiming", lifespan=lifespan)

app.include_router(api_router, prefix="/api")
app.include_router(ws_router)


# ─── Main ────────────────────────────────────────────────────────────

def _run_server(host: str = "0.0.0.0", port: int = PORT, reload: bool = False):
    import uvicorn
    uvicorn.run("endurotiming.server:app", host=host, port=port,
                log_level="info" if reload else "warning", reload=reload)


if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    dev_mode = "--dev" in sys.argv
    print(f"EnduroTiming server — http://localhost:{PORT}/api/status")
    _run_server(reload=dev_mode)
