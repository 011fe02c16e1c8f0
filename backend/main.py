"""
RyFlow Link: FastAPI application entry point.

Starts LAN peer discovery on startup and serves the REST API and the
realtime relay WebSocket endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from config import (
    API_HOST,
    API_PORT,
    APP_VERSION,
    CORS_ORIGINS,
    DISCOVERY_ENABLED,
    DISPLAY_NAME,
)
from discovery.service import DiscoveryService
from relay.manager import RelayManager

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
discovery_service = DiscoveryService()
relay_manager = RelayManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting RyFlow Link services...")

    if DISCOVERY_ENABLED:
        # Failure leaves discovery in standalone mode; the relay still serves.
        await discovery_service.start(DISPLAY_NAME, API_PORT)
    else:
        logger.info("LAN discovery disabled by configuration")

    logger.info(f"RyFlow Link ready, API: {API_HOST}:{API_PORT}")
    try:
        yield
    finally:
        logger.info("Shutting down RyFlow Link services...")
        await discovery_service.stop()


# --- FastAPI app ---
app = FastAPI(
    title="RyFlow Link",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(discovery_service, relay_manager)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    connection_id = await relay_manager.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            # Binary frames go through the same decoder as text frames
            frame = message.get("text")
            if frame is None:
                frame = message.get("bytes")
            if frame is not None:
                await relay_manager.handle_message(connection_id, frame)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"Relay connection {connection_id} failed: {e}")
    finally:
        await relay_manager.disconnect(connection_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
