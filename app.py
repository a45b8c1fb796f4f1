import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import build_backend
from constants import ALLOWED_ORIGINS, VERSION
from coordinator import Coordinator, build_coordinator
from errors import ChatError
from hub import ConnectionHub
from logging_config import get_logger, setup_logging
from routers.rooms import rooms_router

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Coordinator components are built once per process and live until shutdown
    coordinator: Optional[Coordinator] = getattr(app.state, "coordinator", None)
    if coordinator is None:
        backend = await build_backend()
        coordinator = build_coordinator(backend)
        app.state.coordinator = coordinator
    logger.info(f"Coordinator ready with {coordinator.backend.name} storage")
    coordinator.reaper.start()

    yield

    await coordinator.reaper.stop()
    await coordinator.backend.close()
    logger.info("Application shutdown complete")


async def handle_chat_error(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


def create_app(coordinator: Optional[Coordinator] = None) -> FastAPI:
    app = FastAPI(title="Ephemeral Chat", version=VERSION, lifespan=lifespan)
    if coordinator is not None:
        app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, handle_chat_error)
    app.include_router(rooms_router)

    @app.get("/api/health")
    async def health(request: Request):
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "storage": request.app.state.coordinator.backend.name,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Realtime channel. The client joins a room with a ``join-room`` event after connecting."""
        await websocket.accept()
        hub = ConnectionHub(websocket, websocket.app.state.coordinator)
        await hub.run()

    logger.info("FastAPI application initialized")
    return app


app = create_app()
