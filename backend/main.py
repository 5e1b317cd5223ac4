"""Door Access Edge Service - FastAPI Application Entry Point.

Main application setup with all routes, middleware, and lifecycle management.
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Any, AsyncGenerator

import aiosqlite
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from config import get_app_dir, get_config, get_settings, load_config
from database import close_db, get_audit_count_24h, init_db
from models import AccessState, HealthResponse, StatsResponse
from mqtt_client import get_mqtt_client
from routers import audit, config_router, inputs, scanner
from runtime import get_runtime, reset_runtime
from services.heartbeat import (
    build_monitors,
    get_heartbeat_status,
    start_heartbeat_service,
    stop_heartbeat_service,
)
from services.housekeeping import (
    is_housekeeping_running,
    start_housekeeping_service,
    stop_housekeeping_service,
)
from services.websocket_manager import get_ws_manager

# Configure logging
settings = get_settings()

log_dir = get_app_dir() / "logs"
log_dir.mkdir(exist_ok=True)

LOG_FILE_NAME = "access-service.log"
log_file = log_dir / LOG_FILE_NAME

handlers = [
    logging.StreamHandler(sys.stdout),
    RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    ),
]

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=handlers,
)
logger = logging.getLogger(__name__)
logger.info(f"Logging to file: {log_file}")

# Application start time for uptime calculation
_start_time: float = 0


async def _status_snapshot() -> dict[str, Any]:
    """Fields of the periodic STATUS_UPDATE broadcast."""
    state = get_runtime().store.last_known
    return {
        "mqtt_connected": get_mqtt_client().is_connected,
        "door_state": state.door.door_state.value,
        "access_state": state.access_control.access_state.value,
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown of all services.
    """
    global _start_time
    _start_time = time.time()

    logger.info("Starting Door Access Edge Service...")

    load_config()
    config = get_config()
    logger.info(f"Configuration loaded: relay={config.relay.device_id}")

    await init_db()

    runtime = get_runtime()
    await runtime.store.initialize()

    mqtt = get_mqtt_client()
    mqtt.connect(asyncio.get_running_loop())

    runtime.watchdog.start()
    start_housekeeping_service()
    start_heartbeat_service(build_monitors(runtime.audit))

    ws_manager = get_ws_manager()
    ws_manager.start_status_updates(_status_snapshot)

    logger.info("Door Access Edge Service started successfully")

    yield

    logger.info("Shutting down Door Access Edge Service...")

    await ws_manager.stop_status_updates()
    await runtime.watchdog.stop()
    await stop_housekeeping_service()
    await stop_heartbeat_service()

    # Let in-flight audit writes finish before the database closes
    try:
        await asyncio.wait_for(runtime.dispatcher.drain(), timeout=5)
    except asyncio.TimeoutError:
        logger.warning(f"Cancelling {runtime.dispatcher.pending_count} pending side effects")
    await runtime.dispatcher.cancel_all()

    mqtt.disconnect()
    await close_db()
    reset_runtime()

    logger.info("Door Access Edge Service stopped")


app = FastAPI(
    title="Door Access Edge Service",
    description="Door access control for a single door with relay inputs and a QR access terminal",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Device callbacks
app.include_router(inputs.router)
app.include_router(scanner.router)

# Operator API
app.include_router(audit.router)
app.include_router(config_router.router)


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns service status including MQTT connection and database health.
    """
    mqtt = get_mqtt_client()
    uptime = int(time.time() - _start_time) if _start_time > 0 else 0

    db_ok = True
    try:
        await get_audit_count_24h()
    except (aiosqlite.Error, RuntimeError):
        db_ok = False

    return HealthResponse(
        ok=mqtt.is_connected and db_ok,
        mqtt_connected=mqtt.is_connected,
        db_ok=db_ok,
        relay_last_seen_seconds=mqtt.last_seen_seconds,
        uptime_seconds=uptime,
    )


@app.get("/v1/state", response_model=AccessState, response_model_by_alias=True, tags=["state"])
async def get_state() -> AccessState:
    """Get the persisted door access state document."""
    return await get_runtime().store.load()


@app.get("/v1/stats", response_model=StatsResponse, tags=["stats"])
async def get_stats() -> StatsResponse:
    """Get service statistics."""
    state = await get_runtime().store.load()
    events_24h = await get_audit_count_24h()

    return StatsResponse(
        door_state=state.door.door_state,
        access_state=state.access_control.access_state,
        audit_events_last_24h=events_24h,
    )


@app.get("/v1/debug/housekeeping", tags=["debug"])
async def get_housekeeping_status() -> dict:
    """Get housekeeping, watchdog and device heartbeat status (debug endpoint)."""
    config = get_config()
    runtime = get_runtime()
    cycle = runtime.watchdog.cycle
    return {
        "housekeeping_running": is_housekeeping_running(),
        "housekeeping_interval_seconds": config.storage.housekeeping_interval_seconds,
        "audit_retention_days": config.storage.audit_retention_days,
        "watchdog_running": runtime.watchdog.is_running,
        "door_opened_at": cycle.opened_at if cycle else None,
        "pending_side_effects": runtime.dispatcher.pending_count,
        "devices": get_heartbeat_status(),
    }


@app.get("/v1/debug/logs", tags=["debug"])
async def get_logs(lines: int = 100) -> dict:
    """Get recent log entries (debug endpoint).

    Args:
        lines: Number of recent lines to return (default 100, max 500).

    Returns:
        Dict with log file path and recent log lines.
    """
    lines = min(lines, 500)

    log_path = get_app_dir() / "logs" / LOG_FILE_NAME

    if not log_path.exists():
        return {"log_path": str(log_path), "exists": False, "lines": []}

    try:
        with open(log_path, "r", encoding="utf-8") as f:
            all_lines = f.readlines()
    except OSError as e:
        return {"log_path": str(log_path), "exists": True, "error": str(e), "lines": []}

    recent_lines = all_lines[-lines:]
    return {
        "log_path": str(log_path),
        "exists": True,
        "total_lines": len(all_lines),
        "lines": [line.rstrip() for line in recent_lines],
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time events.

    Clients receive AUDIT_EVENT and STATUS_UPDATE messages.
    """
    ws_manager = get_ws_manager()
    await ws_manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            logger.debug(f"WebSocket received: {data}")
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        app,
        host=config.http.host,
        port=config.http.port,
    )
