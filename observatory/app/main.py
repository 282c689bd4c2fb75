"""FastAPI entry-point for the observatory monitor."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .broadcast import Subscription
from .config import Settings, get_settings, load_remote_config
from .logging_config import configure_logging
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
settings = load_remote_config(settings)
app = FastAPI(title="observatory-monitor", version="0.1.0")
manager = SessionManager(settings=settings)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Validation error in {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    try:
        await manager.start()
        logger.info("Application started successfully")
    except Exception as e:
        logger.exception(f"Failed to start services: {e}")
        logger.error("Application startup failed - monitor running in degraded mode")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        await manager.stop()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "connectionStatus": manager.snapshot.connection_status.value})


@app.get("/api/state")
async def get_state() -> JSONResponse:
    return JSONResponse(manager.get_state())


@app.get("/api/status")
async def get_status() -> JSONResponse:
    return JSONResponse(manager.status())


class ResetRequest(BaseModel):
    reason: str = "manual"


@app.post("/api/session/reset")
async def reset_session(request: Optional[ResetRequest] = None) -> JSONResponse:
    reason = request.reason if request else "manual"
    await manager.request_reset(reason)
    return JSONResponse({"status": "queued", "reason": reason}, status_code=status.HTTP_202_ACCEPTED)


@app.post("/api/session/refresh")
async def refresh_session() -> JSONResponse:
    result = await manager.refresh()
    return JSONResponse({"status": "ok", **result})


async def _watch_client(ws: WebSocket, subscription: Subscription) -> None:
    """Consume client frames so a disconnect ends the subscription promptly."""
    try:
        while True:
            message = await ws.receive_text()
            logger.debug(f"Ignoring message from state subscriber {subscription.id}: {message[:200]}")
    except WebSocketDisconnect:
        pass
    finally:
        manager.unregister_ui(subscription)


@app.websocket("/ws/state")
async def state_socket(ws: WebSocket) -> None:
    await ws.accept()
    subscription = manager.register_ui()
    watcher = asyncio.create_task(_watch_client(ws, subscription))
    try:
        async for update in subscription:
            try:
                await ws.send_json(update.to_payload())
            except Exception as e:
                logger.debug(f"WebSocket send failed (client disconnected): {e}")
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"Unexpected error in state websocket: {e}")
    finally:
        watcher.cancel()
        manager.unregister_ui(subscription)
        try:
            await ws.close()
        except Exception:
            pass


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.server_host, port=settings.server_port, log_config=None)


if __name__ == "__main__":
    run()
