"""FastAPI web application for torrentcast."""

import collections
import logging
from contextlib import asynccontextmanager

# In-memory log buffer for diagnostics
LOG_BUFFER_SIZE = 500
log_buffer: collections.deque = collections.deque(maxlen=LOG_BUFFER_SIZE)


class BufferingLogHandler(logging.Handler):
    """Log handler that keeps recent logs in memory for the /logs endpoint."""

    def emit(self, record):
        try:
            msg = self.format(record)
            log_buffer.append({
                "time": record.created,
                "level": record.levelname,
                "name": record.name,
                "message": msg,
            })
        except Exception:
            self.handleError(record)


# Install the buffering handler on root logger
_buffer_handler = BufferingLogHandler()
_buffer_handler.setLevel(logging.INFO)
_buffer_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s'))
logging.getLogger().addHandler(_buffer_handler)

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .. import __version__
from ..errors import (
    ClientDisconnected,
    DownloadStalled,
    ExtractionFailed,
    InvalidIdentifier,
    NotFound,
    RangeOutOfBounds,
    RangeUnsatisfiable,
    SwarmUnavailable,
    TorrentCastError,
)
from ..orchestrator import Config, TorrentCast
from .api import get_torrentcast, router as api_router

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidIdentifier: 400,
    NotFound: 404,
    RangeOutOfBounds: 416,
    RangeUnsatisfiable: 416,
    DownloadStalled: 500,
    SwarmUnavailable: 500,
    ExtractionFailed: 500,
    ClientDisconnected: 499,  # Client closed request
}

system_router = APIRouter(tags=["system"])


def status_for(exc: TorrentCastError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


async def torrentcast_error_handler(request: Request, exc: TorrentCastError) -> JSONResponse:
    """Map the error taxonomy onto HTTP status codes."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.debug(f"{request.method} {request.url.path}: {exc}")

    if isinstance(exc, RangeUnsatisfiable):
        # 416 carries no body
        return Response(status_code=status_code, headers={"Content-Range": f"bytes */{exc.size}"})
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": exc.message},
    )


async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
    logger.error(f"I/O error serving {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "IOError", "detail": str(exc)})


@system_router.get("/health")
async def health(request: Request):
    """Process-wide counters."""
    torrentcast = get_torrentcast(request)
    download_speed, upload_speed = torrentcast.engine.global_stats()
    return {
        "status": "ok",
        "torrents": len(torrentcast.registry),
        "download_speed": download_speed,
        "upload_speed": upload_speed,
    }


@system_router.get("/logs")
async def get_logs(limit: int = 100, level: str | None = None):
    """Get recent log records."""
    logs = list(log_buffer)
    if level:
        logs = [entry for entry in logs if entry["level"] == level.upper()]
    return {"logs": logs[-limit:]}


def create_app(torrentcast: TorrentCast | None = None, config: Config | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        torrentcast: Pre-built streaming core (built from ``config`` on startup if omitted)
        config: Configuration used when ``torrentcast`` is omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the swarm engine, and tear everything down on exit."""
        if app.state.torrentcast is None:
            app.state.torrentcast = TorrentCast(app.state.config or Config())
        await app.state.torrentcast.start()
        logger.info("Streaming core started")
        try:
            yield
        finally:
            await app.state.torrentcast.cleanup()
            logger.info("Streaming core stopped")

    app = FastAPI(title="torrentcast", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges"],
    )
    app.include_router(api_router)
    app.include_router(system_router)
    app.add_exception_handler(TorrentCastError, torrentcast_error_handler)
    app.add_exception_handler(OSError, os_error_handler)

    app.state.torrentcast = torrentcast
    app.state.config = config
    return app


def run_server(config: Config | None = None):
    """Run the web server."""
    import uvicorn

    config = config or Config()
    uvicorn.run(create_app(config=config), host=config.host, port=config.port)
