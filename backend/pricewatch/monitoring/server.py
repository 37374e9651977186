"""Health server: a small FastAPI app served by an embedded uvicorn."""

import asyncio
import contextlib
import errno
import socket
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pricewatch import __version__
from pricewatch.api.health import router as health_router
from pricewatch.core.exceptions import HealthServerError
from pricewatch.runtime import Runtime


logger = structlog.get_logger(__name__)

STARTUP_POLL_SECONDS = 0.05


def create_app(runtime: Runtime) -> FastAPI:
    """Build the health app bound to a runtime."""
    app = FastAPI(
        title="PriceWatch Health",
        description="Health, readiness and metrics for the scraping coordinator",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "Not Found", "path": request.url.path})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail, "path": request.url.path})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("health_server_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"error": "Internal Server Error", "message": str(exc)})

    app.include_router(health_router, tags=["health"])
    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class HealthServer:
    """Serves the health app on the first free port starting at ``port``."""

    def __init__(self, runtime: Runtime, host: str = "0.0.0.0", port: int = 3000, attempts: int = 10):
        self.runtime = runtime
        self.host = host
        self.port = port
        self.attempts = attempts
        self.app = create_app(runtime)
        self.bound_port: Optional[int] = None
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None

    def _bind(self) -> socket.socket:
        for offset in range(self.attempts):
            candidate = self.port + offset
            try:
                sock = bind_socket(self.host, candidate)
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise HealthServerError(f"Cannot bind health server on {self.host}:{candidate}: {e}") from e
                logger.warning("health_port_in_use", port=candidate)
                continue
            self.bound_port = sock.getsockname()[1]
            return sock
        raise HealthServerError(
            f"No free port for health server in {self.port}-{self.port + self.attempts - 1}"
        )

    async def start(self) -> int:
        """Bind and start serving.

        Returns:
            The port actually bound

        Raises:
            HealthServerError: If every offered port is taken or the server fails to start
        """
        self._socket = self._bind()
        config = uvicorn.Config(self.app, log_config=None, access_log=False, lifespan="off")
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        while not self._server.started:
            if self._task.done():
                error = self._task.exception()
                raise HealthServerError(f"Health server failed to start: {error}")
            await asyncio.sleep(STARTUP_POLL_SECONDS)

        logger.info(
            "health_server_started",
            port=self.bound_port,
            endpoints=["/health", "/ready", "/live", "/metrics", "/metrics/json"],
        )
        return self.bound_port

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            if self._socket is not None:
                self._socket.close()
            self._server = None
            self._task = None
            self._socket = None
        logger.info("health_server_stopped")
