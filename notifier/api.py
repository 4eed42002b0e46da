# notifier/api.py
import asyncio
import contextlib
import logging
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifier.metrics import NotificationMetrics
from shared.logging_setup import set_server_info
from shared.utils.network import get_local_ip_address

logger = logging.getLogger(__name__)

UNMATCHED_PATH_LABEL = "<unmatched>"


def get_client_ip(request: Request) -> Optional[str]:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def create_app(metrics: NotificationMetrics, metrics_path: str = "/metrics") -> FastAPI:
    """Create the HTTP app: the Prometheus scrape route and a JSON 404 for everything else."""
    app = FastAPI(title="Notification Service", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def record_request(request: Request, call_next):
        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception as e:
            logger.error(f"Error processing HTTP request: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"message": "Internal server error", "error_code": "internal_error"},
            )
        finally:
            duration = time.perf_counter() - start_time
            path = request.url.path if status_code != 404 else UNMATCHED_PATH_LABEL
            metrics.inc_http_request(request.method, path, status_code)
            metrics.observe_http_request_duration(request.method, path, status_code, duration)
            logger.info("HTTP request", extra={
                "method": request.method,
                "url": request.url.path,
                "status": status_code,
                "responseTime": round(duration * 1000, 3),
                "ip": get_client_ip(request),
                "requestId": request.headers.get("x-request-id"),
            })

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={
                    "message": f"Endpoint '{request.url.path}' not found",
                    "error_code": "endpoint_not_found",
                },
            )
        return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})

    @app.get(metrics_path)
    async def get_metrics():
        return Response(content=metrics.generate_latest(), media_type=metrics.content_type)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the service."""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HttpServer:
    """Runs the FastAPI app on the service's event loop."""

    def __init__(self, app: FastAPI, port: int, host: str = "0.0.0.0"):
        self.app = app
        self.host = host
        self.port = port
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None

    async def _serve(self):
        try:
            await self._server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            logger.error(f"HTTP server exited with status {e.code}")

    async def start(self, startup_timeout: float = 10.0) -> bool:
        server_config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(server_config)
        self._task = asyncio.create_task(self._serve())

        deadline = time.monotonic() + startup_timeout
        while not self._server.started:
            if self._task.done() or time.monotonic() > deadline:
                logger.error(f"HTTP server failed to start on {self.host}:{self.port}")
                await self.stop()
                return False
            await asyncio.sleep(0.05)

        ip = get_local_ip_address() if self.host in ("0.0.0.0", "::") else self.host
        set_server_info(ip, self.port)
        logger.info(f"HTTP server started listening on {self.host}:{self.port}")
        return True

    async def stop(self):
        if self._server is None:
            return
        self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except asyncio.TimeoutError:
                self._task.cancel()
                logger.warning("HTTP server did not stop within timeout")
            except Exception as e:
                logger.error(f"HTTP server stopped with error: {e!r}")
        self._server = None
        self._task = None
        logger.info("HTTP server closed successfully")
