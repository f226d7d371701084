# calsync/middleware/logging.py
import time
import uuid
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send
import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

logger = structlog.get_logger("http")

# health checks hit every few seconds
QUIET_PATHS = {"/healthz"}


class RequestIdMiddleware:
    """Binds a request id into the log context and echoes it on the response."""

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        self.app = app
        self.header_name = header_name
        self._header_key = header_name.lower().encode("latin-1")

    def _incoming_id(self, scope: Scope) -> str:
        for key, value in scope.get("headers", []):
            if key == self._header_key and value:
                return value.decode("latin-1")[:128]
        return uuid.uuid4().hex

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        req_id = self._incoming_id(scope)
        path = scope["path"]
        started = time.perf_counter()
        status_code = 500
        bind_contextvars(request_id=req_id, path=path, method=scope["method"])

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                MutableHeaders(scope=message)[self.header_name] = req_id
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        except Exception as exc:
            logger.exception("http_request_exception", error=str(exc))
            raise
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 1)
            if status_code >= 500:
                logger.warning("http_request_finished", status_code=status_code, duration_ms=duration_ms)
            elif path not in QUIET_PATHS:
                logger.info("http_request_finished", status_code=status_code, duration_ms=duration_ms)
            clear_contextvars()
