import logging
import time
from fastapi import Request
from typing import Callable

log = logging.getLogger("pingboard.access")

def access_log_middleware(app):
    @app.middleware("http")
    async def log_access(request: Request, call_next: Callable):
        # no access log for health checks
        if request.url.path == "/health":
            return await call_next(request)

        started = time.monotonic()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            ip = request.client.host if request.client else "-"
            log.info("%s %s %s %d %.1fms", ip, request.method, request.url.path,
                     status, (time.monotonic() - started) * 1000)
