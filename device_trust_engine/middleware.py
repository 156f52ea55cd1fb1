from __future__ import annotations

from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .decision import BLOCK_RESPONSE, BLOCK_STATUS_CODE, response_headers
from .engine import DeviceTrustEngine
from .models import Outcome
from .observation import observation_from_headers


DEFAULT_EXEMPT_PATHS = ("/health", "/docs", "/redoc", "/openapi.json")


class DeviceGateMiddleware(BaseHTTPMiddleware):
    """Gate every request through the device trust engine.

    Blocked requests get the fixed 403 payload. Every other response carries
    the fingerprint and trust score headers, plus an alert header on Warn.
    The decision is exposed to handlers as ``request.state.device_decision``.
    """

    def __init__(
        self,
        app: ASGIApp,
        engine: DeviceTrustEngine,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        principal_resolver: Optional[Callable[[Request], Optional[str]]] = None,
    ):
        super().__init__(app)
        self.engine = engine
        self.exempt_paths = set(exempt_paths)
        self.principal_resolver = principal_resolver

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        origin = request.client.host if request.client else None
        observation = observation_from_headers(origin, request.headers)
        principal_id = self.principal_resolver(request) if self.principal_resolver else None
        decision = await run_in_threadpool(
            self.engine.evaluate, observation, f"{request.method} {request.url.path}", principal_id
        )
        request.state.device_decision = decision
        headers = response_headers(decision)

        if decision.outcome is Outcome.BLOCK:
            return JSONResponse(status_code=BLOCK_STATUS_CODE, content=BLOCK_RESPONSE, headers=headers)

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
