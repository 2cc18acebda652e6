"""Admin token auth middleware."""

from __future__ import annotations

import hmac
import logging
import os
import re

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


ADMIN_TOKEN_HEADER = "x-admin-token"
_LOCAL_ORIGIN_RE = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_EXEMPT_PATHS = {"/health"}


def _attach_local_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and _LOCAL_ORIGIN_RE.match(origin):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


def _auth_error(request: Request, code: str, message: str) -> JSONResponse:
    return _attach_local_cors(
        request,
        JSONResponse(
            {
                "ok": False,
                "errors": [{"code": code, "message": message, "path": ADMIN_TOKEN_HEADER, "detail": None}],
                "warnings": [],
            },
            status_code=401,
        ),
    )


class AdminTokenMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, token: str) -> None:
        super().__init__(app)
        self._token = token

    async def dispatch(self, request: Request, call_next):
        if os.getenv("STACKPILOT_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes"):
            return await call_next(request)
        if request.method == "OPTIONS":
            return await call_next(request)
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        logger = logging.getLogger("stackpilot.auth")
        supplied = request.headers.get(ADMIN_TOKEN_HEADER, "").strip()
        if not supplied:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _auth_error(request, "AUTH_MISSING_TOKEN", "Missing admin token")
        if not self._token or not hmac.compare_digest(supplied.encode("utf-8"), self._token.encode("utf-8")):
            logger.warning("auth_invalid_token path=%s configured=%s", request.url.path, bool(self._token))
            return _auth_error(request, "AUTH_INVALID_TOKEN", "Invalid admin token")
        request.state.actor = {"id": request.headers.get("x-requested-by", "admin").strip() or "admin"}
        return await call_next(request)
