"""
RaceTiming — Server entry point.

Starts the FastAPI server with the authenticated API, the public results
API and the JSON error handlers.
Usage:
    python server.py
    # or: uvicorn server:app --host 0.0.0.0 --port 8080 --reload
"""

import logging
import sqlite3
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.auth import ensure_bootstrap_admin, verify_token
from core.config import get_settings
from core.database import get_connection, init_db
from core.errors import AuthenticationError, RaceTimingError, UpstreamStoreError
from core.recalc import recalculator
from api.routes import router as api_router
from api.public_routes import router as public_router
from api.schemas import StatusOut

VERSION = "1.0.0"

logger = logging.getLogger("racetiming")


# ─── Bearer Token Middleware (pure ASGI) ─────────────────────────────

class BearerTokenMiddleware:
    """Pure ASGI middleware.

    Every /api/* request needs ``Authorization: Bearer <token>`` except the
    public results API, login, registration and the status endpoint.
    Verified claims are stored in ``request.state.user``.
    """
    EXEMPT_PATHS = {"/api/status", "/api/auth/login", "/api/auth/register"}
    PUBLIC_PREFIX = "/api/public"

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if (not path.startswith("/api")
                or path in self.EXEMPT_PATHS
                or path.startswith(self.PUBLIC_PREFIX)
                or scope.get("method") == "OPTIONS"):
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        auth = headers.get(b"authorization", b"").decode()
        scheme, _, token = auth.partition(" ")
        try:
            if scheme.lower() != "bearer" or not token:
                raise AuthenticationError("Bearer token required")
            claims = verify_token(token.strip())
        except AuthenticationError as e:
            response = JSONResponse(status_code=401, content=e.to_dict())
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["user"] = claims
        await self.app(scope, receive, send)


# ─── Error handlers ──────────────────────────────────────────────────

def _error_response(status_code: int, body: dict, exc: BaseException) -> JSONResponse:
    if not get_settings().is_production:
        body["traceback"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return JSONResponse(status_code=status_code, content=body)


async def domain_error_handler(request: Request, exc: RaceTimingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.to_dict(), exc)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    return _error_response(400, {"kind": "validation_error", "message": problems}, exc)


async def store_error_handler(request: Request, exc: sqlite3.Error):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    err = UpstreamStoreError(f"Database error: {exc}")
    return _error_response(err.status_code, err.to_dict(), exc)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return _error_response(500, {"kind": "internal_error", "message": "Internal server error"}, exc)


# ─── App ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init database + bootstrap admin."""
    conn = get_connection()
    try:
        init_db(conn)
        ensure_bootstrap_admin(conn)
    finally:
        conn.close()
    recalculator.reset()
    logger.info("RaceTiming %s started (db: %s)", VERSION, get_settings().db_path)

    yield


app = FastAPI(title="RaceTiming", version=VERSION, lifespan=lifespan)

app.add_middleware(BearerTokenMiddleware)

app.add_exception_handler(RaceTimingError, domain_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(sqlite3.Error, store_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

app.include_router(public_router, prefix="/api/public")
app.include_router(api_router, prefix="/api")


@app.get("/api/status", response_model=StatusOut)
async def status():
    return {"status": "ok", "version": VERSION}


# ─── Main ────────────────────────────────────────────────────────────

PORT = 8080


def _run_server(host: str = "0.0.0.0", port: int = PORT):
    import uvicorn
    config = uvicorn.Config("server:app", host=host, port=port, log_level="warning")
    uvicorn.Server(config).run()


if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if "--dev" in sys.argv:
        import uvicorn
        uvicorn.run("server:app", host="0.0.0.0", port=PORT, reload=True)
    else:
        print(f"RaceTiming server — http://localhost:{PORT}/api/status")
        _run_server()
