from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .database import init_db
from .errors import AccessError

from .api.whatsapp import router as whatsapp_router
from .api.qr import router as qr_router
from .api.committee import router as committee_router

logger = logging.getLogger(__name__)

# Paths whose responses must never be cached by browsers or proxies.
NO_STORE_PREFIXES = (
    "/join",
    "/qr/",
    "/api/whatsapp",
    "/api/committee",
)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Robots-Tag": "noindex, nofollow, noarchive",
}


def _error(
    status_code: int,
    message: str,
    headers: Any = None,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": message}
    content.update(extra or {})
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path")]
    field = ".".join(loc)
    msg = first.get("msg") or "Invalid value"
    return f"{field}: {msg}" if field else msg


def create_app() -> FastAPI:
    app = FastAPI(
        title="Hiking Club Access API",
        version=settings.app_version,
    )

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def no_store_headers(request: Request, call_next):  # noqa: ANN001
        response = await call_next(request)
        path = request.url.path
        if any(path == p.rstrip("/") or path.startswith(p) for p in NO_STORE_PREFIXES):
            for k, v in NO_STORE_HEADERS.items():
                response.headers[k] = v
        return response

    # --- Startup ---
    @app.on_event("startup")
    def _startup() -> None:
        init_db()

    # --- Error envelope ---
    @app.exception_handler(AccessError)
    async def access_error_handler(request: Request, exc: AccessError):  # noqa: ANN001
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.detail or exc.message)
        elif exc.detail:
            logger.info("%s on %s: %s", exc.error_code, request.url.path, exc.detail)
        return _error(exc.status_code, exc.message, headers=exc.headers, extra=exc.extra)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # noqa: ANN001
        detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        return _error(exc.status_code, detail, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ANN001
        return _error(400, _first_validation_message(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # noqa: ANN001
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error")

    # --- Health / meta ---
    @app.get("/health", tags=["meta"])
    def health() -> Dict[str, Any]:
        return {"ok": True, "env": settings.env}

    @app.get("/version", tags=["meta"])
    def version() -> Dict[str, Any]:
        return {"name": settings.app_name, "version": settings.app_version}

    # --- Routers ---
    app.include_router(whatsapp_router)
    app.include_router(qr_router)
    app.include_router(committee_router)

    return app


app = create_app()


def run() -> None:
    logging.basicConfig(
        level=getattr(logging, str(settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    import uvicorn

    # init_db runs in the startup hook.
    uvicorn.run(
        "hikeclub.main:app",
        host=settings.host,
        port=int(settings.port),
        reload=bool(settings.reload),
    )
