import json
import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from branchlms.core.config import settings
from branchlms.core.errors import LmsError
from branchlms.db.base import utcnow
from branchlms.routers import admin, auth, certificates, courses, health, me, payments, sites


def create_app() -> FastAPI:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app = FastAPI(title="BranchLMS API", version="1.0.0")

    logger = logging.getLogger("branchlms")
    logging.getLogger("httpx").setLevel(logging.WARNING)

    allow_origins = [o.strip() for o in str(settings.cors_allow_origins or "").split(",") if o.strip()]
    if "*" in allow_origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not include '*' when allow_credentials=true")

    is_prod = (settings.app_env or "").strip().lower() in {"prod", "production"}

    def _parse_csv(value: str) -> list[str]:
        return [x.strip() for x in str(value or "").split(",") if x.strip()]

    allow_methods_raw = str(settings.cors_allow_methods or "*").strip()
    allow_headers_raw = str(settings.cors_allow_headers or "*").strip()
    if is_prod:
        allow_methods = ["GET", "POST", "PUT", "DELETE", "OPTIONS"] if allow_methods_raw == "*" else _parse_csv(allow_methods_raw)
        allow_headers = ["authorization", "content-type", "x-request-id"] if allow_headers_raw == "*" else _parse_csv(allow_headers_raw)
    else:
        allow_methods = ["*"] if allow_methods_raw == "*" else _parse_csv(allow_methods_raw)
        allow_headers = ["*"] if allow_headers_raw == "*" else _parse_csv(allow_headers_raw)

    def _request_id(request: Request) -> str | None:
        rid = getattr(getattr(request, "state", None), "request_id", None)
        rid = str(rid or "").strip()
        return rid or None

    def _error_body(request: Request, *, message: str, code: str, details=None) -> dict:
        return {
            "ok": False,
            "error": message,
            "error_code": code,
            "details": details,
            "request_id": _request_id(request),
        }

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid

        if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            origin = (request.headers.get("origin") or "").strip()
            if origin and origin not in allow_origins:
                return JSONResponse(
                    status_code=403,
                    content=_error_body(request, message="invalid origin", code="forbidden"),
                    headers={"X-Request-ID": rid},
                )

        status_code = 500
        try:
            response = await call_next(request)
            status_code = int(response.status_code)
        finally:
            path = request.url.path
            if not (path.startswith("/health") or path.startswith("/admin/jobs/")):
                logger.info(
                    json.dumps(
                        {
                            "ts": utcnow().isoformat(),
                            "rid": rid,
                            "user_id": getattr(request.state, "user_id", None),
                            "site_id": getattr(request.state, "site_id", None),
                            "method": request.method,
                            "path": path,
                            "status": status_code,
                            "duration_ms": int((time.perf_counter() - t0) * 1000),
                        },
                        ensure_ascii=False,
                    )
                )

        response.headers["X-Request-ID"] = rid
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # The assessment page needs the camera for proctoring.
        response.headers.setdefault("Permissions-Policy", "camera=(self), microphone=(), geolocation=()")
        if is_prod:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    @app.exception_handler(LmsError)
    async def lms_error_handler(request: Request, exc: LmsError):
        if exc.status_code >= 500:
            logger.error("request failed: %s (%s)", exc.message, exc.error_code)
        return JSONResponse(
            status_code=int(exc.status_code),
            content=_error_body(request, message=exc.message, code=exc.error_code, details=exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        status = int(exc.status_code)
        code = {401: "unauthorized", 403: "forbidden", 404: "not_found", 409: "conflict", 429: "rate_limited"}.get(status, "http_error")
        return JSONResponse(
            status_code=status,
            content=_error_body(request, message=str(exc.detail or "request failed"), code=code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [{"loc": list(e.get("loc") or ()), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content=_error_body(request, message="invalid request", code="validation_error", details=details),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        rid = _request_id(request)
        logger.exception("unhandled exception rid=%s", rid)
        return JSONResponse(
            status_code=500,
            content=_error_body(request, message="internal server error", code="internal_error"),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=allow_methods,
        allow_headers=allow_headers,
    )

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(sites.router)
    app.include_router(courses.router)
    app.include_router(certificates.router)
    app.include_router(me.router)
    app.include_router(payments.router)
    app.include_router(admin.router)

    return app


app = create_app()
