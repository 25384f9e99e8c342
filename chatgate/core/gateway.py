"""FastAPI app entry."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatgate.adapters.chat_api.router import router as chat_router, set_chat_service
from chatgate.config.settings import settings
from chatgate.core.audit import shutdown_audit_worker
from chatgate.core.chat_service import build_chat_service
from chatgate.observability.logging import log_event
from chatgate.providers.upstream import close_upstream_async_client
from chatgate.util.logger import logger


app = FastAPI(title=settings.app_name)
app.include_router(chat_router)


def _blocked_response(status_code: int, reason: str, detail: str | None = None) -> JSONResponse:
    content = {"error": reason}
    if detail and settings.expose_error_detail:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content)


@app.middleware("http")
async def request_boundary_middleware(request: Request, call_next):
    logger.debug("boundary enter method=%s path=%s", request.method, request.url.path)

    if request.url.path == "/health":
        return await call_next(request)

    content_length_header = request.headers.get("content-length", "").strip()
    if settings.max_request_body_bytes > 0 and request.method.upper() in {"POST", "PUT", "PATCH"}:
        if content_length_header:
            try:
                content_length = int(content_length_header)
            except ValueError:
                logger.warning("boundary reject invalid content-length path=%s", request.url.path)
                return _blocked_response(status_code=400, reason="invalid_content_length")
        else:
            content_length = len(await request.body())
        if content_length > settings.max_request_body_bytes:
            logger.warning(
                "boundary reject oversize request size=%s max=%s path=%s",
                content_length,
                settings.max_request_body_bytes,
                request.url.path,
            )
            return _blocked_response(
                status_code=413,
                reason="request_body_too_large",
                detail=f"payload bytes={content_length} exceeds max={settings.max_request_body_bytes}",
            )

    try:
        response = await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return _blocked_response(
            status_code=500,
            reason="gateway_internal_error",
            detail=f"gateway internal error: {exc}",
        )
    logger.debug("boundary pass method=%s path=%s status=%s", request.method, request.url.path, response.status_code)
    return response


@app.get("/health")
def health() -> dict:
    logger.info("health check")
    return {"status": "ok"}


@app.on_event("startup")
async def startup_chat_service() -> None:
    try:
        service = build_chat_service()
        set_chat_service(service)
        log_event(
            "gateway_started",
            providers=service.dispatcher.chain.names(),
            env=settings.env,
            store=settings.chat_store_backend,
        )
    except Exception as exc:  # pragma: no cover
        logger.error("chat service init on startup failed: %s", exc)
        raise


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_async_client()
    shutdown_audit_worker()
