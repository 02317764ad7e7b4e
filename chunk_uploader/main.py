import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from chunk_uploader.config import settings
from chunk_uploader.exceptions import (
    AlreadyMerging,
    InconsistentRewrite,
    IncompleteUpload,
    SizeMismatch,
    StoreUnavailable,
    UploadError,
    ValidationFailed,
)
from chunk_uploader.handler import build_handler
from chunk_uploader.logs import REQUEST_LOGGER, get_event_logger, log_event, trace_id
from chunk_uploader.maintenance import sweep_once
from chunk_uploader.metrics import http_request_duration_seconds, metrics_response
from chunk_uploader.schemas import ErrorResponse, UploadProgressResponse
from chunk_uploader.tracing import setup_tracing

handler = build_handler()
request_logger = get_event_logger(REQUEST_LOGGER)

ERROR_STATUS = {
    ValidationFailed: 422,
    SizeMismatch: 400,
    InconsistentRewrite: 409,
    IncompleteUpload: 409,
    AlreadyMerging: 409,
    StoreUnavailable: 503,
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_sweep_loop() -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(sweep_once, handler.storage)
            except Exception as exc:
                log_event(request_logger, {"event": "sweep_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.sweep_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.sweep_enabled:
        tasks.append(asyncio.create_task(_periodic_sweep_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _identifier(request: Request) -> str | None:
    return getattr(request.state, "identifier", None) or request.query_params.get("flowIdentifier")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_failed",
        500: "internal_error",
        503: "store_unavailable",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_body(request: Request, detail: str, error_code: str, identifier: str | None = None) -> dict:
    return {
        "detail": detail,
        "error_code": error_code,
        "request_id": _request_id(request),
        "identifier": identifier or _identifier(request),
        "trace_id": trace_id(),
    }


def _log_request_error(request: Request, status_code: int, detail: str, error_class: str) -> None:
    log_event(
        request_logger,
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "identifier": _identifier(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        },
    )


COMMON_ERROR_RESPONSES = {
    422: {"model": ErrorResponse, "description": "Missing or invalid chunk fields"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
    503: {"model": ErrorResponse, "description": "Chunk store unavailable"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Chunk-Uploader-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        request_logger,
        {
            "event": "request_completed",
            "request_id": request_id,
            "identifier": _identifier(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    _log_request_error(
        request,
        status_code,
        exc.detail,
        "server_error" if status_code >= 500 else "client_error",
    )
    return JSONResponse(
        status_code=status_code,
        content=_error_body(request, exc.detail, exc.error_code, exc.identifier),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    _log_request_error(
        request,
        exc.status_code,
        str(exc.detail),
        "client_error" if 400 <= exc.status_code < 500 else "server_error",
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, str(exc.detail), _error_code_for_status(exc.status_code)),
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, str(exc), "unhandled_exception")
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "internal server error", "internal_error"),
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "upload_protocol": handler.protocol.name.value,
        "storage_backend": settings.storage_backend,
        "merge_lock_backend": settings.merge_lock_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.get(
    "/upload",
    status_code=200,
    responses={**COMMON_ERROR_RESPONSES, 204: {"description": "Chunk not received yet"}},
)
async def resume_probe(request: Request) -> Response:
    descriptor = handler.protocol.parse(request.query_params)
    request.state.identifier = descriptor.identifier
    present = await asyncio.to_thread(handler.probe, descriptor)
    return Response(status_code=handler.protocol.probe_status(present))


@app.post(
    "/upload",
    response_model=UploadProgressResponse,
    response_model_exclude_none=True,
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Missing file part or payload size mismatch"},
        409: {"model": ErrorResponse, "description": "Chunk range conflicts with a stored chunk"},
    },
)
async def upload_chunk(request: Request) -> UploadProgressResponse:
    async with request.form() as form:
        upload = form.get(handler.protocol.file_field)
        if not isinstance(upload, UploadFile):
            raise HTTPException(status_code=400, detail="chunk file part is missing")
        descriptor = handler.protocol.parse(form)
        request.state.identifier = descriptor.identifier
        data = await upload.read()
    if not data:
        raise HTTPException(status_code=400, detail="chunk payload is empty")

    progress = await asyncio.to_thread(handler.handle, descriptor, data)
    if progress.artifact is None:
        return UploadProgressResponse(done=progress.done)
    return UploadProgressResponse(done=progress.done, file=progress.artifact.key, disk=progress.artifact.disk)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
