from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, List, Optional

import httpx
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from arpack_backend.config import (
    ALLOWED_UPLOAD_MIME_TYPES,
    ARCHIVE_FILENAME,
    Settings,
    load_settings,
)
from arpack_backend.errors import (
    ArpackError,
    InputValidationError,
    InvalidSessionId,
    SecurityPolicyViolation,
    StorageFailure,
)
from arpack_backend.lifecycle import DeletionScheduler
from arpack_backend.ratelimit import RateLimiter
from arpack_backend.remote import fetch_remote_image
from arpack_backend.security import (
    is_safe_filename,
    is_valid_session_id,
    issue_session_id,
    normalize_session_id,
    safe_join,
)
from arpack_backend.workspace import (
    cleanup_expired_sessions,
    create_new_session,
    ensure_workspace_dirs,
    get_session_workspace,
    materialize_files,
    save_uploaded_image,
    update_session_meta,
)
from arpack_backend.zip_utils import write_archive

logger = logging.getLogger("arpack_backend.server")
audit_logger = logging.getLogger("arpack_backend.audit")

PROXY_PATH = "/api/proxy-image"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'self'; object-src 'none'; frame-src 'none'",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


class CreateZipRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Any = Field(default=None, alias="sessionId")
    # Entries are validated one by one so a single bad entry cannot sink the batch.
    files: Any = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _schedule_deletion(scheduler: DeletionScheduler, session_id: str) -> None:
    # Runs on the event loop after the response body has been sent.
    scheduler.schedule(session_id)


async def _housekeeping_worker(app: FastAPI) -> None:
    # Prune rate-limit buckets and, when enabled, sweep abandoned sandboxes.
    settings: Settings = app.state.settings
    while True:
        await asyncio.sleep(max(30, settings.cleanup_interval_seconds))
        app.state.general_limiter.cleanup()
        app.state.proxy_limiter.cleanup()
        if settings.sandbox_ttl_seconds > 0:
            try:
                deleted = await asyncio.to_thread(cleanup_expired_sessions, settings)
                if deleted:
                    logger.info("Removed %d expired sandbox(es)", deleted)
            except OSError:
                logger.exception("Sandbox sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    settings.workspaces_root.mkdir(parents=True, exist_ok=True)
    app.state.deletion_scheduler = DeletionScheduler(settings)

    task = asyncio.create_task(_housekeeping_worker(app))
    logger.info("Sandbox root: %s", settings.workspaces_root)
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        flushed = app.state.deletion_scheduler.shutdown()
        if flushed:
            logger.info("Deleted %d sandbox(es) pending removal at shutdown", flushed)


def create_app(
    settings: Optional[Settings] = None,
    remote_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or load_settings()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.remote_transport = remote_transport
    app.state.general_limiter = RateLimiter(
        settings.rate_limit_requests, settings.rate_limit_window_seconds
    )
    app.state.proxy_limiter = RateLimiter(
        settings.proxy_rate_limit_requests, settings.proxy_rate_limit_window_seconds
    )

    # Middleware added last runs first: CORS wraps everything else.
    @app.middleware("http")
    async def _admission(request: Request, call_next):
        key = _client_key(request)
        if not request.app.state.general_limiter.is_allowed(key):
            return _error(429, "Too many requests from this IP, please try again later.")
        if request.url.path == PROXY_PATH and not request.app.state.proxy_limiter.is_allowed(key):
            return _error(429, "Too many proxy requests, please slow down.")

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > settings.max_request_bytes:
            return _error(413, "Request body too large")

        response = await call_next(request)
        for k, v in SECURITY_HEADERS.items():
            response.headers.setdefault(k, v)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ArpackError)
    async def _arpack_error(request: Request, exc: ArpackError) -> JSONResponse:
        if isinstance(exc, SecurityPolicyViolation):
            audit_logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.detail)
        elif isinstance(exc, InputValidationError):
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.detail)
        else:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return _error(exc.status_code, exc.public_message)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Malformed request to %s: %s", request.url.path, exc.errors())
        return _error(400, "Invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _error(404, "Not found")
        if exc.status_code == 405:
            return _error(405, "Method not allowed")
        return _error(exc.status_code, "Request failed")

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error")


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/session/new")
    async def new_session(request: Request) -> JSONResponse:
        ws = create_new_session(request.app.state.settings)
        return JSONResponse({"success": True, "sessionId": ws.session_id})

    @app.post("/api/create-zip")
    async def create_zip(payload: CreateZipRequest, request: Request) -> JSONResponse:
        settings: Settings = request.app.state.settings

        # Reject before touching the filesystem.
        if not is_valid_session_id(payload.session_id):
            raise InvalidSessionId("create-zip with malformed session id")
        files = payload.files
        if not isinstance(files, list) or not files:
            return _error(400, "Invalid files array")
        if len(files) > settings.max_files_per_batch:
            return _error(400, "Too many files")

        ws = get_session_workspace(settings, payload.session_id)
        logger.info("Creating ZIP for session %s (%d entries)", ws.session_id, len(files))

        try:
            result = await asyncio.to_thread(materialize_files, ws, files, settings)
            await asyncio.to_thread(write_archive, ws.output_dir, ws.archive_path)
        except StorageFailure:
            # Nothing downloadable was published; do not leave the sandbox behind.
            request.app.state.deletion_scheduler.schedule(ws.session_id)
            raise

        return JSONResponse(
            {
                "success": True,
                "downloadUrl": f"/download/{ws.session_id}/{ARCHIVE_FILENAME}",
                "fileCount": len(result.written),
                "skipped": len(result.skipped),
            }
        )

    @app.post("/api/upload")
    async def upload_images(
        request: Request,
        files: List[UploadFile] = File(...),
        session_id: Optional[str] = Form(default=None, alias="sessionId"),
    ) -> JSONResponse:
        """Accept client-pushed images into output/images/ of a session.

        The declared MIME type is a pre-filter only; stored files must pass the
        magic byte check. Bad files are skipped and reported, not fatal.
        """
        settings: Settings = request.app.state.settings
        sid = normalize_session_id(session_id) if session_id else issue_session_id()
        if len(files) > settings.max_upload_files:
            return _error(400, "Too many files")

        ws = get_session_workspace(settings, sid)
        ensure_workspace_dirs(ws)

        saved: list[str] = []
        rejected: list[str] = []
        for upload in files:
            name = upload.filename or ""
            declared = (upload.content_type or "").split(";")[0].strip().lower()
            if declared not in ALLOWED_UPLOAD_MIME_TYPES:
                logger.warning("Upload %r rejected: declared type %r", name, declared)
                rejected.append(name)
                continue
            data = await upload.read(settings.max_upload_image_bytes + 1)
            try:
                saved.append(save_uploaded_image(ws, name, data, settings))
            except InputValidationError as exc:
                logger.warning("Upload %r rejected: %s", name, exc.detail)
                rejected.append(name)

        return JSONResponse(
            {"success": True, "sessionId": ws.session_id, "files": saved, "rejected": rejected}
        )

    @app.get(PROXY_PATH)
    async def proxy_image(request: Request, url: Optional[str] = None) -> Response:
        settings: Settings = request.app.state.settings
        if not url:
            return _error(400, "Invalid URL parameter")

        logger.info("Proxy request for: %s", url)
        image = await fetch_remote_image(url, settings, transport=request.app.state.remote_transport)

        headers = {"Cache-Control": f"public, max-age={settings.remote_cache_max_age_seconds}"}
        if settings.cors_origins:
            headers["Access-Control-Allow-Origin"] = settings.cors_origins[0]
        return Response(content=image.content, media_type=image.mime_type, headers=headers)

    @app.get("/download/{session_id}/{filename}")
    async def download(session_id: str, filename: str, request: Request) -> Response:
        settings: Settings = request.app.state.settings
        if not is_valid_session_id(session_id):
            raise InvalidSessionId("download with malformed session id")
        if not is_safe_filename(filename):
            raise InputValidationError("Rejected download filename", public_message="Invalid filename")

        ws = get_session_workspace(settings, session_id)
        path = safe_join(ws.root, filename)
        if not path.is_file():
            return _error(404, "File not found")

        update_session_meta(ws, downloaded=True)
        scheduler: DeletionScheduler = request.app.state.deletion_scheduler
        return FileResponse(
            path,
            filename=filename,
            headers={"Cache-Control": "no-store"},
            background=BackgroundTask(_schedule_deletion, scheduler, ws.session_id),
        )


app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("ARPACK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("PORT", "3000"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
