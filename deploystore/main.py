"""HTTP surface for deploystore: health checks and local blob downloads."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from .blobs import LocalBlobStore
from .errors import ErrorCode, StorageError
from .factory import create_storage
from .settings import log_settings_sources
from .storage import Storage

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.EXPIRED: 401,
    ErrorCode.INVALID: 400,
    ErrorCode.CONNECTION_FAILED: 503,
    ErrorCode.NOT_IMPLEMENTED: 501,
    ErrorCode.OTHER: 500,
}


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    timestamp: datetime
    version: str = VERSION
    detail: str | None = None


def http_status_for(error: StorageError) -> int:
    return STATUS_BY_CODE.get(error.code, 500)


def create_app(storage: Storage | None = None) -> FastAPI:
    """Create the FastAPI app.

    Without an injected *storage* one is built from the environment when
    the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "storage", None) is None:
            log_settings_sources()
            app.state.storage = create_storage()
        yield

    app = FastAPI(title="deploystore", version=VERSION, lifespan=lifespan)
    app.state.storage = storage

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        status = http_status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code.value}: {exc}")
        return JSONResponse(
            status_code=status,
            content={"code": exc.code.value, "detail": exc.message},
        )

    @app.get("/health", response_model=HealthResponse)
    def health_check(request: Request):
        """Check both backing stores."""
        try:
            request.app.state.storage.check_health()
        except StorageError as e:
            body = HealthResponse(
                status="unhealthy",
                timestamp=datetime.now(timezone.utc),
                detail=e.message,
            )
            return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
        return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))

    @app.get("/blobs/{blob_id}")
    def download_blob(
        blob_id: str,
        request: Request,
        token: str = Query(..., description="Signed download token"),
    ):
        """Serve a blob through a URL issued by LocalBlobStore.read_url()."""
        blobs = request.app.state.storage.blobs
        if not isinstance(blobs, LocalBlobStore):
            raise HTTPException(status_code=404, detail="Blob downloads are not served here")
        if not blobs.verify(blob_id, token):
            raise HTTPException(status_code=403, detail="Invalid or expired blob URL")
        path = blobs.path_for(blob_id)
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Blob not found")
        return FileResponse(path, media_type="application/octet-stream", filename=blob_id)

    return app


app = create_app()


# Run with: uvicorn deploystore.main:app --host 0.0.0.0 --port 8080
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
