"""FastAPI application exposing the upload queue"""

import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tusupload.client import TusClient
from tusupload.config import settings
from tusupload.exceptions import StorageError
from tusupload.models.tus_upload import TusUpload
from tusupload.utils.logger import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="tusupload",
    description="Resumable uploads over the tus protocol",
    version="0.1.0",
)

tus_client: Optional[TusClient] = None
_app_start_time: Optional[float] = None


class UploadRequest(BaseModel):
    """Local file to queue for upload"""

    path: str
    metadata: Dict[str, str] = Field(default_factory=dict)


def build_client() -> TusClient:
    return TusClient(config=settings)


def get_client() -> TusClient:
    if tus_client is None:
        raise HTTPException(status_code=503, detail="Upload client not started")
    return tus_client


def serialize_upload(upload: TusUpload) -> Dict[str, Any]:
    return {
        "id": upload.id,
        "file_name": upload.file_name,
        "status": upload.status,
        "content_length": upload.content_length,
        "upload_offset": upload.upload_offset,
        "upload_location_url": upload.upload_location_url,
        "metadata": upload.get_metadata(),
        "retry_count": upload.retry_count,
        "error_message": upload.error_message,
    }


@app.on_event("startup")
async def startup_event():
    """Start the client and resume unfinished uploads"""
    global tus_client, _app_start_time
    _app_start_time = time.time()

    tus_client = build_client()
    restored = await tus_client.start()
    logger.info(f"tusupload started, {len(restored)} upload(s) resumed")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the queue and close connections"""
    global tus_client
    if tus_client is None:
        return

    try:
        await tus_client.close()
    except Exception as e:
        logger.error(f"Error during upload client shutdown: {e}")
    tus_client.database.close()
    tus_client = None


@app.get("/")
async def root():
    return {
        "name": "tusupload",
        "version": "0.1.0",
        "endpoints": {"health": "/health", "uploads": "/uploads"},
    }


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint"""
    uptime = (time.time() - _app_start_time) if _app_start_time else 0
    checks: Dict[str, Any] = {"status": "ok", "uptime": uptime}

    if tus_client is None:
        checks["status"] = "error"
        checks["database"] = False
        return JSONResponse(status_code=503, content=checks)

    checks["database"] = await tus_client.database.health_check()
    checks["queue"] = tus_client.get_status()
    if not checks["database"]:
        checks["status"] = "error"
        logger.warning("Health check failed")
        return JSONResponse(status_code=503, content=checks)

    checks["uploads"] = await tus_client.database.get_stats()
    return checks


@app.get("/uploads")
async def list_uploads() -> Dict[str, Any]:
    client = get_client()
    return {
        "status": client.status,
        "uploads": [serialize_upload(upload) for upload in client.current_uploads],
    }


@app.post("/uploads", status_code=202)
async def create_upload(request: UploadRequest) -> Dict[str, Any]:
    client = get_client()
    try:
        upload = await client.upload_file(request.path, request.metadata)
    except (StorageError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return serialize_upload(upload)


@app.get("/uploads/{upload_id}")
async def get_upload(upload_id: str) -> Dict[str, Any]:
    upload = get_client().get_upload(upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return serialize_upload(upload)


@app.post("/uploads/{upload_id}/cancel")
async def cancel_upload(upload_id: str) -> Dict[str, Any]:
    if not await get_client().cancel(upload_id):
        raise HTTPException(status_code=409, detail="Upload is not queued")
    return {"id": upload_id, "canceled": True}


@app.post("/uploads/{upload_id}/retry")
async def retry_upload(upload_id: str) -> Dict[str, Any]:
    if not await get_client().retry(upload_id):
        raise HTTPException(status_code=409, detail="Upload cannot be retried")
    return {"id": upload_id, "queued": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
