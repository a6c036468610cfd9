"""Serves stored document files for the local storage backend."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from app.api.deps import ContextDep
from app.core.security import verify_download_token
from app.services.storage import guess_content_type

router = APIRouter(prefix="/storage", tags=["storage"])


def file_response(context: ContextDep, bucket: str, path: str) -> FileResponse:
    storage = context.storage
    if bucket != storage.bucket:
        raise HTTPException(status_code=404, detail="Object not found")
    try:
        target = storage.resolve(path)
    except ValueError:
        raise HTTPException(status_code=404, detail="Object not found")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Object not found")
    return FileResponse(
        target,
        media_type=guess_content_type(target.name) or "application/octet-stream",
    )


@router.api_route("/public/{bucket}/{path:path}", methods=["GET", "HEAD"])
def read_public_object(context: ContextDep, bucket: str, path: str) -> FileResponse:
    return file_response(context, bucket, path)


@router.get("/signed/{bucket}/{path:path}")
def read_signed_object(
    context: ContextDep, bucket: str, path: str, token: str
) -> FileResponse:
    if verify_download_token(token) != f"{bucket}/{path}":
        raise HTTPException(status_code=403, detail="Invalid or expired download link")
    return file_response(context, bucket, path)
