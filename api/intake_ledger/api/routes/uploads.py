from fastapi import APIRouter, Depends, HTTPException, Request, status

from intake_ledger.schemas.uploads import UploadOut
from intake_ledger.services.object_store import (
    ObjectStoreUnavailableError,
    ObjectStoreValidationError,
    S3ObjectStore,
    get_object_store,
)

router = APIRouter()


@router.put("/upload", response_model=UploadOut)
async def upload_file(request: Request, object_store: S3ObjectStore = Depends(get_object_store)) -> UploadOut:
    body = await _read_limited_body(request, object_store.max_bytes)
    try:
        result = await object_store.upload(body, request.headers.get("content-type"))
    except ObjectStoreValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except ObjectStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return UploadOut(key=result.key, url=result.url, content_type=result.content_type, size=result.size)


async def _read_limited_body(request: Request, max_bytes: int) -> bytes:
    too_large = HTTPException(status_code=status.HTTP_413_CONTENT_TOO_LARGE, detail=f"upload exceeds {max_bytes} bytes")

    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_bytes:
        raise too_large

    # Content-Length may be absent (chunked) or wrong, so the stream is counted too.
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise too_large
    return bytes(body)
