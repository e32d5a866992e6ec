"""API routes for direct-to-S3 uploads."""
import logging

from fastapi import APIRouter, Query

from app.core.dependencies import DbSession, ObjectStoreDep
from app.domains.media.http_errors import http_errors
from app.domains.media.schemas import (
    ConfirmUploadRequest,
    ConfirmUploadResponse,
    MediaKind,
    MediaStatsResponse,
    PresignedUploadRequest,
    PresignedUploadResponse,
)
from app.domains.media.service import MediaService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/presigned-url", response_model=PresignedUploadResponse)
def create_presigned_upload(
    request: PresignedUploadRequest,
    db: DbSession,
    object_store: ObjectStoreDep,
):
    """
    Issue a presigned S3 upload URL.

    The content type decides whether an audio or a photo record is created;
    the record starts out pending with a file size of zero.
    """
    service = MediaService(db, object_store)
    with http_errors("generate presigned URL"):
        issued = service.issue_presigned_upload(request)

    return PresignedUploadResponse(
        upload_url=issued.upload_url,
        public_url=issued.public_url,
        storage_key=issued.storage_key,
        record_id=issued.record_id,
        kind=issued.kind,
        url_expires_at=issued.url_expires_at,
        expires_at=issued.expires_at,
    )


@router.post("/confirm", response_model=ConfirmUploadResponse)
def confirm_upload(
    request: ConfirmUploadRequest,
    db: DbSession,
    object_store: ObjectStoreDep,
):
    """
    Confirm that the client finished uploading to S3.

    Works for both kinds; the record is found by its storage key.
    """
    service = MediaService(db, object_store)
    with http_errors("confirm upload"):
        confirmed = service.confirm_upload(request)

    record = confirmed.record
    return ConfirmUploadResponse(
        record_id=record.id,
        kind=confirmed.kind,
        storage_key=record.storage_key,
        storage_url=record.storage_url,
        processing_status=record.processing_status,
        file_size=record.file_size,
    )


@router.get("/stats", response_model=MediaStatsResponse)
def get_upload_stats(
    db: DbSession,
    object_store: ObjectStoreDep,
    kind: MediaKind = Query(MediaKind.AUDIO, description="Record kind to summarize"),
):
    """Upload statistics for one record kind."""
    service = MediaService(db, object_store)
    with http_errors("get upload statistics"):
        return service.get_stats(kind)
