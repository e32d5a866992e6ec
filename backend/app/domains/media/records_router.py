"""API routes for reading and managing audio and photo records."""
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from app.core.dependencies import DbSession, ObjectStoreDep
from app.domains.media.http_errors import http_errors
from app.domains.media.schemas import (
    AudioRecordListResponse,
    AudioRecordResponse,
    AudioRecordUpdate,
    DeleteResponse,
    DownloadResponse,
    MediaKind,
    Pagination,
    PhotoRecordListResponse,
    PhotoRecordResponse,
    PhotoRecordUpdate,
    ProcessingStatus,
    RecordFilters,
    SortOrder,
)
from app.domains.media.service import MediaService


def build_records_router(
    kind: MediaKind,
    response_model: type[BaseModel],
    list_response_model: type[BaseModel],
    update_model: type[BaseModel],
) -> APIRouter:
    """Routes for one record kind; the kinds differ only in their schemas."""
    router = APIRouter()
    label = f"{kind.value} data"

    @router.get("/", response_model=list_response_model)
    def list_records(
        db: DbSession,
        object_store: ObjectStoreDep,
        visit_id: str | None = Query(None, description="Filter by visit"),
        patient_id: str | None = Query(None, description="Filter by patient"),
        type_: str | None = Query(None, alias="type", description="Filter by recording/photo type"),
        processing_status: ProcessingStatus | None = Query(None, description="Filter by processing status"),
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        sort_by: str = Query("uploaded_at", pattern="^(uploaded_at|file_name|file_size|duration)$"),
        sort_order: SortOrder = Query(SortOrder.DESC),
    ):
        """List records with filtering and pagination. Does not count as access."""
        filters = RecordFilters(
            visit_id=visit_id,
            patient_id=patient_id,
            classification=type_,
            processing_status=processing_status,
        )
        service = MediaService(db, object_store)
        with http_errors(f"retrieve {label}"):
            records, total = service.list_records(
                kind, filters=filters, skip=offset, limit=limit, sort_by=sort_by, sort_order=sort_order
            )

        return list_response_model(
            records=[response_model.model_validate(r) for r in records],
            pagination=Pagination(total=total, limit=limit, offset=offset, has_more=offset + limit < total),
        )

    @router.get("/visit/{visit_id}", response_model=list[response_model])
    def list_visit_records(visit_id: str, db: DbSession, object_store: ObjectStoreDep):
        """All records for a visit, newest first."""
        service = MediaService(db, object_store)
        with http_errors(f"retrieve {label} for visit"):
            return service.list_by_visit(kind, visit_id)

    @router.get("/patient/{patient_id}", response_model=list[response_model])
    def list_patient_records(patient_id: str, db: DbSession, object_store: ObjectStoreDep):
        """All records for a patient, newest first."""
        service = MediaService(db, object_store)
        with http_errors(f"retrieve {label} for patient"):
            return service.list_by_patient(kind, patient_id)

    @router.get("/{record_id}", response_model=response_model)
    def get_record(
        record_id: UUID,
        db: DbSession,
        object_store: ObjectStoreDep,
        viewer_id: str | None = Query(None, description="Staff member viewing the record"),
    ):
        """Get one record. Counts as an access."""
        service = MediaService(db, object_store)
        with http_errors(f"retrieve {label}"):
            return service.get_record(kind, record_id, viewer_id=viewer_id)

    @router.put("/{record_id}", response_model=response_model)
    def update_record(record_id: UUID, changes: update_model, db: DbSession, object_store: ObjectStoreDep):
        """Update descriptive metadata."""
        service = MediaService(db, object_store)
        with http_errors(f"update {label}"):
            return service.update_metadata(kind, record_id, changes)

    @router.delete("/{record_id}", response_model=DeleteResponse, status_code=status.HTTP_200_OK)
    def delete_record(record_id: UUID, db: DbSession, object_store: ObjectStoreDep):
        """Delete the record and, best effort, its S3 object."""
        service = MediaService(db, object_store)
        with http_errors(f"delete {label}"):
            result = service.delete_record(kind, record_id)

        return DeleteResponse(
            record_id=result.record_id,
            storage_key=result.storage_key,
            object_deleted=result.object_deleted,
        )

    @router.get("/{record_id}/download", response_model=DownloadResponse)
    def download_record(
        record_id: UUID,
        db: DbSession,
        object_store: ObjectStoreDep,
        expires_in: int | None = Query(
            None, ge=1, le=604800, description="URL lifetime in seconds; defaults to the configured download TTL"
        ),
        viewer_id: str | None = Query(None, description="Staff member downloading the file"),
    ):
        """Issue a presigned download URL. Counts as an access."""
        service = MediaService(db, object_store)
        with http_errors("generate download URL"):
            issued = service.issue_download(kind, record_id, expires_in=expires_in, viewer_id=viewer_id)

        record = issued.record
        return DownloadResponse(
            download_url=issued.download.download_url,
            expires_at=issued.download.expires_at,
            file_name=record.original_file_name,
            file_size=record.file_size,
            duration=getattr(record, "duration", None),
            width=getattr(record, "width", None),
            height=getattr(record, "height", None),
        )

    return router


audio_router = build_records_router(
    MediaKind.AUDIO, AudioRecordResponse, AudioRecordListResponse, AudioRecordUpdate
)
photo_router = build_records_router(
    MediaKind.PHOTO, PhotoRecordResponse, PhotoRecordListResponse, PhotoRecordUpdate
)


@photo_router.get("/review/pending", response_model=list[PhotoRecordResponse])
def list_photos_needing_review(db: DbSession, object_store: ObjectStoreDep):
    """Photos flagged as blurry, poorly lit, or failed in processing."""
    service = MediaService(db, object_store)
    with http_errors("retrieve photos needing review"):
        return service.find_photos_needing_review()
