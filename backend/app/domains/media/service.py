"""Service layer for the media domain: upload lifecycle, access tracking, deletion."""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.storage import ObjectNotFound, ObjectStore, ObjectStoreError, PresignedDownload
from app.domains.media.errors import MediaValidationError, RecordNotFound, StorageKeyConflict
from app.domains.media.keys import StorageKeyGenerator, classify_content_type
from app.domains.media.models import MediaRecordMixin, PhotoRecord
from app.domains.media.repository import MediaRepository, utcnow
from app.domains.media.retention import resolve_expiration
from app.domains.media.schemas import (
    AudioRecordUpdate,
    ConfirmUploadRequest,
    MediaKind,
    PhotoRecordUpdate,
    PresignedUploadRequest,
    ProcessingStatus,
    RecordFilters,
    SortOrder,
)

logger = logging.getLogger(__name__)

# Confirmation searches kind stores in this order
CONFIRM_SEARCH_ORDER = (MediaKind.AUDIO, MediaKind.PHOTO)

MAX_KEY_ATTEMPTS = 3

# Fields a metadata update may touch; lifecycle and retention fields are excluded
UPDATABLE_FIELDS = {
    MediaKind.AUDIO: {"description", "tags", "access_level", "recording_type"},
    MediaKind.PHOTO: {"description", "tags", "access_level", "photo_type", "body_part", "laterality", "clinical_notes"},
}

# Updatable fields that may be cleared by sending null
CLEARABLE_FIELDS = {"description", "body_part", "clinical_notes"}


@dataclass
class IssuedUpload:
    upload_url: str
    public_url: str
    storage_key: str
    record_id: UUID
    kind: MediaKind
    url_expires_at: datetime
    expires_at: datetime | None


@dataclass
class ConfirmedUpload:
    kind: MediaKind
    record: MediaRecordMixin


@dataclass
class IssuedDownload:
    record: MediaRecordMixin
    download: PresignedDownload


@dataclass
class DeletionResult:
    record_id: UUID
    storage_key: str
    object_deleted: bool


class MediaService:
    """
    Upload lifecycle for audio and photo records.

    A record is created `pending` when an upload URL is issued and becomes
    `completed` when the client confirms the upload. The state machine is the
    same for both kinds; only the kind-specific fields differ.
    """

    def __init__(
        self,
        db: Session,
        object_store: ObjectStore,
        key_generator: StorageKeyGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.object_store = object_store
        self.key_generator = key_generator or StorageKeyGenerator(object_store.config)
        self.clock = clock
        self._repositories: dict[MediaKind, MediaRepository] = {}

    def repository(self, kind: MediaKind) -> MediaRepository:
        """Lazy-load the record store for one kind."""
        if kind not in self._repositories:
            self._repositories[kind] = MediaRepository(self.db, kind, clock=self.clock)
        return self._repositories[kind]

    # --- Upload Lifecycle ---

    def issue_presigned_upload(self, request: PresignedUploadRequest) -> IssuedUpload:
        """
        Issue a presigned upload URL and create the pending record for it.

        This is the only operation that creates records.

        Raises:
            MediaValidationError: Content type not allowed or unusable file name
            StorageKeyConflict: No free key after retrying
            UpstreamError: Signing or record store failure
        """
        config = self.object_store.config
        if request.content_type not in config.allowed_content_types:
            raise MediaValidationError(f"Content type not allowed: {request.content_type}")

        kind = classify_content_type(request.content_type)
        repository = self.repository(kind)
        issued_at = self.clock()
        expires_at = resolve_expiration(request.retention_policy, issued_at)

        for attempt in range(1, MAX_KEY_ATTEMPTS + 1):
            storage_key = self.key_generator.generate(
                kind=kind,
                visit_id=request.visit_id,
                file_name=request.file_name,
                content_type=request.content_type,
                issued_at=issued_at,
                force_unique=attempt > 1,
            )
            presigned = self.object_store.issue_upload(storage_key, request.content_type)

            values = self._pending_values(kind, request, storage_key, presigned.public_url, issued_at)
            values["expires_at"] = expires_at
            try:
                record = repository.create(values)
            except StorageKeyConflict:
                logger.warning(f"Storage key conflict on {storage_key} (attempt {attempt}), regenerating")
                continue

            logger.info(
                f"Issued presigned upload for {storage_key} "
                f"(visit={request.visit_id}, patient={request.patient_id}, type={request.content_type})"
            )
            return IssuedUpload(
                upload_url=presigned.upload_url,
                public_url=presigned.public_url,
                storage_key=storage_key,
                record_id=record.id,
                kind=kind,
                url_expires_at=presigned.expires_at,
                expires_at=record.expires_at,
            )

        raise StorageKeyConflict(f"Could not allocate a unique storage key for visit {request.visit_id}")

    def _pending_values(
        self,
        kind: MediaKind,
        request: PresignedUploadRequest,
        storage_key: str,
        public_url: str,
        issued_at: datetime,
    ) -> dict[str, Any]:
        config = self.object_store.config
        values: dict[str, Any] = {
            "storage_key": storage_key,
            "storage_bucket": config.bucket,
            "storage_region": config.region,
            "storage_url": public_url,
            "file_name": self.key_generator.file_name_from_key(storage_key),
            "original_file_name": request.file_name,
            "file_size": 0,
            "mime_type": request.content_type,
            "visit_id": request.visit_id,
            "patient_id": request.patient_id,
            "staff_id": request.staff_id,
            "tags": list(request.tags),
            "description": request.description,
            "processing_status": ProcessingStatus.PENDING.value,
            "access_level": request.access_level.value,
            "uploaded_by": request.staff_id or "unknown",
            "uploaded_at": issued_at,
            "access_count": 0,
            "retention_policy": request.retention_policy.value,
        }
        if kind == MediaKind.AUDIO:
            values.update(
                recording_type=request.recording_type.value,
                recording_source=request.recording_source.value,
            )
        else:
            values.update(
                photo_type=request.photo_type.value,
                photo_source=request.photo_source.value,
                body_part=request.body_part,
                laterality=request.laterality.value,
                clinical_notes=request.clinical_notes,
            )
        return values

    def confirm_upload(self, request: ConfirmUploadRequest) -> ConfirmedUpload:
        """
        Finalize the record bound to a storage key.

        Kind stores are tried one at a time (audio, then photo); each attempt is
        a single UPDATE keyed by storage key, so size and status change
        together. Confirming an already completed record applies the new
        values again.

        Raises:
            RecordNotFound: No record of either kind has this key
        """
        confirmed_at = self.clock()

        for kind in CONFIRM_SEARCH_ORDER:
            values: dict[str, Any] = {
                "file_size": request.file_size,
                "uploaded_by": request.uploaded_by,
                "processing_status": ProcessingStatus.COMPLETED.value,
                "uploaded_at": confirmed_at,
            }
            if kind == MediaKind.AUDIO and request.duration is not None:
                values["duration"] = request.duration
            if kind == MediaKind.PHOTO:
                if request.width is not None:
                    values["width"] = request.width
                if request.height is not None:
                    values["height"] = request.height

            repository = self.repository(kind)
            if repository.update_by_storage_key(request.storage_key, values):
                record = repository.get_by_storage_key(request.storage_key)
                if record is None:
                    # Deleted or expired between the update and the read
                    break
                logger.info(
                    f"Upload confirmed for {request.storage_key} "
                    f"(kind={kind.value}, size={request.file_size}, by={request.uploaded_by})"
                )
                return ConfirmedUpload(kind=kind, record=record)

        raise RecordNotFound(f"No upload record for storage key {request.storage_key}")

    # --- Reads & Access Tracking ---

    def record_access(self, kind: MediaKind, record_id: UUID, viewer_id: str | None = None) -> datetime:
        """
        Count one read of a record.

        Returns the access timestamp.

        Raises:
            RecordNotFound: If the record does not exist
        """
        accessed_at = self.clock()
        if not self.repository(kind).increment_access(record_id, accessed_at, viewer_id):
            raise RecordNotFound(f"{kind.value} record {record_id} not found")
        return accessed_at

    def get_record(self, kind: MediaKind, record_id: UUID, viewer_id: str | None = None) -> MediaRecordMixin:
        """Get a record by id, counting the read."""
        self.record_access(kind, record_id, viewer_id)
        record = self.repository(kind).get(record_id)
        if record is None:
            raise RecordNotFound(f"{kind.value} record {record_id} not found")
        return record

    def issue_download(
        self,
        kind: MediaKind,
        record_id: UUID,
        expires_in: int | None = None,
        viewer_id: str | None = None,
    ) -> IssuedDownload:
        """Issue a presigned download URL for a record, counting the read."""
        repository = self.repository(kind)
        record = repository.get(record_id)
        if record is None:
            raise RecordNotFound(f"{kind.value} record {record_id} not found")

        download = self.object_store.issue_download(record.storage_key, expires_in)
        self.record_access(kind, record_id, viewer_id)
        logger.info(f"Issued download URL for {record.storage_key}")

        return IssuedDownload(record=repository.get(record_id) or record, download=download)

    def list_records(
        self,
        kind: MediaKind,
        filters: RecordFilters | None = None,
        skip: int = 0,
        limit: int = 20,
        sort_by: str = "uploaded_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> tuple[list[MediaRecordMixin], int]:
        """List records of one kind. Listing does not count as access."""
        records, total = self.repository(kind).list_records(
            filters=filters, skip=skip, limit=limit, sort_by=sort_by, sort_order=sort_order
        )
        logger.info(f"Retrieved {len(records)} {kind.value} records (total={total})")
        return records, total

    def list_by_visit(self, kind: MediaKind, visit_id: str) -> list[MediaRecordMixin]:
        return self.repository(kind).list_by_visit(visit_id)

    def list_by_patient(self, kind: MediaKind, patient_id: str) -> list[MediaRecordMixin]:
        return self.repository(kind).list_by_patient(patient_id)

    def get_stats(self, kind: MediaKind) -> dict[str, Any]:
        return {"kind": kind, **self.repository(kind).stats()}

    def find_photos_needing_review(self) -> list[PhotoRecord]:
        return self.repository(MediaKind.PHOTO).find_needing_review()

    # --- Metadata Updates ---

    def update_metadata(
        self,
        kind: MediaKind,
        record_id: UUID,
        changes: AudioRecordUpdate | PhotoRecordUpdate,
    ) -> MediaRecordMixin:
        """
        Apply descriptive metadata changes in one UPDATE.

        Lifecycle, retention and storage fields cannot be changed here.

        Raises:
            MediaValidationError: If a non-updatable field is supplied
            RecordNotFound: If the record does not exist
        """
        update_data = {
            field: value
            for field, value in changes.model_dump(exclude_unset=True, mode="json").items()
            if value is not None or field in CLEARABLE_FIELDS
        }
        forbidden = set(update_data) - UPDATABLE_FIELDS[kind]
        if forbidden:
            raise MediaValidationError(f"Fields cannot be updated: {', '.join(sorted(forbidden))}")

        repository = self.repository(kind)
        if update_data:
            if not repository.update_by_id(record_id, update_data):
                raise RecordNotFound(f"{kind.value} record {record_id} not found")
            logger.info(f"Updated {kind.value} record {record_id}: {sorted(update_data)}")

        record = repository.get(record_id)
        if record is None:
            raise RecordNotFound(f"{kind.value} record {record_id} not found")
        return record

    # --- Deletion ---

    def delete_record(self, kind: MediaKind, record_id: UUID) -> DeletionResult:
        """
        Delete a record and, best effort, its stored object.

        A failed object delete (including an already missing object) is
        logged and ignored; the metadata record is removed regardless.

        Raises:
            RecordNotFound: If the record does not exist
        """
        repository = self.repository(kind)
        record = repository.get(record_id)
        if record is None:
            raise RecordNotFound(f"{kind.value} record {record_id} not found")
        storage_key = record.storage_key

        object_deleted = True
        try:
            self.object_store.delete_object(storage_key)
        except ObjectNotFound:
            object_deleted = False
            logger.warning(f"Object already absent from S3: {storage_key}")
        except ObjectStoreError as e:
            object_deleted = False
            logger.warning(f"Failed to delete S3 object {storage_key}, deleting record anyway: {e}")

        if not repository.delete(record_id):
            raise RecordNotFound(f"{kind.value} record {record_id} not found")
        logger.info(f"Deleted {kind.value} record {record_id}")

        return DeletionResult(record_id=record_id, storage_key=storage_key, object_deleted=object_deleted)
