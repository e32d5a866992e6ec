"""Pydantic schemas for the media domain."""
import math
from datetime import datetime
from enum import Enum
from typing import Annotated, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field


# --- Enumerations ---

class MediaKind(str, Enum):
    AUDIO = "audio"
    PHOTO = "photo"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AccessLevel(str, Enum):
    PRIVATE = "private"
    STAFF_ONLY = "staff_only"
    PATIENT_ACCESSIBLE = "patient_accessible"
    PUBLIC = "public"


class RetentionPolicy(str, Enum):
    SEVEN_DAYS = "7_days"
    THIRTY_DAYS = "30_days"
    ONE_YEAR = "1_year"
    SEVEN_YEARS = "7_years"
    PERMANENT = "permanent"


class RecordingType(str, Enum):
    VISIT_NOTE = "visit_note"
    PATIENT_INTERVIEW = "patient_interview"
    MEDICATION_REMINDER = "medication_reminder"
    OTHER = "other"


class RecordingSource(str, Enum):
    MOBILE_APP = "mobile_app"
    WEB_APP = "web_app"
    FILE_UPLOAD = "file_upload"


class PhotoType(str, Enum):
    WOUND = "wound"
    MEDICATION = "medication"
    PATIENT_CONDITION = "patient_condition"
    VITAL_SIGNS = "vital_signs"
    MEDICAL_DEVICE = "medical_device"
    ROOM_CONDITION = "room_condition"
    SKIN_CONDITION = "skin_condition"
    PATIENT_ID = "patient_id"
    GENERAL = "general"
    OTHER = "other"


class PhotoSource(str, Enum):
    MOBILE_APP = "mobile_app"
    WEB_APP = "web_app"
    FILE_UPLOAD = "file_upload"
    CAMERA = "camera"


class Laterality(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    BILATERAL = "bilateral"
    MIDLINE = "midline"
    NOT_APPLICABLE = "not_applicable"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


Tag = Annotated[str, Field(min_length=1, max_length=50)]


# --- Upload Schemas ---

class PresignedUploadRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: str
    visit_id: str = Field(..., min_length=1, max_length=100)
    patient_id: str = Field(..., min_length=1, max_length=100)
    staff_id: str | None = Field(None, max_length=100)
    description: str | None = Field(None, max_length=500)
    tags: list[Tag] = Field(default_factory=list, max_length=10)
    retention_policy: RetentionPolicy = RetentionPolicy.SEVEN_YEARS
    access_level: AccessLevel = AccessLevel.STAFF_ONLY

    # Audio classification
    recording_type: RecordingType = RecordingType.VISIT_NOTE
    recording_source: RecordingSource = RecordingSource.WEB_APP

    # Photo classification
    photo_type: PhotoType = PhotoType.OTHER
    photo_source: PhotoSource = PhotoSource.WEB_APP
    body_part: str | None = Field(None, max_length=100)
    laterality: Laterality = Laterality.NOT_APPLICABLE
    clinical_notes: str | None = Field(None, max_length=1000)


class PresignedUploadResponse(BaseModel):
    upload_url: str
    public_url: str
    storage_key: str
    record_id: UUID
    kind: MediaKind
    url_expires_at: datetime
    expires_at: datetime | None = None


class ConfirmUploadRequest(BaseModel):
    storage_key: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=1)
    uploaded_by: str = Field(..., min_length=1, max_length=100)
    duration: float | None = Field(None, ge=0)
    width: int | None = Field(None, ge=0)
    height: int | None = Field(None, ge=0)


class ConfirmUploadResponse(BaseModel):
    record_id: UUID
    kind: MediaKind
    storage_key: str
    storage_url: str
    processing_status: ProcessingStatus
    file_size: int


# --- Record Schemas ---

def format_file_size(size: int) -> str:
    """Human-readable size using 1024-based units."""
    if not size:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    exponent = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    value = round(size / math.pow(1024, exponent), 2)
    return f"{value:g} {units[exponent]}"


class MediaRecordResponse(BaseModel):
    id: UUID
    storage_key: str
    storage_bucket: str
    storage_region: str
    storage_url: str
    file_name: str
    original_file_name: str
    file_size: int
    mime_type: str
    visit_id: str
    patient_id: str
    staff_id: str | None = None
    tags: list[str]
    description: str | None = None
    processing_status: ProcessingStatus
    access_level: AccessLevel
    uploaded_by: str
    uploaded_at: datetime
    last_accessed_at: datetime | None = None
    access_count: int
    retention_policy: RetentionPolicy
    expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def file_size_formatted(self) -> str:
        return format_file_size(self.file_size)


class AudioRecordResponse(MediaRecordResponse):
    duration: float | None = None
    recording_type: RecordingType
    recording_source: RecordingSource
    transcription: dict[str, Any] | None = None

    @computed_field
    @property
    def duration_formatted(self) -> str:
        if not self.duration:
            return "Unknown"
        minutes, seconds = divmod(int(self.duration), 60)
        return f"{minutes}:{seconds:02d}"


class PhotoViewResponse(BaseModel):
    viewer_id: str
    viewed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PhotoRecordResponse(MediaRecordResponse):
    width: int | None = None
    height: int | None = None
    photo_type: PhotoType
    photo_source: PhotoSource
    body_part: str | None = None
    laterality: Laterality
    clinical_notes: str | None = None
    thumbnail_url: str | None = None
    exif_data: dict[str, Any] | None = None
    quality_score: int | None = None
    blur_detected: bool
    lighting_quality: str | None = None
    views: list[PhotoViewResponse] = []

    @computed_field
    @property
    def aspect_ratio(self) -> str | None:
        if not self.width or not self.height:
            return None
        return f"{self.width / self.height:.2f}"


class AudioRecordUpdate(BaseModel):
    description: str | None = Field(None, max_length=500)
    tags: list[Tag] | None = Field(None, max_length=10)
    access_level: AccessLevel | None = None
    recording_type: RecordingType | None = None


class PhotoRecordUpdate(BaseModel):
    description: str | None = Field(None, max_length=500)
    tags: list[Tag] | None = Field(None, max_length=10)
    access_level: AccessLevel | None = None
    photo_type: PhotoType | None = None
    body_part: str | None = Field(None, max_length=100)
    laterality: Laterality | None = None
    clinical_notes: str | None = Field(None, max_length=1000)


# --- Listing Schemas ---

class RecordFilters(BaseModel):
    """Filters for listing records of one kind."""
    visit_id: str | None = None
    patient_id: str | None = None
    classification: str | None = None  # recording_type or photo_type
    processing_status: ProcessingStatus | None = None


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class AudioRecordListResponse(BaseModel):
    records: list[AudioRecordResponse]
    pagination: Pagination


class PhotoRecordListResponse(BaseModel):
    records: list[PhotoRecordResponse]
    pagination: Pagination


class DownloadResponse(BaseModel):
    download_url: str
    expires_at: datetime
    file_name: str
    file_size: int
    duration: float | None = None
    width: int | None = None
    height: int | None = None


class DeleteResponse(BaseModel):
    record_id: UUID
    storage_key: str
    object_deleted: bool


class MediaStatsResponse(BaseModel):
    kind: MediaKind
    total_files: int
    total_size: int
    avg_file_size: float
    avg_duration: float | None = None
    by_status: dict[str, int]
    by_type: dict[str, int]
