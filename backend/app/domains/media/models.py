import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


class MediaRecordMixin:
    """Columns shared by every uploaded media record, whatever its kind."""

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Object store binding
    storage_key: Mapped[str] = mapped_column(String(500), unique=True, nullable=False, index=True)
    storage_bucket: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_region: Mapped[str] = mapped_column(String(50), nullable=False)
    storage_url: Mapped[str] = mapped_column(String(1000), nullable=False)

    # File information
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    original_file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Healthcare context (owned by external systems, no FK)
    visit_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    staff_id: Mapped[str | None] = mapped_column(String(100), index=True)

    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(String(500))

    processing_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # pending, processing, completed, failed
    access_level: Mapped[str] = mapped_column(String(30), nullable=False, default="staff_only")

    # Audit trail
    uploaded_by: Mapped[str] = mapped_column(String(100), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retention
    retention_policy: Mapped[str] = mapped_column(String(20), nullable=False, default="7_years")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AudioRecord(MediaRecordMixin, Base):
    """Audio recording captured during a visit."""
    __tablename__ = "audio_records"
    __table_args__ = (
        Index("ix_media_audio_records_visit_patient", "visit_id", "patient_id"),
        {"schema": "media"},
    )

    duration: Mapped[float | None] = mapped_column(Float)  # seconds, unknown until confirmed
    recording_type: Mapped[str] = mapped_column(String(50), nullable=False, default="visit_note")
    recording_source: Mapped[str] = mapped_column(String(50), nullable=False, default="web_app")
    # Written by the transcription pipeline: text, confidence, language, processed_at
    transcription: Mapped[dict[str, Any] | None] = mapped_column(JSON)


class PhotoRecord(MediaRecordMixin, Base):
    """Clinical photograph captured during a visit."""
    __tablename__ = "photo_records"
    __table_args__ = (
        Index("ix_media_photo_records_visit_patient", "visit_id", "patient_id"),
        {"schema": "media"},
    )

    width: Mapped[int | None] = mapped_column(Integer)
    height: Mapped[int | None] = mapped_column(Integer)
    photo_type: Mapped[str] = mapped_column(String(50), nullable=False, default="other", index=True)
    photo_source: Mapped[str] = mapped_column(String(50), nullable=False, default="web_app")
    body_part: Mapped[str | None] = mapped_column(String(100))
    laterality: Mapped[str] = mapped_column(String(20), nullable=False, default="not_applicable")
    clinical_notes: Mapped[str | None] = mapped_column(Text)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1000))
    exif_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    # Written by the image analysis pipeline
    quality_score: Mapped[int | None] = mapped_column(Integer)
    blur_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lighting_quality: Mapped[str | None] = mapped_column(String(20))  # poor, fair, good, excellent

    # Relationships
    views: Mapped[list["PhotoView"]] = relationship(
        "PhotoView",
        back_populates="photo",
        cascade="all, delete-orphan",
        order_by="PhotoView.viewed_at",
        lazy="selectin",
    )


class PhotoView(Base):
    """One viewer access to a photo. Insert-only."""
    __tablename__ = "photo_views"
    __table_args__ = {"schema": "media"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    photo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("media.photo_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    viewer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    viewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    photo: Mapped["PhotoRecord"] = relationship("PhotoRecord", back_populates="views")
