"""Tests for the media upload lifecycle service."""
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4

from botocore.exceptions import ClientError, NoCredentialsError
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from app.core.config import StorageConfig
from app.core.database import Base
from app.core.storage import ObjectStore, ObjectStoreError
from app.domains.media.errors import (
    MediaValidationError,
    RecordNotFound,
    RecordStoreError,
    RecordStoreTimeout,
    StorageKeyConflict,
)
from app.domains.media.keys import StorageKeyGenerator
from app.domains.media.repository import store_errors
from app.domains.media.schemas import (
    AudioRecordUpdate,
    ConfirmUploadRequest,
    MediaKind,
    PhotoRecordUpdate,
    PresignedUploadRequest,
    RecordFilters,
)
from app.domains.media.service import MediaService


def naive(value: datetime) -> datetime:
    """SQLite returns naive datetimes; compare in naive UTC."""
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def audio_request(**overrides) -> PresignedUploadRequest:
    values = {
        "file_name": "a.wav",
        "content_type": "audio/wav",
        "visit_id": "v1",
        "patient_id": "p1",
        "staff_id": "nurse-7",
    }
    values.update(overrides)
    return PresignedUploadRequest(**values)


def photo_request(**overrides) -> PresignedUploadRequest:
    values = {
        "file_name": "wound.jpg",
        "content_type": "image/jpeg",
        "visit_id": "v1",
        "patient_id": "p1",
        "photo_type": "wound",
        "body_part": "left forearm",
        "laterality": "left",
    }
    values.update(overrides)
    return PresignedUploadRequest(**values)


class TestIssuePresignedUpload:
    """Tests for presigned upload issuance."""

    def test_creates_pending_audio_record(self, service, clock):
        issued = service.issue_presigned_upload(audio_request())

        assert issued.kind == MediaKind.AUDIO
        record = service.repository(MediaKind.AUDIO).get(issued.record_id)
        assert record.processing_status == "pending"
        assert record.file_size == 0
        assert record.storage_key == issued.storage_key
        assert record.original_file_name == "a.wav"
        assert record.file_name == issued.storage_key.rsplit("/", 1)[-1]
        assert record.uploaded_by == "nurse-7"
        assert record.access_count == 0
        assert record.storage_bucket == "visit-media-test"

    def test_upload_url_targets_generated_key(self, service):
        issued = service.issue_presigned_upload(audio_request())

        assert issued.storage_key.startswith("audio_recordings/v1/visit_audio_20260314_092653_")
        assert issued.storage_key in issued.upload_url
        assert "x-id=put_object" in issued.upload_url
        assert issued.public_url == f"https://visit-media-test.s3.eu-north-1.amazonaws.com/{issued.storage_key}"

    def test_photo_record_keeps_classification(self, service):
        issued = service.issue_presigned_upload(photo_request())

        assert issued.kind == MediaKind.PHOTO
        record = service.repository(MediaKind.PHOTO).get(issued.record_id)
        assert record.photo_type == "wound"
        assert record.body_part == "left forearm"
        assert record.laterality == "left"
        assert record.processing_status == "pending"
        assert record.file_size == 0

    def test_expiration_from_retention_policy(self, service, clock):
        issued = service.issue_presigned_upload(audio_request(retention_policy="30_days"))

        assert issued.expires_at == naive(clock.now + timedelta(days=30))

    def test_default_retention_is_seven_years(self, service, clock):
        issued = service.issue_presigned_upload(audio_request())

        record = service.repository(MediaKind.AUDIO).get(issued.record_id)
        assert record.retention_policy == "7_years"
        assert record.expires_at == naive(clock.now + timedelta(days=7 * 365))

    def test_permanent_retention_has_no_expiration(self, service):
        issued = service.issue_presigned_upload(photo_request(retention_policy="permanent"))
        assert issued.expires_at is None

    def test_disallowed_content_type_rejected_without_record(self, service, s3_client):
        with pytest.raises(MediaValidationError):
            service.issue_presigned_upload(audio_request(content_type="application/pdf", file_name="a.pdf"))

        s3_client.generate_presigned_url.assert_not_called()
        _, total = service.list_records(MediaKind.AUDIO)
        assert total == 0

    def test_type_outside_configured_allow_list_rejected(self, db_session, s3_client, clock):
        config = StorageConfig(bucket="b", region="r", allowed_audio_types=("audio/wav",))
        service = MediaService(db_session, ObjectStore(config, client=s3_client), clock=clock)

        with pytest.raises(MediaValidationError):
            service.issue_presigned_upload(audio_request(content_type="audio/ogg", file_name="a.ogg"))

    def test_signing_failure_creates_no_record(self, service, s3_client):
        s3_client.generate_presigned_url.side_effect = NoCredentialsError()

        with pytest.raises(ObjectStoreError):
            service.issue_presigned_upload(audio_request())

        _, total = service.list_records(MediaKind.AUDIO)
        assert total == 0

    def test_same_visit_audio_and_photo_share_no_key(self, service):
        audio = service.issue_presigned_upload(audio_request())
        photo = service.issue_presigned_upload(photo_request())

        assert audio.kind == MediaKind.AUDIO
        assert photo.kind == MediaKind.PHOTO
        assert audio.storage_key != photo.storage_key
        assert service.repository(MediaKind.PHOTO).get_by_storage_key(audio.storage_key) is None
        assert service.repository(MediaKind.AUDIO).get_by_storage_key(photo.storage_key) is None


class TestStorageKeyConflicts:
    """Tests for key conflict retry."""

    def test_same_second_collision_retries_with_suffix(self, db_session, s3_client, clock):
        config = StorageConfig(bucket="visit-media-test", region="eu-north-1", unique_key_suffix=False)
        service = MediaService(db_session, ObjectStore(config, client=s3_client), clock=clock)

        first = service.issue_presigned_upload(audio_request())
        second = service.issue_presigned_upload(audio_request(file_name="b.wav"))

        assert first.storage_key == "audio_recordings/v1/visit_audio_20260314_092653.wav"
        assert second.storage_key != first.storage_key
        assert second.storage_key.startswith("audio_recordings/v1/visit_audio_20260314_092653_")
        # Re-signed for the regenerated key
        assert second.storage_key in second.upload_url
        _, total = service.list_records(MediaKind.AUDIO)
        assert total == 2

    def test_gives_up_after_repeated_conflicts(self, db_session, object_store, clock):
        key_generator = MagicMock(spec=StorageKeyGenerator)
        key_generator.generate.return_value = "audio_recordings/v1/visit_audio_20260314_092653.wav"
        key_generator.file_name_from_key.return_value = "visit_audio_20260314_092653.wav"
        service = MediaService(db_session, object_store, key_generator=key_generator, clock=clock)

        service.issue_presigned_upload(audio_request())
        with pytest.raises(StorageKeyConflict):
            service.issue_presigned_upload(audio_request())

        assert key_generator.generate.call_count == 4
        _, total = service.list_records(MediaKind.AUDIO)
        assert total == 1


class TestConfirmUpload:
    """Tests for upload confirmation."""

    def test_confirm_completes_audio_record(self, service, clock):
        issued = service.issue_presigned_upload(audio_request())
        clock.advance(seconds=42)

        confirmed = service.confirm_upload(ConfirmUploadRequest(
            storage_key=issued.storage_key, file_size=2048000, uploaded_by="nurse-7", duration=180,
        ))

        assert confirmed.kind == MediaKind.AUDIO
        record = confirmed.record
        assert record.processing_status == "completed"
        assert record.file_size == 2048000
        assert record.duration == 180
        assert record.uploaded_at == naive(clock.now)

    def test_confirmed_size_round_trips_through_get(self, service):
        issued = service.issue_presigned_upload(audio_request())
        service.confirm_upload(ConfirmUploadRequest(
            storage_key=issued.storage_key, file_size=123456, uploaded_by="nurse-7",
        ))

        record = service.get_record(MediaKind.AUDIO, issued.record_id)
        assert record.file_size == 123456
        assert record.processing_status == "completed"

    def test_confirm_photo_sets_dimensions(self, service):
        issued = service.issue_presigned_upload(photo_request())

        confirmed = service.confirm_upload(ConfirmUploadRequest(
            storage_key=issued.storage_key, file_size=512000, uploaded_by="nurse-7", width=4032, height=3024,
        ))

        assert confirmed.kind == MediaKind.PHOTO
        assert confirmed.record.width == 4032
        assert confirmed.record.height == 3024
        assert confirmed.record.processing_status == "completed"

    def test_confirm_unknown_key_creates_nothing(self, service):
        with pytest.raises(RecordNotFound):
            service.confirm_upload(ConfirmUploadRequest(
                storage_key="audio_recordings/v1/missing.wav", file_size=10, uploaded_by="nurse-7",
            ))

        assert service.list_records(MediaKind.AUDIO)[1] == 0
        assert service.list_records(MediaKind.PHOTO)[1] == 0

    def test_reconfirm_overwrites_previous_values(self, service):
        issued = service.issue_presigned_upload(audio_request())
        request = dict(storage_key=issued.storage_key, uploaded_by="nurse-7")

        service.confirm_upload(ConfirmUploadRequest(file_size=1000, duration=60, **request))
        confirmed = service.confirm_upload(ConfirmUploadRequest(
            file_size=2000, duration=90, storage_key=issued.storage_key, uploaded_by="doctor-2",
        ))

        assert confirmed.record.file_size == 2000
        assert confirmed.record.duration == 90
        assert confirmed.record.uploaded_by == "doctor-2"
        assert confirmed.record.processing_status == "completed"

    def test_confirm_without_duration_leaves_it_unset(self, service):
        issued = service.issue_presigned_upload(audio_request())

        confirmed = service.confirm_upload(ConfirmUploadRequest(
            storage_key=issued.storage_key, file_size=1000, uploaded_by="nurse-7",
        ))

        assert confirmed.record.duration is None


class TestAccessTracking:
    """Tests for access counting."""

    def test_repeated_access_counts_each_call(self, service, clock):
        issued = service.issue_presigned_upload(audio_request())

        for _ in range(5):
            clock.advance(seconds=1)
            service.record_access(MediaKind.AUDIO, issued.record_id)

        record = service.repository(MediaKind.AUDIO).get(issued.record_id)
        assert record.access_count == 5
        assert record.last_accessed_at == naive(clock.now)

    def test_get_record_counts_one_access(self, service):
        issued = service.issue_presigned_upload(audio_request())
        before = service.repository(MediaKind.AUDIO).get(issued.record_id).access_count

        record = service.get_record(MediaKind.AUDIO, issued.record_id)

        assert record.access_count == before + 1

    def test_download_counts_one_access(self, service, s3_client):
        issued = service.issue_presigned_upload(audio_request())

        download = service.issue_download(MediaKind.AUDIO, issued.record_id)

        assert download.record.access_count == 1
        assert "x-id=get_object" in download.download.download_url
        assert "X-Amz-Expires=3600" in download.download.download_url

    def test_download_custom_expiry(self, service):
        issued = service.issue_presigned_upload(audio_request())

        download = service.issue_download(MediaKind.AUDIO, issued.record_id, expires_in=600)

        assert "X-Amz-Expires=600" in download.download.download_url

    def test_listing_does_not_count_access(self, service):
        issued = service.issue_presigned_upload(audio_request())

        service.list_records(MediaKind.AUDIO)
        service.list_by_visit(MediaKind.AUDIO, "v1")
        service.list_by_patient(MediaKind.AUDIO, "p1")

        assert service.repository(MediaKind.AUDIO).get(issued.record_id).access_count == 0

    def test_photo_access_logs_viewer(self, service, clock):
        issued = service.issue_presigned_upload(photo_request())

        service.get_record(MediaKind.PHOTO, issued.record_id, viewer_id="doctor-2")
        clock.advance(minutes=5)
        record = service.get_record(MediaKind.PHOTO, issued.record_id, viewer_id="nurse-7")

        assert record.access_count == 2
        assert [view.viewer_id for view in record.views] == ["doctor-2", "nurse-7"]
        assert record.views[-1].viewed_at == naive(clock.now)

    def test_photo_access_without_viewer_logs_nothing(self, service):
        issued = service.issue_presigned_upload(photo_request())

        record = service.get_record(MediaKind.PHOTO, issued.record_id)

        assert record.access_count == 1
        assert record.views == []

    def test_access_to_missing_record(self, service):
        with pytest.raises(RecordNotFound):
            service.get_record(MediaKind.AUDIO, uuid4())


class TestListing:
    """Tests for listing, filtering and statistics."""

    def test_list_filters_and_paginates(self, service, clock):
        for visit_id in ("v1", "v1", "v2"):
            clock.advance(seconds=1)
            service.issue_presigned_upload(audio_request(visit_id=visit_id))

        records, total = service.list_records(MediaKind.AUDIO, filters=RecordFilters(visit_id="v1"), limit=1)

        assert total == 2
        assert len(records) == 1
        assert records[0].visit_id == "v1"

    def test_list_newest_first(self, service, clock):
        first = service.issue_presigned_upload(audio_request())
        clock.advance(seconds=10)
        second = service.issue_presigned_upload(audio_request())

        records, _ = service.list_records(MediaKind.AUDIO)

        assert [r.id for r in records] == [second.record_id, first.record_id]

    def test_list_filters_by_classification(self, service):
        service.issue_presigned_upload(photo_request(photo_type="wound"))
        service.issue_presigned_upload(photo_request(photo_type="medication"))

        records, total = service.list_records(MediaKind.PHOTO, filters=RecordFilters(classification="medication"))

        assert total == 1
        assert records[0].photo_type == "medication"

    def test_stats(self, service):
        first = service.issue_presigned_upload(audio_request())
        service.issue_presigned_upload(audio_request())
        service.confirm_upload(ConfirmUploadRequest(
            storage_key=first.storage_key, file_size=3000, uploaded_by="nurse-7", duration=120,
        ))

        stats = service.get_stats(MediaKind.AUDIO)

        assert stats["kind"] == MediaKind.AUDIO
        assert stats["total_files"] == 2
        assert stats["total_size"] == 3000
        assert stats["avg_duration"] == 120
        assert stats["by_status"] == {"pending": 1, "completed": 1}
        assert stats["by_type"] == {"visit_note": 2}

    def test_photos_needing_review(self, service):
        blurry = service.issue_presigned_upload(photo_request())
        service.issue_presigned_upload(photo_request())
        service.repository(MediaKind.PHOTO).update_by_id(blurry.record_id, {"blur_detected": True})

        photos = service.find_photos_needing_review()

        assert [p.id for p in photos] == [blurry.record_id]


class TestUpdateMetadata:
    """Tests for metadata updates."""

    def test_updates_descriptive_fields(self, service):
        issued = service.issue_presigned_upload(photo_request())

        record = service.update_metadata(MediaKind.PHOTO, issued.record_id, PhotoRecordUpdate(
            description="Healing well", tags=["follow-up"], photo_type="skin_condition",
        ))

        assert record.description == "Healing well"
        assert record.tags == ["follow-up"]
        assert record.photo_type == "skin_condition"
        assert record.body_part == "left forearm"

    def test_explicit_null_clears_description(self, service):
        issued = service.issue_presigned_upload(audio_request(description="draft"))

        record = service.update_metadata(MediaKind.AUDIO, issued.record_id, AudioRecordUpdate(description=None))

        assert record.description is None

    def test_update_keeps_retention_and_lifecycle(self, service):
        issued = service.issue_presigned_upload(audio_request())
        before = service.repository(MediaKind.AUDIO).get(issued.record_id).expires_at

        record = service.update_metadata(MediaKind.AUDIO, issued.record_id, AudioRecordUpdate(
            recording_type="patient_interview",
        ))

        assert record.recording_type == "patient_interview"
        assert record.expires_at == before
        assert record.processing_status == "pending"
        assert record.access_count == 0

    def test_fields_of_other_kind_rejected(self, service):
        issued = service.issue_presigned_upload(audio_request())

        with pytest.raises(MediaValidationError):
            service.update_metadata(MediaKind.AUDIO, issued.record_id, PhotoRecordUpdate(photo_type="wound"))

    def test_update_missing_record(self, service):
        with pytest.raises(RecordNotFound):
            service.update_metadata(MediaKind.AUDIO, uuid4(), AudioRecordUpdate(description="x"))


class TestDeleteRecord:
    """Tests for deletion."""

    def test_deletes_object_and_record(self, service, s3_client):
        issued = service.issue_presigned_upload(audio_request())

        result = service.delete_record(MediaKind.AUDIO, issued.record_id)

        assert result.object_deleted is True
        assert result.storage_key == issued.storage_key
        s3_client.delete_object.assert_called_once_with(Bucket="visit-media-test", Key=issued.storage_key)
        with pytest.raises(RecordNotFound):
            service.get_record(MediaKind.AUDIO, issued.record_id)

    def test_record_deleted_when_object_delete_fails(self, service, s3_client):
        issued = service.issue_presigned_upload(audio_request())
        s3_client.delete_object.side_effect = ClientError(
            {"Error": {"Code": "InternalError", "Message": "boom"}}, "DeleteObject"
        )

        result = service.delete_record(MediaKind.AUDIO, issued.record_id)

        assert result.object_deleted is False
        with pytest.raises(RecordNotFound):
            service.get_record(MediaKind.AUDIO, issued.record_id)

    def test_record_deleted_when_object_already_absent(self, service, s3_client):
        issued = service.issue_presigned_upload(photo_request())
        s3_client.delete_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "gone"}}, "DeleteObject"
        )

        result = service.delete_record(MediaKind.PHOTO, issued.record_id)

        assert result.object_deleted is False
        assert service.repository(MediaKind.PHOTO).get(issued.record_id) is None

    def test_photo_deletion_removes_view_history(self, service, db_session):
        from sqlalchemy import func, select
        from app.domains.media.models import PhotoView

        issued = service.issue_presigned_upload(photo_request())
        service.get_record(MediaKind.PHOTO, issued.record_id, viewer_id="doctor-2")

        service.delete_record(MediaKind.PHOTO, issued.record_id)

        assert db_session.scalar(select(func.count()).select_from(PhotoView)) == 0

    def test_lifecycle_never_checks_object_existence(self, service, s3_client):
        issued = service.issue_presigned_upload(photo_request())
        service.confirm_upload(ConfirmUploadRequest(
            storage_key=issued.storage_key, file_size=1000, uploaded_by="nurse-7",
        ))
        service.issue_download(MediaKind.PHOTO, issued.record_id)

        service.delete_record(MediaKind.PHOTO, issued.record_id)

        s3_client.head_object.assert_not_called()
        s3_client.delete_object.assert_called_once()

    def test_delete_missing_record(self, service, s3_client):
        with pytest.raises(RecordNotFound):
            service.delete_record(MediaKind.AUDIO, uuid4())
        s3_client.delete_object.assert_not_called()


class TestRetentionExpiry:
    """Records past expires_at act as deleted before the sweep removes them."""

    def test_expired_record_is_not_served(self, service, clock):
        issued = service.issue_presigned_upload(audio_request(retention_policy="7_days"))
        clock.advance(days=30)

        with pytest.raises(RecordNotFound):
            service.get_record(MediaKind.AUDIO, issued.record_id)
        with pytest.raises(RecordNotFound):
            service.issue_download(MediaKind.AUDIO, issued.record_id)
        with pytest.raises(RecordNotFound):
            service.update_metadata(MediaKind.AUDIO, issued.record_id, AudioRecordUpdate(description="x"))
        assert service.list_records(MediaKind.AUDIO) == ([], 0)
        assert service.list_by_visit(MediaKind.AUDIO, "v1") == []
        assert service.list_by_patient(MediaKind.AUDIO, "p1") == []
        assert service.get_stats(MediaKind.AUDIO)["total_files"] == 0

    def test_expired_record_cannot_be_confirmed(self, service, clock):
        issued = service.issue_presigned_upload(photo_request(retention_policy="7_days"))
        clock.advance(days=8)

        with pytest.raises(RecordNotFound):
            service.confirm_upload(ConfirmUploadRequest(
                storage_key=issued.storage_key, file_size=1000, uploaded_by="nurse-7",
            ))

    def test_expired_record_access_is_not_counted(self, service, clock, db_session):
        from sqlalchemy import select
        from app.domains.media.models import AudioRecord

        issued = service.issue_presigned_upload(audio_request(retention_policy="7_days"))
        clock.advance(days=7)

        with pytest.raises(RecordNotFound):
            service.record_access(MediaKind.AUDIO, issued.record_id)

        row = db_session.scalars(
            select(AudioRecord).where(AudioRecord.id == issued.record_id).execution_options(populate_existing=True)
        ).one()
        assert row.access_count == 0

    def test_record_served_until_expiry(self, service, clock):
        issued = service.issue_presigned_upload(audio_request(retention_policy="7_days"))
        clock.advance(days=7, seconds=-1)

        record = service.get_record(MediaKind.AUDIO, issued.record_id)

        assert record.access_count == 1
        assert service.list_records(MediaKind.AUDIO)[1] == 1

    def test_permanent_record_never_expires(self, service, clock):
        issued = service.issue_presigned_upload(photo_request(retention_policy="permanent"))
        clock.advance(days=365 * 50)

        assert service.get_record(MediaKind.PHOTO, issued.record_id).expires_at is None


class TestConcurrentAccess:
    """Access counting from parallel sessions against one database file."""

    @pytest.fixture
    def engine(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'media.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
            execution_options={"schema_translate_map": {"media": None}},
        )
        Base.metadata.create_all(engine)
        yield engine
        engine.dispose()

    def test_parallel_access_loses_no_increments(self, engine, object_store, clock):
        Session = sessionmaker(bind=engine, autoflush=False)
        with Session() as session:
            record_id = MediaService(session, object_store, clock=clock).issue_presigned_upload(
                audio_request()
            ).record_id

        workers, reads_per_worker = 8, 25

        def read_many():
            with Session() as session:
                service = MediaService(session, object_store, clock=clock)
                for _ in range(reads_per_worker):
                    service.record_access(MediaKind.AUDIO, record_id)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(read_many) for _ in range(workers)]
            for future in futures:
                future.result()

        with Session() as session:
            record = MediaService(session, object_store, clock=clock).repository(MediaKind.AUDIO).get(record_id)
        assert record.access_count == workers * reads_per_worker


class TestRecordStoreErrors:
    """Tests for database error translation."""

    def test_statement_timeout(self):
        db = MagicMock()
        with pytest.raises(RecordStoreTimeout):
            with store_errors(db, "get"):
                raise OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout"))
        db.rollback.assert_called_once()

    def test_operational_error(self):
        db = MagicMock()
        with pytest.raises(RecordStoreError) as exc_info:
            with store_errors(db, "get"):
                raise OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))
        assert not isinstance(exc_info.value, RecordStoreTimeout)
