"""
Record store for media metadata.

One repository instance serves one kind (one table). Every mutation of an
existing record is a single UPDATE statement so concurrent requests never
lose writes; nothing here reads a row, changes it in memory and writes it
back.
"""
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import asc, delete, desc, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.domains.media.errors import RecordStoreError, RecordStoreTimeout, StorageKeyConflict
from app.domains.media.models import AudioRecord, MediaRecordMixin, PhotoRecord, PhotoView
from app.domains.media.schemas import MediaKind, RecordFilters, SortOrder

logger = logging.getLogger(__name__)

KIND_MODELS: dict[MediaKind, type[AudioRecord] | type[PhotoRecord]] = {
    MediaKind.AUDIO: AudioRecord,
    MediaKind.PHOTO: PhotoRecord,
}

# Column holding each kind's classification, used by filters and stats
CLASSIFICATION_FIELDS = {
    MediaKind.AUDIO: "recording_type",
    MediaKind.PHOTO: "photo_type",
}

SORTABLE_FIELDS = {
    MediaKind.AUDIO: {"uploaded_at", "file_name", "file_size", "duration"},
    MediaKind.PHOTO: {"uploaded_at", "file_name", "file_size"},
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def store_errors(db: Session, operation: str) -> Iterator[None]:
    """Roll back and translate database failures into record store errors."""
    try:
        yield
    except IntegrityError as e:
        db.rollback()
        if "storage_key" in str(e.orig):
            raise StorageKeyConflict(f"Storage key already in use ({operation})") from e
        logger.error(f"Integrity error during {operation}: {e}")
        raise RecordStoreError(f"Record store rejected {operation}") from e
    except OperationalError as e:
        db.rollback()
        if "timeout" in str(e.orig).lower() or "canceling statement" in str(e.orig).lower():
            logger.error(f"Record store timed out during {operation}: {e}")
            raise RecordStoreTimeout(f"Record store timed out during {operation}") from e
        logger.error(f"Record store error during {operation}: {e}")
        raise RecordStoreError(f"Record store failed during {operation}") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Record store error during {operation}: {e}")
        raise RecordStoreError(f"Record store failed during {operation}") from e


class MediaRepository:
    """
    Persistence for one kind of media record.

    Records whose `expires_at` has passed are treated as gone: reads,
    updates and access tracking skip them even before the retention sweep
    deletes the rows.
    """

    def __init__(self, db: Session, kind: MediaKind, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.kind = kind
        self.model = KIND_MODELS[kind]
        self.clock = clock

    def _live(self):
        """Condition matching records that have not expired."""
        return or_(self.model.expires_at.is_(None), self.model.expires_at > self.clock())

    # --- Reads ---

    def get(self, record_id: UUID) -> MediaRecordMixin | None:
        """Get record by ID, always reloading from the store."""
        with store_errors(self.db, "get"):
            return self.db.scalars(
                select(self.model)
                .where(self.model.id == record_id, self._live())
                .execution_options(populate_existing=True)
            ).first()

    def get_by_storage_key(self, storage_key: str) -> MediaRecordMixin | None:
        """Get record by its unique storage key."""
        with store_errors(self.db, "get_by_storage_key"):
            return self.db.scalars(
                select(self.model)
                .where(self.model.storage_key == storage_key, self._live())
                .execution_options(populate_existing=True)
            ).first()

    def list_records(
        self,
        filters: RecordFilters | None = None,
        skip: int = 0,
        limit: int = 20,
        sort_by: str = "uploaded_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> tuple[list[MediaRecordMixin], int]:
        """List records with optional filters. Returns (records, total)."""
        query = select(self.model).where(self._live())

        if filters:
            if filters.visit_id:
                query = query.where(self.model.visit_id == filters.visit_id)
            if filters.patient_id:
                query = query.where(self.model.patient_id == filters.patient_id)
            if filters.classification:
                column = getattr(self.model, CLASSIFICATION_FIELDS[self.kind])
                query = query.where(column == filters.classification)
            if filters.processing_status:
                query = query.where(self.model.processing_status == filters.processing_status.value)

        if sort_by not in SORTABLE_FIELDS[self.kind]:
            sort_by = "uploaded_at"
        ordering = asc if sort_order == SortOrder.ASC else desc

        with store_errors(self.db, "list"):
            total = self.db.scalar(select(func.count()).select_from(query.subquery()))
            records = self.db.scalars(
                query.order_by(ordering(getattr(self.model, sort_by))).offset(skip).limit(limit)
            ).all()

        return list(records), total or 0

    def list_by_visit(self, visit_id: str) -> list[MediaRecordMixin]:
        with store_errors(self.db, "list_by_visit"):
            return list(self.db.scalars(
                select(self.model)
                .where(self.model.visit_id == visit_id, self._live())
                .order_by(self.model.uploaded_at.desc())
            ).all())

    def list_by_patient(self, patient_id: str) -> list[MediaRecordMixin]:
        with store_errors(self.db, "list_by_patient"):
            return list(self.db.scalars(
                select(self.model)
                .where(self.model.patient_id == patient_id, self._live())
                .order_by(self.model.uploaded_at.desc())
            ).all())

    # --- Writes ---

    def create(self, values: dict[str, Any]) -> MediaRecordMixin:
        """
        Insert a new record.

        Raises:
            StorageKeyConflict: If the storage key is already bound
        """
        record = self.model(**values)
        with store_errors(self.db, "create"):
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
        return record

    def update_by_storage_key(self, storage_key: str, values: dict[str, Any]) -> bool:
        """Atomically apply `values` to the live record bound to `storage_key`. False if absent."""
        stmt = (
            update(self.model)
            .where(self.model.storage_key == storage_key, self._live())
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.db, "update_by_storage_key"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount > 0

    def update_by_id(self, record_id: UUID, values: dict[str, Any]) -> bool:
        """Atomically apply `values` to one live record. False if absent."""
        stmt = (
            update(self.model)
            .where(self.model.id == record_id, self._live())
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.db, "update_by_id"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount > 0

    def increment_access(self, record_id: UUID, accessed_at: datetime, viewer_id: str | None = None) -> bool:
        """
        Count one access: access_count + 1 and last_accessed_at in one UPDATE.

        Photos also get a view row when the viewer is known, in the same
        transaction.
        """
        stmt = (
            update(self.model)
            .where(self.model.id == record_id, self._live())
            .values(access_count=self.model.access_count + 1, last_accessed_at=accessed_at)
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.db, "increment_access"):
            result = self.db.execute(stmt)
            if result.rowcount == 0:
                self.db.rollback()
                return False
            if viewer_id and self.kind == MediaKind.PHOTO:
                self.db.add(PhotoView(photo_id=record_id, viewer_id=viewer_id, viewed_at=accessed_at))
            self.db.commit()
        return True

    def delete(self, record_id: UUID) -> bool:
        """Delete one record (photo views cascade). False if absent."""
        with store_errors(self.db, "delete"):
            if self.kind == MediaKind.PHOTO:
                self.db.execute(
                    delete(PhotoView)
                    .where(PhotoView.photo_id == record_id)
                    .execution_options(synchronize_session=False)
                )
            result = self.db.execute(
                delete(self.model)
                .where(self.model.id == record_id)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        return result.rowcount > 0

    # --- Aggregates ---

    def stats(self) -> dict[str, Any]:
        """Totals, averages and counts by status and classification, over live records."""
        classification = getattr(self.model, CLASSIFICATION_FIELDS[self.kind])
        columns = [
            func.count(self.model.id),
            func.coalesce(func.sum(self.model.file_size), 0),
            func.coalesce(func.avg(self.model.file_size), 0),
        ]
        if self.kind == MediaKind.AUDIO:
            columns.append(func.avg(AudioRecord.duration))

        live = self._live()
        with store_errors(self.db, "stats"):
            overall = self.db.execute(select(*columns).where(live)).one()
            by_status = self.db.execute(
                select(self.model.processing_status, func.count(self.model.id))
                .where(live)
                .group_by(self.model.processing_status)
            ).all()
            by_type = self.db.execute(
                select(classification, func.count(self.model.id)).where(live).group_by(classification)
            ).all()

        return {
            "total_files": overall[0],
            "total_size": int(overall[1]),
            "avg_file_size": float(overall[2]),
            "avg_duration": float(overall[3]) if self.kind == MediaKind.AUDIO and overall[3] is not None else None,
            "by_status": {status: count for status, count in by_status},
            "by_type": {value: count for value, count in by_type},
        }

    def find_needing_review(self) -> list[PhotoRecord]:
        """Photos flagged by analysis (blur, poor lighting) or failed processing."""
        with store_errors(self.db, "find_needing_review"):
            return list(self.db.scalars(
                select(PhotoRecord)
                .where(
                    (PhotoRecord.blur_detected.is_(True))
                    | (PhotoRecord.lighting_quality == "poor")
                    | (PhotoRecord.processing_status == "failed")
                )
                .where(or_(PhotoRecord.expires_at.is_(None), PhotoRecord.expires_at > self.clock()))
                .order_by(PhotoRecord.uploaded_at.desc())
            ).all())
