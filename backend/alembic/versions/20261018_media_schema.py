"""Add media schema for visit audio recordings and photos

Revision ID: 20261018_media
Revises:
Create Date: 2026-10-18

Adds:
- media schema
- media.audio_records and media.photo_records, one row per uploaded object
- media.photo_views, insert-only viewer history for photos
- Hourly pg_cron job deleting records past expires_at (skipped when pg_cron is unavailable)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261018_media'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _common_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.UUID(), nullable=False),

        # Object store binding
        sa.Column('storage_key', sa.String(length=500), nullable=False),
        sa.Column('storage_bucket', sa.String(length=255), nullable=False),
        sa.Column('storage_region', sa.String(length=50), nullable=False),
        sa.Column('storage_url', sa.String(length=1000), nullable=False),

        # File information
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('original_file_name', sa.String(length=255), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('mime_type', sa.String(length=100), nullable=False),

        # Healthcare context (external identifiers, no FK)
        sa.Column('visit_id', sa.String(length=100), nullable=False),
        sa.Column('patient_id', sa.String(length=100), nullable=False),
        sa.Column('staff_id', sa.String(length=100), nullable=True),

        sa.Column('tags', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('processing_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('access_level', sa.String(length=30), nullable=False, server_default='staff_only'),

        # Audit trail
        sa.Column('uploaded_by', sa.String(length=100), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_accessed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('access_count', sa.Integer(), nullable=False, server_default='0'),

        # Retention
        sa.Column('retention_policy', sa.String(length=20), nullable=False, server_default='7_years'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _common_indexes(table: str) -> None:
    op.create_index(f'ix_{table}_storage_key', table, ['storage_key'], unique=True, schema='media')
    op.create_index(f'ix_{table}_visit_id', table, ['visit_id'], schema='media')
    op.create_index(f'ix_{table}_patient_id', table, ['patient_id'], schema='media')
    op.create_index(f'ix_{table}_staff_id', table, ['staff_id'], schema='media')
    op.create_index(f'ix_{table}_processing_status', table, ['processing_status'], schema='media')
    op.create_index(f'ix_{table}_uploaded_at', table, ['uploaded_at'], schema='media')
    op.create_index(f'ix_{table}_expires_at', table, ['expires_at'], schema='media')
    op.create_index(f'ix_media_{table}_visit_patient', table, ['visit_id', 'patient_id'], schema='media')


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS media")

    # audio_records - One row per uploaded audio object
    op.create_table(
        'audio_records',
        *_common_columns(),
        sa.Column('duration', sa.Float(), nullable=True),  # seconds
        sa.Column('recording_type', sa.String(length=50), nullable=False, server_default='visit_note'),
        sa.Column('recording_source', sa.String(length=50), nullable=False, server_default='web_app'),
        sa.Column('transcription', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        schema='media'
    )
    _common_indexes('audio_records')

    # photo_records - One row per uploaded photo object
    op.create_table(
        'photo_records',
        *_common_columns(),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('photo_type', sa.String(length=50), nullable=False, server_default='other'),
        sa.Column('photo_source', sa.String(length=50), nullable=False, server_default='web_app'),
        sa.Column('body_part', sa.String(length=100), nullable=True),
        sa.Column('laterality', sa.String(length=20), nullable=False, server_default='not_applicable'),
        sa.Column('clinical_notes', sa.Text(), nullable=True),
        sa.Column('thumbnail_url', sa.String(length=1000), nullable=True),
        sa.Column('exif_data', sa.JSON(), nullable=True),
        sa.Column('quality_score', sa.Integer(), nullable=True),
        sa.Column('blur_detected', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('lighting_quality', sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        schema='media'
    )
    _common_indexes('photo_records')
    op.create_index('ix_photo_records_photo_type', 'photo_records', ['photo_type'], schema='media')

    # photo_views - Viewer history, insert-only
    op.create_table(
        'photo_views',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('photo_id', sa.UUID(), nullable=False),
        sa.Column('viewer_id', sa.String(length=100), nullable=False),
        sa.Column('viewed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['photo_id'], ['media.photo_records.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        schema='media'
    )
    op.create_index('ix_photo_views_photo_id', 'photo_views', ['photo_id'], schema='media')

    # Hourly retention sweep; the application already hides rows past expires_at
    op.execute("""
        DO $$
        BEGIN
            IF EXISTS (SELECT 1 FROM pg_available_extensions WHERE name = 'pg_cron') THEN
                CREATE EXTENSION IF NOT EXISTS pg_cron;
                PERFORM cron.schedule(
                    'media_expire_records',
                    '0 * * * *',
                    $job$
                        DELETE FROM media.audio_records WHERE expires_at IS NOT NULL AND expires_at <= now();
                        DELETE FROM media.photo_records WHERE expires_at IS NOT NULL AND expires_at <= now();
                    $job$
                );
            ELSE
                RAISE WARNING 'pg_cron not available: expired media records are hidden but not deleted';
            END IF;
        END
        $$;
    """)


def downgrade() -> None:
    op.execute("""
        DO $$
        BEGIN
            IF EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'pg_cron') THEN
                PERFORM cron.unschedule(jobid) FROM cron.job WHERE jobname = 'media_expire_records';
            END IF;
        END
        $$;
    """)

    op.drop_table('photo_views', schema='media')
    op.drop_table('photo_records', schema='media')
    op.drop_table('audio_records', schema='media')
    op.execute("DROP SCHEMA IF EXISTS media")
