"""Shared fixtures for media domain tests."""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import StorageConfig
from app.core.database import Base
from app.core.storage import ObjectStore
from app.domains.media import models  # noqa: F401
from app.domains.media.service import MediaService


FIXED_NOW = datetime(2026, 3, 14, 9, 26, 53, tzinfo=timezone.utc)


def fake_presign(ClientMethod, Params, ExpiresIn):
    """Stand-in for botocore signing: deterministic URL naming the signed operation."""
    return (
        f"https://{Params['Bucket']}.s3.eu-north-1.amazonaws.com/{Params['Key']}"
        f"?X-Amz-Expires={ExpiresIn}&x-id={ClientMethod}"
    )


class FakeClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_session():
    """In-memory SQLite session with the media tables (schema mapped away)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        execution_options={"schema_translate_map": {"media": None}},
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()

    yield session

    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def storage_config():
    return StorageConfig(bucket="visit-media-test", region="eu-north-1")


@pytest.fixture
def s3_client():
    """Mock boto3 S3 client; signing returns deterministic URLs."""
    client = MagicMock()
    client.generate_presigned_url.side_effect = fake_presign
    return client


@pytest.fixture
def object_store(storage_config, s3_client):
    return ObjectStore(storage_config, client=s3_client)


@pytest.fixture
def clock():
    return FakeClock(FIXED_NOW)


@pytest.fixture
def service(db_session, object_store, clock):
    return MediaService(db_session, object_store, clock=clock)
