from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import settings


class Base(DeclarativeBase):
    pass


def _connect_args(database_url: str, statement_timeout_ms: int) -> dict:
    # Bounded record-store calls: postgres cancels statements past the timeout
    if database_url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={statement_timeout_ms}"}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.DATABASE_URL, settings.DATABASE_STATEMENT_TIMEOUT_MS),
)
SessionLocal = sessionmaker(bind=engine, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
