from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Text, create_engine, Integer, Index, BigInteger
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from typing import Optional
import os

from config import config

# Download lifecycle states
STATUS_PENDING = "pending"
STATUS_DOWNLOADING = "downloading"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
DOWNLOAD_STATUSES = (STATUS_PENDING, STATUS_DOWNLOADING, STATUS_COMPLETED, STATUS_FAILED)

# Release provenance
SOURCE_WEBHOOK = "webhook"
SOURCE_MANUAL = "manual"
SOURCE_POLL = "poll"
RELEASE_SOURCES = (SOURCE_WEBHOOK, SOURCE_MANUAL, SOURCE_POLL)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass

class ApkRelease(Base):
    __tablename__ = "apk_releases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    release_tag: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    release_name: Mapped[str] = mapped_column(String, nullable=False)
    apk_name: Mapped[str] = mapped_column(String, nullable=False)
    apk_url: Mapped[str] = mapped_column(Text, nullable=False)
    apk_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    apk_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    download_status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_PENDING)
    download_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default=SOURCE_MANUAL)

    __table_args__ = (
        Index('idx_apk_release_status', 'download_status'),
        Index('idx_apk_release_published', 'published_at'),
    )

    def __repr__(self) -> str:
        return f"<ApkRelease id={self.id} tag={self.release_tag!r} status={self.download_status}>"


DATABASE_URL = config.get_database_url()

if "sqlite" in DATABASE_URL:
    # Make sure the directory for a file-backed SQLite database exists
    db_path = make_url(DATABASE_URL).database
    if db_path and db_path != ":memory:":
        db_dir = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(db_dir, exist_ok=True)
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,    # Verify connections before use
        pool_recycle=3600,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_db():
    Base.metadata.create_all(bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
