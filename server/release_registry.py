"""
Persistence for APK releases and their download state machine.

    pending --> downloading --> completed | failed
    failed/completed --> downloading (retry)

The conditional pending/failed/completed -> downloading transition in
begin_download() is the only serialization point for a release: two
concurrent triggers for the same tag cannot both win it.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    ApkRelease,
    STATUS_PENDING, STATUS_DOWNLOADING, STATUS_COMPLETED, STATUS_FAILED,
    DOWNLOAD_STATUSES, RELEASE_SOURCES, SOURCE_MANUAL, utcnow,
)
from observability import structured_logger

# Fields update() is allowed to merge
UPDATABLE_FIELDS = {"download_status", "apk_hash", "apk_size", "download_error", "downloaded_at"}

INTERRUPTED_ERROR = "Download interrupted by server restart"


class DuplicateReleaseError(Exception):
    """A release with this tag is already registered"""

    def __init__(self, release_tag: str):
        self.release_tag = release_tag
        super().__init__(f"Release with tag {release_tag} already exists")


class ReleaseNotFoundError(Exception):
    def __init__(self, release_id: int):
        self.release_id = release_id
        super().__init__("Release not found")


class DownloadInProgressError(Exception):
    def __init__(self, release_id: int):
        self.release_id = release_id
        super().__init__("Download already in progress")


class ReleaseRegistry:
    """Release records backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, release_tag: str) -> bool:
        return self.db.query(ApkRelease.id).filter(ApkRelease.release_tag == release_tag).first() is not None

    def get_by_tag(self, release_tag: str) -> Optional[ApkRelease]:
        return self.db.query(ApkRelease).filter(ApkRelease.release_tag == release_tag).first()

    def get_by_id(self, release_id: int) -> Optional[ApkRelease]:
        return self.db.get(ApkRelease, release_id)

    def get_all(self) -> List[ApkRelease]:
        """All releases, newest publication first."""
        return self.db.query(ApkRelease).order_by(
            ApkRelease.published_at.desc().nulls_last(),
            ApkRelease.id.desc()
        ).all()

    def get_latest_completed(self) -> Optional[ApkRelease]:
        """The completed release with the highest publication time."""
        return self.db.query(ApkRelease).filter(
            ApkRelease.download_status == STATUS_COMPLETED,
            ApkRelease.apk_hash.isnot(None)
        ).order_by(
            ApkRelease.published_at.desc().nulls_last(),
            ApkRelease.id.desc()
        ).first()

    def create(
        self,
        release_tag: str,
        apk_name: str,
        apk_url: str,
        release_name: Optional[str] = None,
        published_at: Optional[datetime] = None,
        source: str = SOURCE_MANUAL,
        download_status: str = STATUS_PENDING,
    ) -> ApkRelease:
        """
        Insert a new release.

        Callers check exists() first; registration is "register-if-new".
        A tag collision here is a programming or race error and fails loudly.

        Raises:
            DuplicateReleaseError: If the tag is already registered
            ValueError: On an unknown source or status
        """
        if source not in RELEASE_SOURCES:
            raise ValueError(f"Unknown release source: {source}")
        if download_status not in DOWNLOAD_STATUSES:
            raise ValueError(f"Unknown download status: {download_status}")

        release = ApkRelease(
            release_tag=release_tag,
            release_name=release_name or release_tag,
            apk_name=apk_name,
            apk_url=apk_url,
            download_status=download_status,
            published_at=published_at,
            detected_at=utcnow(),
            source=source,
        )
        self.db.add(release)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateReleaseError(release_tag)
        self.db.refresh(release)

        structured_logger.log_event(
            "release.created",
            release_id=release.id,
            release_tag=release_tag,
            source=source,
            apk_name=apk_name
        )
        return release

    def update(self, release_id: int, **fields) -> Optional[ApkRelease]:
        """
        Merge the supplied fields into a release.

        Only keys that are passed are touched, so passing download_error=None
        clears the error while omitting it leaves it alone.

        Returns:
            The updated release, the unchanged release if no fields were given,
            or None if the release does not exist
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        status = fields.get("download_status")
        if status is not None and status not in DOWNLOAD_STATUSES:
            raise ValueError(f"Unknown download status: {status}")

        release = self.get_by_id(release_id)
        if release is None or not fields:
            return release

        for key, value in fields.items():
            setattr(release, key, value)
        self.db.commit()
        self.db.refresh(release)
        return release

    def delete(self, release_id: int) -> bool:
        deleted = self.db.query(ApkRelease).filter(ApkRelease.id == release_id).delete(synchronize_session=False)
        self.db.commit()
        return deleted > 0

    def begin_download(self, release_id: int) -> bool:
        """
        Atomically move a release into 'downloading'.

        Returns:
            False if the release is already downloading (or does not exist)
        """
        updated = self.db.query(ApkRelease).filter(
            ApkRelease.id == release_id,
            ApkRelease.download_status != STATUS_DOWNLOADING
        ).update(
            {"download_status": STATUS_DOWNLOADING, "download_error": None},
            synchronize_session=False
        )
        self.db.commit()
        self.db.expire_all()
        return updated == 1

    def mark_completed(self, release_id: int, apk_hash: str, apk_size: int) -> Optional[ApkRelease]:
        return self.update(
            release_id,
            download_status=STATUS_COMPLETED,
            apk_hash=apk_hash,
            apk_size=apk_size,
            download_error=None,
            downloaded_at=utcnow(),
        )

    def mark_failed(self, release_id: int, error: str) -> Optional[ApkRelease]:
        """
        Record a failed attempt.

        An artifact recorded by an earlier successful attempt is kept: only a
        later success may replace apk_hash/apk_size.
        """
        return self.update(
            release_id,
            download_status=STATUS_FAILED,
            download_error=error,
        )

    def count_hash_references(self, apk_hash: str, exclude_id: Optional[int] = None) -> int:
        """Number of releases pointing at a cached blob."""
        query = self.db.query(func.count(ApkRelease.id)).filter(ApkRelease.apk_hash == apk_hash)
        if exclude_id is not None:
            query = query.filter(ApkRelease.id != exclude_id)
        return query.scalar() or 0

    def status_counts(self) -> Dict[str, Any]:
        rows = self.db.query(ApkRelease.download_status, func.count(ApkRelease.id)).group_by(
            ApkRelease.download_status
        ).all()
        by_status = {status: 0 for status in DOWNLOAD_STATUSES}
        for status, count in rows:
            by_status[status] = count
        return {
            "total": sum(by_status.values()),
            "completed": by_status[STATUS_COMPLETED],
            "by_status": by_status,
        }

    def reconcile_interrupted_downloads(self) -> int:
        """
        Fail releases left in 'downloading' by a previous process.

        No task survives a restart, so such a release would otherwise be
        stuck forever and reject every retry.
        """
        stuck = self.db.query(ApkRelease).filter(ApkRelease.download_status == STATUS_DOWNLOADING).all()
        for release in stuck:
            release.download_status = STATUS_FAILED
            release.download_error = INTERRUPTED_ERROR
            structured_logger.log_event(
                "release.download.interrupted",
                level="WARN",
                release_id=release.id,
                release_tag=release.release_tag
            )
        self.db.commit()
        return len(stuck)
