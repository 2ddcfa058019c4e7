"""
Content-addressed APK store.

Blobs live on local disk under their SHA-256 hex digest:

    {root}/{sha256}.apk    - artifact bytes
    {root}/{sha256}.json   - sidecar metadata (origin URL, name, size, time)

Identical artifacts are stored exactly once no matter how many releases
reference them. Writes go through a temporary file and an atomic rename, so a
partially written blob is never visible under its final name.
"""

import hashlib
import json
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

from observability import structured_logger, metrics

BLOB_SUFFIX = ".apk"
META_SUFFIX = ".json"
TEMP_PREFIX = ".tmp-"
HASH_CHUNK_SIZE = 1024 * 1024  # 1MB

_DIGEST_RE = re.compile(r"^[a-fA-F0-9]{64}$")


class StoreError(Exception):
    """Raised when the store cannot read or write a blob (disk full, permissions)"""
    pass


class InvalidDigestError(ValueError):
    """Raised when a digest is not a 64-character SHA-256 hex string"""
    pass


def is_valid_digest(digest: str) -> bool:
    return bool(digest) and _DIGEST_RE.match(digest) is not None


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ApkContentStore:
    """
    Local-disk blob store keyed by SHA-256 digest.

    Safe for concurrent put() calls from multiple download tasks: the heavy
    lifting (hashing, temp-file writes) happens without a lock and only the
    final existence check + rename is serialized.
    """

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create APK storage directory {self.root}: {e}") from e
        self._commit_lock = threading.Lock()

    def _normalize(self, digest: str) -> str:
        if not is_valid_digest(digest):
            raise InvalidDigestError(f"Invalid SHA-256 digest: {digest!r}")
        return digest.lower()

    def blob_path(self, digest: str) -> Path:
        return self.root / f"{self._normalize(digest)}{BLOB_SUFFIX}"

    def meta_path(self, digest: str) -> Path:
        return self.root / f"{self._normalize(digest)}{META_SUFFIX}"

    def _write_temp(self, data: bytes) -> str:
        """Write data to a temp file in the store directory and fsync it."""
        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=TEMP_PREFIX, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            _remove_quietly(tmp_path)
            raise
        return tmp_path

    def put(self, data: bytes, source_url: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Store bytes and return their SHA-256 digest.

        Idempotent: if a blob with the same digest is already present it is
        left untouched and the existing digest is returned.

        Raises:
            StoreError: If the blob or its sidecar cannot be written
        """
        digest = compute_sha256(data)
        blob_path = self.blob_path(digest)

        if blob_path.exists():
            structured_logger.log_event("store.put.already_present", hash=digest, size=len(data))
            metrics.inc_counter("apk_store_puts_total", {"result": "dedup"})
            return digest

        meta = {
            "hash": digest,
            "original_url": source_url,
            "name": name,
            "size": len(data),
            "downloaded_at": datetime.now(timezone.utc).isoformat(),
        }

        blob_tmp = meta_tmp = None
        try:
            blob_tmp = self._write_temp(data)
            meta_tmp = self._write_temp(json.dumps(meta, indent=2).encode("utf-8"))

            with self._commit_lock:
                if blob_path.exists():
                    # Lost a race with a concurrent put of the same bytes
                    structured_logger.log_event("store.put.already_present", hash=digest, size=len(data))
                    metrics.inc_counter("apk_store_puts_total", {"result": "dedup"})
                    return digest
                # Sidecar first so a visible blob always has its metadata
                os.replace(meta_tmp, self.meta_path(digest))
                meta_tmp = None
                os.replace(blob_tmp, blob_path)
                blob_tmp = None
        except OSError as e:
            structured_logger.log_event(
                "store.put.error",
                level="ERROR",
                hash=digest,
                error=str(e),
                error_type=type(e).__name__
            )
            metrics.inc_counter("apk_store_puts_total", {"result": "error"})
            raise StoreError(f"Failed to write APK {digest}: {e}") from e
        finally:
            for leftover in (blob_tmp, meta_tmp):
                if leftover:
                    _remove_quietly(leftover)

        structured_logger.log_event("store.put.success", hash=digest, size=len(data), name=name)
        metrics.inc_counter("apk_store_puts_total", {"result": "written"})
        return digest

    def get(self, digest: str) -> Optional[Path]:
        """Return the blob path if the digest is stored, else None."""
        path = self.blob_path(digest)
        return path if path.is_file() else None

    def read(self, digest: str) -> Optional[bytes]:
        path = self.get(digest)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise StoreError(f"Failed to read APK {digest}: {e}") from e

    def verify(self, digest: str) -> bool:
        """Re-hash the stored bytes and compare against the digest."""
        path = self.get(digest)
        if path is None:
            return False

        hasher = hashlib.sha256()
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                    hasher.update(chunk)
        except OSError as e:
            structured_logger.log_event(
                "store.verify.error",
                level="ERROR",
                hash=digest,
                error=str(e)
            )
            return False

        ok = hasher.hexdigest() == digest.lower()
        if not ok:
            structured_logger.log_event("store.verify.mismatch", level="ERROR", hash=digest)
            metrics.inc_counter("apk_store_verify_failures_total")
        return ok

    def delete(self, digest: str) -> bool:
        """
        Remove a blob and its sidecar.

        Returns:
            True if anything was removed, False if the digest was not stored
        """
        removed = False
        for path in (self.blob_path(digest), self.meta_path(digest)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StoreError(f"Failed to delete {path.name}: {e}") from e

        if removed:
            structured_logger.log_event("store.delete.success", hash=digest)
        return removed

    def read_metadata(self, digest: str) -> Optional[Dict[str, Any]]:
        path = self.meta_path(digest)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            structured_logger.log_event(
                "store.metadata.unreadable",
                level="WARN",
                hash=digest,
                error=str(e)
            )
            return None

    def list(self) -> List[Dict[str, Any]]:
        """Enumerate stored blobs as [{hash, size, name}]."""
        apks = []
        for path in sorted(self.root.glob(f"*{BLOB_SUFFIX}")):
            digest = path.name[:-len(BLOB_SUFFIX)]
            if not is_valid_digest(digest):
                continue
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                # Deleted between glob and stat
                continue
            meta = self.read_metadata(digest) or {}
            apks.append({
                "hash": digest,
                "size": size,
                "name": meta.get("name"),
            })
        return apks


def _remove_quietly(path: str):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
