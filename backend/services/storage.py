"""Object storage for uploaded statements (local directory backend)."""
import hashlib
import logging
import os
import re
import time
from config import settings
from errors import DownloadError

logger = logging.getLogger("StatementImporter.Storage")


def compute_file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def build_object_key(user_id: str, filename: str) -> str:
    """``<user_id>/<epoch-ms>-<sanitised filename>``"""
    safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", os.path.basename(filename or "statement.pdf"))
    return f"{user_id}/{int(time.time() * 1000)}-{safe_name}"


class ObjectStorage:
    """Keys are relative paths under ``root``; they never escape it."""

    def __init__(self, root: str = None):
        self.root = os.path.abspath(root or settings.UPLOAD_DIR)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f"Storage key escapes root: {key}")
        return path

    def upload(self, key: str, content: bytes) -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(content)
        logger.info(f"Stored object {key} ({len(content)} bytes)")

    def download(self, key: str) -> bytes:
        try:
            with open(self._path(key), "rb") as f:
                return f.read()
        except (OSError, ValueError) as e:
            logger.error(f"Download failed for {key}: {e}")
            raise DownloadError() from e

    def delete(self, key: str) -> bool:
        """Remove an object. Returns False if it was already gone."""
        try:
            path = self._path(key)
        except ValueError:
            return False
        if not os.path.exists(path):
            return False
        os.remove(path)
        logger.info(f"Deleted object {key}")
        return True


_storage = None


def get_storage() -> ObjectStorage:
    """Get or create the storage singleton (also a FastAPI dependency)."""
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
    return _storage
