"""
Filesystem blob storage and content hashing.
"""

import base64
import hashlib
import os
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable

from loguru import logger

from .errors import InvalidParameter, NotFound, StorageUnavailable
from .stores import BlobStore

CHUNK_SIZE = 64 * 1024


def compute_file_hash(data: bytes) -> str:
    """Base64-encoded SHA-256 of ``data``."""
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


def compute_stream_hash(chunks: Iterable[bytes]) -> str:
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")


class LocalBlobStore(BlobStore):
    """
    Blob store writing one file per upload under a root directory.

    Content is written to a temporary file, flushed to disk and then
    renamed into place, so a reference is only returned once the bytes
    are durable.
    """

    def __init__(self, root: Path):
        """
        Initialize blob store.

        Args:
            root: Directory holding the uploaded files (created if missing)
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if path.parent != self.root.resolve():
            raise InvalidParameter(f"invalid blob reference: {ref}")
        return path

    def put(self, data: bytes) -> str:
        ref = uuid.uuid4().hex
        final_path = self._path(ref)
        tmp_path = final_path.with_suffix(".part")
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, final_path)
        except OSError as e:
            logger.error(f"Failed to store blob {ref}: {e}")
            tmp_path.unlink(missing_ok=True)
            raise StorageUnavailable(f"could not store file: {e}") from e

        logger.debug(f"Stored blob {ref} ({len(data)} bytes)")
        return ref

    def exists(self, ref: str) -> bool:
        return self._path(ref).is_file()

    def open(self, ref: str) -> BinaryIO:
        try:
            return open(self._path(ref), "rb")
        except FileNotFoundError as e:
            raise NotFound("Physical file not found") from e
        except OSError as e:
            logger.error(f"Failed to open blob {ref}: {e}")
            raise StorageUnavailable(f"could not read file: {e}") from e
