# artifact_store.py - Content-addressed storage for release artifacts
# Blobs live at <root>/<sha[:2]>/<sha256>; a version row stores only the ref.
import hashlib
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from errors import IntegrityMismatch, NotFound
from logging_system import LogCategory, get_logger

logger = get_logger(LogCategory.ARTIFACTS)

ARTIFACT_STORAGE_ROOT = os.getenv("ARTIFACT_STORAGE_ROOT", "./artifacts")
MAX_ARTIFACT_BYTES = int(os.getenv("MAX_ARTIFACT_BYTES", str(2 * 1024 ** 3)))
CHUNK_SIZE = 1024 * 1024


@dataclass
class StoredArtifact:
    ref: str
    size: int
    checksum: str


def _root() -> Path:
    return Path(ARTIFACT_STORAGE_ROOT).resolve()


async def store_upload(
    upload: UploadFile,
    declared_size: Optional[int] = None,
    declared_checksum: Optional[str] = None,
) -> StoredArtifact:
    """Stream an upload to disk, hashing as it goes.

    The blob is only moved into place once size and digest agree with what the
    uploader declared; otherwise the temp file is removed and nothing is stored.
    """
    root = _root()
    tmp_dir = root / "tmp"
    tmp_dir.mkdir(parents=True, exist_ok=True)
    tmp_path = tmp_dir / str(uuid.uuid4())

    digest = hashlib.sha256()
    size = 0
    try:
        # Blocking file I/O goes through the threadpool
        out = await run_in_threadpool(open, tmp_path, "wb")
        try:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > MAX_ARTIFACT_BYTES:
                    raise IntegrityMismatch(
                        f"Artifact exceeds maximum size of {MAX_ARTIFACT_BYTES} bytes",
                        max_bytes=MAX_ARTIFACT_BYTES,
                    )
                digest.update(chunk)
                await run_in_threadpool(out.write, chunk)
        finally:
            await run_in_threadpool(out.close)

        checksum = digest.hexdigest()
        if declared_size is not None and declared_size != size:
            raise IntegrityMismatch(
                f"Declared size {declared_size} does not match received {size} bytes",
                declared_size=declared_size,
                received_size=size,
            )
        if declared_checksum and declared_checksum.lower() != checksum:
            raise IntegrityMismatch(
                "Declared checksum does not match uploaded content",
                declared_checksum=declared_checksum.lower(),
                computed_checksum=checksum,
            )

        ref = f"{checksum[:2]}/{checksum}"
        final_path = root / ref
        final_path.parent.mkdir(parents=True, exist_ok=True)
        await run_in_threadpool(os.replace, tmp_path, final_path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise

    logger.info(f"Stored artifact {ref} ({size} bytes) from {upload.filename or 'upload'}")
    return StoredArtifact(ref=ref, size=size, checksum=checksum)


def resolve(ref: str) -> Path:
    """Filesystem path for a stored ref. Refuses anything outside the store."""
    root = _root()
    path = (root / ref).resolve()
    if root not in path.parents:
        raise NotFound("Artifact not found")
    if not path.is_file():
        logger.error(f"Artifact blob missing from store: {ref}")
        raise NotFound("Artifact blob missing")
    return path

